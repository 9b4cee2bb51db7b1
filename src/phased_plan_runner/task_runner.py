"""Task Runner interface and the default verify-command runner.

The executor never interprets a task's `action`; it hands the task to a
`TaskRunner` and records what comes back. Runners may return a
`TaskRunResult` or a plain mapping with the same keys (camelCase accepted).
"""

from __future__ import annotations

import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional, Protocol, Union

from loguru import logger

from .constants import DEFAULT_VERIFY_TIMEOUT_SECONDS, LOGS_DIR_NAME, STATE_DIR_NAME
from .models import AutoTask, TaskStatus


@dataclass
class TaskContext:
    """What a runner knows about the plan around the task it runs."""

    project_dir: Path
    plan_path: Path
    phase: str
    plan: str
    scope: str
    task_index: int
    total_tasks: int
    session_id: Optional[str] = None
    completed_task_ids: list[str] = field(default_factory=list)


@dataclass
class TaskRunResult:
    status: TaskStatus
    files_modified: list[str] = field(default_factory=list)
    verification_passed: bool = False
    deviations: list[dict[str, Any]] = field(default_factory=list)
    error: Optional[str] = None
    log_path: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == TaskStatus.COMPLETED

    @classmethod
    def coerce(cls, value: Union["TaskRunResult", Mapping[str, Any], None]) -> "TaskRunResult":
        if isinstance(value, TaskRunResult):
            return value
        if value is None:
            return cls(status=TaskStatus.FAILED, error="Task runner returned no result")
        raw_status = str(value.get("status") or "").strip().lower()
        status = TaskStatus.COMPLETED if raw_status in {"completed", "success", "succeeded", "ok"} else TaskStatus.FAILED
        deviations = []
        for item in value.get("deviations") or []:
            deviations.append(item if isinstance(item, dict) else {"description": str(item)})
        return cls(
            status=status,
            files_modified=[str(f) for f in (value.get("files_modified") or value.get("filesModified") or [])],
            verification_passed=bool(value.get("verification_passed", value.get("verificationPassed", False))),
            deviations=deviations,
            error=value.get("error"),
            log_path=value.get("log_path"),
        )


class TaskRunner(Protocol):
    def run(self, task: AutoTask, context: TaskContext) -> Union[TaskRunResult, Mapping[str, Any]]:
        ...


def _run_command(
    command: str,
    project_dir: Path,
    log_path: Path,
    *,
    timeout_seconds: Optional[int] = None,
) -> dict[str, Any]:
    log_path.parent.mkdir(parents=True, exist_ok=True)
    with open(log_path, "w") as handle:
        try:
            result = subprocess.run(
                command,
                cwd=project_dir,
                shell=True,
                stdout=handle,
                stderr=subprocess.STDOUT,
                text=True,
                timeout=timeout_seconds,
            )
        except subprocess.TimeoutExpired:
            handle.write(f"\n[runner] Command timed out after {timeout_seconds}s\n")
            return {"command": command, "exit_code": 124, "log_path": str(log_path), "timed_out": True}
    return {"command": command, "exit_code": result.returncode, "log_path": str(log_path), "timed_out": False}


class VerifyCommandRunner:
    """Run each task's `<verify>` text as a shell command.

    The task's work is assumed to be already present in the working tree;
    this runner only decides pass/fail. A task with no verify command passes
    without verification. A failing command is reported as a bug deviation.
    """

    def __init__(self, timeout_seconds: int = DEFAULT_VERIFY_TIMEOUT_SECONDS):
        self.timeout_seconds = timeout_seconds

    def run(self, task: AutoTask, context: TaskContext) -> TaskRunResult:
        if not task.verify:
            return TaskRunResult(status=TaskStatus.COMPLETED, files_modified=list(task.files))

        log_path = context.project_dir / STATE_DIR_NAME / LOGS_DIR_NAME / f"{context.scope}-{task.id}.log"
        logger.info("Verifying {} with: {}", task.id, task.verify)
        outcome = _run_command(task.verify, context.project_dir, log_path, timeout_seconds=self.timeout_seconds)

        if outcome["exit_code"] == 0:
            return TaskRunResult(
                status=TaskStatus.COMPLETED,
                files_modified=list(task.files),
                verification_passed=True,
                log_path=outcome["log_path"],
            )

        reason = (
            f"timed out after {self.timeout_seconds}s"
            if outcome["timed_out"]
            else f"exited with status {outcome['exit_code']}"
        )
        return TaskRunResult(
            status=TaskStatus.FAILED,
            files_modified=list(task.files),
            verification_passed=False,
            error=f"Verification command {reason}",
            log_path=outcome["log_path"],
            deviations=[
                {
                    "type": "bug",
                    "description": f"Verification for {task.id} is broken: `{task.verify}` {reason}",
                    "verification": f"See {outcome['log_path']}",
                }
            ],
        )
