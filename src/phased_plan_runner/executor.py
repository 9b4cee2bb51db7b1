"""Execute plan documents task by task.

Each `execute_plan` / `resume_checkpoint` call re-parses the plan and builds a
fresh `ExecutionRecord`. There is no persisted cursor: a resume re-derives
its position from the checkpoint id, runs only the tasks after it, and
treats everything before it as already completed. Plan completion is
recorded on disk solely by writing the SUMMARY document.

Control returns to the caller in three ways only: the task list is
exhausted, a checkpoint is reached under a pausing strategy, or a task
reports an architectural deviation that needs a human decision.
"""

from __future__ import annotations

import threading
import time
from pathlib import Path
from typing import Any, Optional, Union

from loguru import logger

from .actions.run_commit import run_commit_action
from .config import RunnerConfig, load_runner_config
from .constants import (
    CHECKPOINT_NOT_APPROVED,
    ISSUES_FILE,
    NEXT_STEP_DECISION,
    NEXT_STEP_DONE,
    NEXT_STEP_FAILED,
    PLAN_CANCELLED,
    SKIPPED_CANCELLED,
    SKIPPED_IN_AUTONOMOUS,
    SKIPPED_NOT_DECISION,
    STATE_DIR_NAME,
    STATE_FILE,
)
from .deviations import DeviationRule, handle_deviation
from .documents import SummaryData, update_state_position
from .errors import (
    CheckpointNotApprovedError,
    CheckpointNotFoundError,
    GitOperationError,
    MalformedPlanError,
    PlanFileNotFoundError,
    TaskExecutionError,
)
from .git_adapter import GitAdapter, SubprocessGitAdapter
from .io_utils import _atomic_write_text
from .issues import IssueLog
from .models import (
    CANCELLABLE_PLAN_STATUSES,
    AutoTask,
    CheckpointInfo,
    CheckpointKind,
    CheckpointTask,
    CommitRecord,
    CommitResult,
    ExecutionRecord,
    ExecutionStrategy,
    ParsedPlan,
    PlanStatus,
    Task,
    TaskResult,
    TaskStatus,
    _coerce_enum,
)
from .phase_manager import summary_path_for, write_summary
from .plan_parser import parse_plan, validate_plan
from .scheduling import dependencies_met, order_by_dependencies, unknown_dependencies
from .task_runner import TaskContext, TaskRunner, TaskRunResult, VerifyCommandRunner
from .utils import _format_duration, _now_iso, _pad

PathLike = Union[str, Path]


def resolve_strategy(parsed: ParsedPlan, requested: Union[str, ExecutionStrategy, None]) -> ExecutionStrategy:
    """Pick the effective strategy; `auto` depends on whether the plan has checkpoints."""
    strategy = _coerce_enum(ExecutionStrategy, requested or "auto", ExecutionStrategy.AUTO)
    if strategy is ExecutionStrategy.AUTO:
        return ExecutionStrategy.SEGMENTED if parsed.has_checkpoints else ExecutionStrategy.AUTONOMOUS
    return strategy


def _pause_reason(strategy: ExecutionStrategy, task: CheckpointTask) -> Optional[str]:
    """Return None when the checkpoint pauses, else why it is skipped."""
    if strategy is ExecutionStrategy.SEGMENTED:
        return None
    if strategy is ExecutionStrategy.DECISION:
        return None if task.checkpoint_kind is CheckpointKind.DECISION else SKIPPED_NOT_DECISION
    return SKIPPED_IN_AUTONOMOUS


def _phase_parts(parsed: ParsedPlan) -> tuple[str, str]:
    number = parsed.phase_number
    phase = parsed.phase
    if number is None:
        return phase or "00", phase or "unnamed"
    _, _, name = phase.partition("-")
    return _pad(number), name or phase


class PlanExecutor:
    """Run plan documents against a Task Runner and a Git Adapter."""

    def __init__(
        self,
        project_dir: PathLike,
        *,
        task_runner: Optional[TaskRunner] = None,
        git: Optional[GitAdapter] = None,
        config: Optional[RunnerConfig] = None,
    ):
        self.project_dir = Path(project_dir).resolve()
        if config is None:
            config, err = load_runner_config(self.project_dir)
            if err:
                logger.warning("Ignoring invalid runner config: {}", err)
        self.config = config
        self.task_runner: TaskRunner = task_runner or VerifyCommandRunner(config.verify_timeout_seconds)
        self.git: GitAdapter = git or SubprocessGitAdapter(self.project_dir)
        self._records: dict[str, ExecutionRecord] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Loading

    def _resolve_path(self, plan_path: PathLike) -> Path:
        path = Path(plan_path)
        if not path.is_absolute():
            path = self.project_dir / path
        path = path.resolve()
        if not path.is_file():
            raise PlanFileNotFoundError(plan_path)
        return path

    def _load(self, path: Path) -> ParsedPlan:
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise PlanFileNotFoundError(path) from exc
        return parse_plan(text)

    def _new_record(
        self,
        path: Path,
        parsed: ParsedPlan,
        strategy: ExecutionStrategy,
        session_id: Optional[str],
    ) -> ExecutionRecord:
        return ExecutionRecord(
            plan_path=str(path),
            plan_id=parsed.scope,
            status=PlanStatus.RUNNING,
            strategy=strategy,
            session_id=session_id,
            task_count=len(parsed.tasks),
            has_checkpoints=parsed.has_checkpoints,
            checkpoint_types=parsed.checkpoint_types,
            warnings=validate_plan(parsed),
        )

    def _register(self, record: ExecutionRecord) -> None:
        with self._lock:
            self._records[record.plan_path] = record

    def get_record(self, plan_path: PathLike) -> Optional[ExecutionRecord]:
        """Return the latest record for a plan run by this executor."""
        key = str(self._resolve_path(plan_path))
        with self._lock:
            return self._records.get(key)

    # ------------------------------------------------------------------
    # Public operations

    def execute_plan(
        self,
        plan_path: PathLike,
        *,
        dry_run: bool = False,
        strategy: Union[str, ExecutionStrategy, None] = None,
        session_id: Optional[str] = None,
    ) -> ExecutionRecord:
        """Execute a plan from its first task.

        Args:
            plan_path: Plan document, absolute or relative to the project.
            dry_run: Parse and lint only; nothing runs and nothing is written.
            strategy: `auto`, `autonomous`, `segmented` or `decision`.
                Defaults to the configured strategy.
            session_id: Opaque id passed through to the task runner.

        Raises:
            PlanFileNotFoundError: The plan does not exist.
            MalformedPlanError: The plan has no task section (not raised in
                dry-run mode, which reports it on the record instead).
        """
        path = self._resolve_path(plan_path)
        requested = strategy or self.config.default_strategy

        if dry_run:
            return self._dry_run(path, requested, session_id)

        parsed = self._load(path)
        effective = resolve_strategy(parsed, requested)
        record = self._new_record(path, parsed, effective, session_id)
        self._register(record)
        logger.info(
            "Executing plan {} ({} task(s), strategy={})",
            record.plan_id,
            len(parsed.tasks),
            effective.value,
        )
        return self._run(record, parsed, path, start_index=0, seeded={})

    def _dry_run(self, path: Path, requested: Any, session_id: Optional[str]) -> ExecutionRecord:
        try:
            parsed = self._load(path)
        except MalformedPlanError as exc:
            logger.warning("Dry run: {} is malformed: {}", path.name, exc.message)
            return ExecutionRecord(
                plan_path=str(path),
                status=PlanStatus.FAILED,
                success=False,
                dry_run=True,
                session_id=session_id,
                error=exc.message,
                error_code=exc.code,
            )
        effective = resolve_strategy(parsed, requested)
        record = ExecutionRecord(
            plan_path=str(path),
            plan_id=parsed.scope,
            status=PlanStatus.PENDING,
            success=True,
            strategy=effective,
            dry_run=True,
            session_id=session_id,
            task_count=len(parsed.tasks),
            tasks_remaining=len(parsed.tasks),
            has_checkpoints=parsed.has_checkpoints,
            checkpoint_types=parsed.checkpoint_types,
            warnings=validate_plan(parsed),
        )
        logger.info(
            "Dry run: {} has {} task(s), strategy={}, {} warning(s)",
            record.plan_id,
            record.task_count,
            effective.value,
            len(record.warnings),
        )
        return record

    def resume_checkpoint(
        self,
        plan_path: PathLike,
        checkpoint_id: str,
        *,
        approved: bool = True,
        result: Optional[Any] = None,
        session_id: Optional[str] = None,
        strategy: Union[str, ExecutionStrategy, None] = None,
    ) -> ExecutionRecord:
        """Continue a plan after a human answered the checkpoint `checkpoint_id`.

        Only tasks after the checkpoint in document order run. Rejecting the
        checkpoint fails the plan without running anything.

        Raises:
            PlanFileNotFoundError: The plan does not exist.
            MalformedPlanError: The plan has no task section.
            CheckpointNotFoundError: No task in the plan has this id.
        """
        path = self._resolve_path(plan_path)
        parsed = self._load(path)
        anchor = parsed.task_index(checkpoint_id)
        if anchor is None:
            raise CheckpointNotFoundError(checkpoint_id, path)

        effective = resolve_strategy(parsed, strategy or self.config.default_strategy)
        record = self._new_record(path, parsed, effective, session_id)
        record.resumed_from = checkpoint_id
        record.checkpoint_result = {"checkpoint_id": checkpoint_id, "approved": bool(approved), "result": result}
        anchor_task = parsed.tasks[anchor]

        with self._lock:
            previous = self._records.get(record.plan_path)
            if previous is not None and previous.status is PlanStatus.CANCELLED:
                record.status = PlanStatus.CANCELLED
                record.success = False
                record.error = PLAN_CANCELLED
                record.cancel_reason = previous.cancel_reason
                logger.info("Not resuming {}: plan was cancelled", record.plan_id)
                return record
            self._records[record.plan_path] = record

        if not approved:
            error = CheckpointNotApprovedError(checkpoint_id)
            record.tasks.append(
                TaskResult(
                    id=anchor_task.id,
                    name=anchor_task.name,
                    status=TaskStatus.FAILED,
                    error=error.message,
                    error_code=error.code,
                )
            )
            record.status = PlanStatus.FAILED
            record.success = False
            record.error = CHECKPOINT_NOT_APPROVED
            record.error_code = error.code
            record.tasks_remaining = len(parsed.tasks) - anchor - 1
            record.next_step = NEXT_STEP_FAILED
            logger.info("Checkpoint {} in plan {} was not approved", checkpoint_id, record.plan_id)
            return record

        if anchor_task.is_checkpoint:
            record.tasks.append(
                TaskResult(id=anchor_task.id, name=anchor_task.name, status=TaskStatus.COMPLETED, reason="Approved")
            )
        logger.info("Resuming plan {} after {}", record.plan_id, checkpoint_id)
        seeded = {task.id: TaskStatus.COMPLETED for task in parsed.tasks[: anchor + 1]}
        return self._run(record, parsed, path, start_index=anchor + 1, seeded=seeded)

    def cancel(self, plan_path: PathLike, reason: str = "User cancelled") -> dict[str, Any]:
        """Cancel a running or checkpoint-paused plan; commits already made are kept."""
        key = str(self._resolve_path(plan_path))
        with self._lock:
            record = self._records.get(key)
            if record is None:
                return {"success": False, "error": f"No execution found for plan: {plan_path}"}
            if record.status not in CANCELLABLE_PLAN_STATUSES:
                return {
                    "success": False,
                    "error": f"Plan is not running or awaiting a checkpoint (status: {record.status.value})",
                    "status": record.status.value,
                }
            record.status = PlanStatus.CANCELLED
            record.success = False
            record.cancel_reason = reason
            record.next_step = None
        logger.info("Plan {} cancelled: {}", record.plan_id, reason)
        return {
            "success": True,
            "plan_id": record.plan_id,
            "status": PlanStatus.CANCELLED.value,
            "reason": reason,
            "commits_kept": [commit.hash for commit in record.commits],
        }

    def commit_task(self, task: AutoTask, scope: str, extra_files: Optional[list[str]] = None) -> CommitResult:
        """Stage a task's files and create its single commit."""
        return run_commit_action(
            git=self.git,
            project_dir=self.project_dir,
            task=task,
            scope=scope,
            extra_files=extra_files,
        )

    # ------------------------------------------------------------------
    # Execution loop

    def _is_cancelled(self, record: ExecutionRecord) -> bool:
        with self._lock:
            return record.status is PlanStatus.CANCELLED

    def _run(
        self,
        record: ExecutionRecord,
        parsed: ParsedPlan,
        path: Path,
        *,
        start_index: int,
        seeded: dict[str, TaskStatus],
    ) -> ExecutionRecord:
        started = time.monotonic()
        started_at = _now_iso()
        statuses: dict[str, TaskStatus] = dict(seeded)
        known_ids = [task.id for task in parsed.tasks]
        ordered, cyclic = order_by_dependencies(parsed.tasks[start_index:])
        halted = False

        for position, task in enumerate(ordered):
            if self._is_cancelled(record):
                for rest in ordered[position:]:
                    record.tasks.append(
                        TaskResult(id=rest.id, name=rest.name, status=TaskStatus.SKIPPED, reason=SKIPPED_CANCELLED)
                    )
                break

            if task.id not in cyclic:
                missing = unknown_dependencies(task.depends_on, known_ids)
                if missing:
                    logger.warning("Task {} depends on unknown task(s): {}", task.id, ", ".join(missing))
                if not dependencies_met(task.depends_on, task.dependency_mode, statuses):
                    statuses[task.id] = TaskStatus.BLOCKED
                    record.tasks.append(
                        TaskResult(
                            id=task.id,
                            name=task.name,
                            status=TaskStatus.BLOCKED,
                            reason=f"Unmet dependencies: {', '.join(task.depends_on)}",
                        )
                    )
                    logger.warning("Task {} blocked by unmet dependencies", task.id)
                    continue

            if isinstance(task, CheckpointTask):
                skip_reason = _pause_reason(record.strategy, task)
                if skip_reason is None:
                    return self._halt_at_checkpoint(record, task, remaining=len(ordered) - position - 1)
                statuses[task.id] = TaskStatus.SKIPPED
                record.tasks.append(
                    TaskResult(id=task.id, name=task.name, status=TaskStatus.SKIPPED, reason=skip_reason)
                )
                continue

            result = self._execute_task(record, parsed, path, task, statuses)
            statuses[task.id] = result.status
            if record.pending_decision is not None:
                halted = True
                record.tasks_remaining = len(ordered) - position - 1
                break

        record.total_duration = _format_duration(time.monotonic() - started)
        return self._finish(record, parsed, path, halted=halted, started_at=started_at)

    def _halt_at_checkpoint(self, record: ExecutionRecord, task: CheckpointTask, *, remaining: int) -> ExecutionRecord:
        with self._lock:
            if record.status is PlanStatus.CANCELLED:
                return record
            record.status = PlanStatus.AWAITING_CHECKPOINT
        record.success = True
        record.checkpoint = CheckpointInfo.from_task(task)
        record.tasks_remaining = remaining
        record.next_step = f"Verify checkpoint: {task.what_built or task.id}"
        logger.info(
            "Plan {} paused at checkpoint {} ({}, gate={})",
            record.plan_id,
            task.id,
            task.type_attr,
            task.gate.value,
        )
        return record

    def _task_context(
        self,
        parsed: ParsedPlan,
        path: Path,
        task: Task,
        record: ExecutionRecord,
        statuses: dict[str, TaskStatus],
    ) -> TaskContext:
        phase, _ = _phase_parts(parsed)
        return TaskContext(
            project_dir=self.project_dir,
            plan_path=path,
            phase=phase,
            plan=parsed.metadata.get("plan", ""),
            scope=parsed.scope,
            task_index=parsed.task_index(task.id) or 0,
            total_tasks=len(parsed.tasks),
            session_id=record.session_id,
            completed_task_ids=[tid for tid, status in statuses.items() if status == TaskStatus.COMPLETED],
        )

    def _execute_task(
        self,
        record: ExecutionRecord,
        parsed: ParsedPlan,
        path: Path,
        task: AutoTask,
        statuses: dict[str, TaskStatus],
    ) -> TaskResult:
        started = time.monotonic()
        logger.info("Task {} started: {}", task.id, task.name)
        context = self._task_context(parsed, path, task, record, statuses)
        try:
            outcome = TaskRunResult.coerce(self.task_runner.run(task, context))
        except Exception as exc:  # runner failures are recorded per task
            logger.exception("Task runner raised for {}", task.id)
            outcome = TaskRunResult(status=TaskStatus.FAILED, error=f"{exc.__class__.__name__}: {exc}")

        result = TaskResult(
            id=task.id,
            name=task.name,
            status=outcome.status,
            files_modified=list(outcome.files_modified or task.files),
            verification_passed=outcome.verification_passed,
        )
        if outcome.status != TaskStatus.COMPLETED:
            error = TaskExecutionError(task.id, outcome.error or "Task runner reported failure")
            result.error = error.message
            result.error_code = error.code

        auto_fixes = self._apply_deviations(record, parsed, task, outcome, result)

        if record.pending_decision is not None:
            result.status = TaskStatus.BLOCKED
            result.reason = "Architectural decision required"
        elif result.status == TaskStatus.COMPLETED and self.config.commit_enabled:
            commit = self.commit_task(task, parsed.scope, outcome.files_modified)
            if commit.success:
                result.commit_hash = commit.commit_hash
                result.commit_type = commit.type
                record.commits.append(
                    CommitRecord(
                        task_id=task.id,
                        type=commit.type or "feat",
                        scope=parsed.scope,
                        message=commit.commit_message or "",
                        hash=commit.commit_hash or "",
                        files=list(commit.files_staged),
                    )
                )
                for entry in auto_fixes:
                    entry["commit_hash"] = commit.commit_hash
            else:
                error = GitOperationError(task.id, commit.error or "Commit failed")
                result.status = TaskStatus.FAILED
                result.error = error.message
                result.error_code = error.code

        result.duration = _format_duration(time.monotonic() - started)
        if result.status == TaskStatus.COMPLETED:
            logger.info("Task {} completed in {} ({})", task.id, result.duration, result.commit_hash or "no commit")
        elif result.status == TaskStatus.FAILED:
            logger.error("Task {} failed: {}", task.id, result.error)
        record.tasks.append(result)
        return result

    def _apply_deviations(
        self,
        record: ExecutionRecord,
        parsed: ParsedPlan,
        task: AutoTask,
        outcome: TaskRunResult,
        result: TaskResult,
    ) -> list[dict[str, Any]]:
        """Classify reported deviations; return the auto-fix entries awaiting a commit hash."""
        auto_fixes: list[dict[str, Any]] = []
        phase, _ = _phase_parts(parsed)
        for raw in outcome.deviations:
            handling = handle_deviation(raw, task_id=task.id, phase=phase, plan=parsed.scope)
            rule = handling.classification.rule
            logger.info(
                "Deviation in {} classified as rule {} ({}): {}",
                task.id,
                int(rule),
                handling.action.value,
                handling.deviation.description,
            )
            if handling.summary_entry is not None:
                entry = dict(handling.summary_entry)
                auto_fixes.append(entry)
            elif rule is DeviationRule.ARCHITECTURAL:
                entry = {
                    "type": "decision",
                    "rule": int(rule),
                    "category": handling.classification.category,
                    "description": handling.deviation.description,
                    "task": task.id,
                    "handled": False,
                }
                if record.pending_decision is None:
                    record.pending_decision = handling.user_prompt
            else:
                issue_id = None
                if self.config.defer_issues and handling.issue_entry is not None:
                    issue_log = IssueLog(self.project_dir / STATE_DIR_NAME / ISSUES_FILE)
                    issue_id = issue_log.defer(handling.issue_entry)
                entry = {
                    "type": "deferred",
                    "rule": int(rule),
                    "category": handling.classification.category,
                    "description": handling.deviation.description,
                    "task": task.id,
                    "issue_id": issue_id,
                }
            entry["action"] = handling.action.value
            result.deviations.append(entry)
            record.deviations.append(entry)
        return auto_fixes

    # ------------------------------------------------------------------
    # Completion

    def _finish(
        self,
        record: ExecutionRecord,
        parsed: ParsedPlan,
        path: Path,
        *,
        halted: bool,
        started_at: str,
    ) -> ExecutionRecord:
        with self._lock:
            if record.status is PlanStatus.CANCELLED:
                record.tasks_remaining = 0
                logger.info("Plan {} stopped after cancellation", record.plan_id)
                return record

            unfinished = [t for t in record.tasks if t.status in (TaskStatus.FAILED, TaskStatus.BLOCKED)]
            if halted:
                record.status = PlanStatus.PARTIAL
            elif unfinished:
                record.status = PlanStatus.PARTIAL if record.tasks_completed else PlanStatus.FAILED
            else:
                record.status = PlanStatus.COMPLETED

        if halted:
            record.success = False
            record.next_step = NEXT_STEP_DECISION
            logger.warning("Plan {} halted: architectural decision required", record.plan_id)
        elif record.status is PlanStatus.COMPLETED:
            record.success = True
            record.tasks_remaining = 0
            self._write_summary(record, parsed, path, started_at)
            record.next_step = NEXT_STEP_DONE
            logger.info("Plan {} completed in {}", record.plan_id, record.total_duration)
        else:
            record.success = False
            record.error = f"{len(unfinished)} task(s) did not complete"
            record.next_step = NEXT_STEP_FAILED
            logger.error("Plan {} finished with status {}", record.plan_id, record.status.value)

        self._update_state(record, parsed)
        return record

    def _write_summary(self, record: ExecutionRecord, parsed: ParsedPlan, path: Path, started_at: str) -> None:
        phase, phase_name = _phase_parts(parsed)
        decisions = []
        if record.checkpoint_result and record.checkpoint_result.get("approved"):
            decisions.append(f"Checkpoint {record.resumed_from} approved")
        plan_number = parsed.plan_number
        files: list[str] = []
        for task in record.tasks:
            for name in task.files_modified:
                if name not in files:
                    files.append(name)
        data = SummaryData(
            phase=phase,
            phase_name=phase_name,
            plan=_pad(plan_number) if plan_number is not None else parsed.metadata.get("plan", "00"),
            duration=record.total_duration or "0s",
            started_at=started_at,
            completed_at=_now_iso(),
            task_count=len(parsed.tasks),
            accomplishments=[t.name for t in record.tasks if t.status == TaskStatus.COMPLETED],
            task_commits=[
                {"name": t.name, "hash": t.commit_hash, "type": t.commit_type}
                for t in record.tasks
                if t.commit_hash
            ],
            files_modified=files,
            deviations=list(record.deviations),
            issues=[f"{t.id}: {t.reason}" for t in record.tasks if t.status == TaskStatus.SKIPPED and t.reason],
            decisions=decisions,
        )
        summary_path = write_summary(summary_path_for(path), data)
        record.summary_path = str(summary_path)

        if record.commits and self.config.commit_enabled and self.config.metadata_commit:
            record.metadata_commit = self._metadata_commit(summary_path, parsed.scope)

    def _metadata_commit(self, summary_path: Path, scope: str) -> Optional[str]:
        try:
            relative = str(summary_path.relative_to(self.project_dir))
        except ValueError:
            relative = str(summary_path)
        try:
            self.git.stage([relative])
            sha = self.git.commit(f"docs({scope}): complete plan")
        except GitOperationError as exc:
            logger.warning("Metadata commit for {} failed: {}", scope, exc.message)
            return None
        except Exception as exc:  # the plan is already complete on disk
            logger.warning("Metadata commit for {} failed: {}: {}", scope, exc.__class__.__name__, exc)
            return None
        logger.info("Metadata commit for {}: {}", scope, sha)
        return sha

    def _update_state(self, record: ExecutionRecord, parsed: ParsedPlan) -> None:
        if not self.config.update_state:
            return
        state_path = self.project_dir / STATE_DIR_NAME / STATE_FILE
        if not state_path.exists():
            return
        try:
            content = state_path.read_text(encoding="utf-8")
            updated = update_state_position(
                content,
                phase=parsed.phase or record.plan_id,
                plan=parsed.metadata.get("plan", record.plan_id),
                status="Complete" if record.status is PlanStatus.COMPLETED else record.status.value.capitalize(),
                completed=record.tasks_completed,
                total=len(parsed.tasks),
            )
            if updated != content:
                _atomic_write_text(state_path, updated)
                record.state_updated = True
        except OSError as exc:
            logger.warning("Unable to update {}: {}", STATE_FILE, exc)
