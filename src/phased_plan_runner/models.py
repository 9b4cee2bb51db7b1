"""Define plan, task and execution-record models shared by the runner."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Optional, Union

from .constants import CHECKPOINT_TYPE_PREFIX, DEFAULT_RESUME_SIGNAL
from .utils import _leading_number, _pad


class TaskStatus(str, Enum):
    """Lifecycle of a single task inside one execution."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    BLOCKED = "blocked"


class PlanStatus(str, Enum):
    """Lifecycle of a plan execution."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"
    CANCELLED = "cancelled"
    AWAITING_CHECKPOINT = "awaiting_checkpoint"


CANCELLABLE_PLAN_STATUSES = frozenset({PlanStatus.RUNNING, PlanStatus.AWAITING_CHECKPOINT})


class ExecutionStrategy(str, Enum):
    AUTO = "auto"
    AUTONOMOUS = "autonomous"  # run to completion, checkpoints skipped
    SEGMENTED = "segmented"  # pause at every checkpoint
    DECISION = "decision"  # pause at decision checkpoints only


class CheckpointKind(str, Enum):
    HUMAN_VERIFY = "human-verify"
    HUMAN_ACTION = "human-action"
    DECISION = "decision"


class Gate(str, Enum):
    BLOCKING = "blocking"
    OPTIONAL = "optional"


class CommitType(str, Enum):
    FEAT = "feat"
    FIX = "fix"
    TEST = "test"
    REFACTOR = "refactor"
    PERF = "perf"
    CHORE = "chore"
    DOCS = "docs"


class DependencyMode(str, Enum):
    ALL = "all"
    ANY = "any"


def _coerce_enum(enum_cls: type[Enum], value: Any, default: Enum) -> Any:
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError:
        return default


@dataclass(frozen=True)
class AutoTask:
    """A fully automatic task handed to the task runner."""

    id: str
    name: str
    files: tuple[str, ...] = ()
    action: str = ""
    verify: Optional[str] = None
    done: Optional[str] = None
    type_attr: str = "auto"
    depends_on: tuple[str, ...] = ()
    dependency_mode: DependencyMode = DependencyMode.ALL

    @property
    def is_checkpoint(self) -> bool:
        return False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type_attr,
            "name": self.name,
            "files": list(self.files),
            "action": self.action,
            "verify": self.verify,
            "done": self.done,
            "depends_on": list(self.depends_on),
            "dependency_mode": self.dependency_mode.value,
        }


@dataclass(frozen=True)
class CheckpointTask:
    """A task that pauses execution until a human approves it."""

    id: str
    checkpoint_kind: CheckpointKind = CheckpointKind.HUMAN_VERIFY
    gate: Gate = Gate.BLOCKING
    what_built: Optional[str] = None
    how_to_verify: Optional[str] = None
    resume_signal: Optional[str] = None
    depends_on: tuple[str, ...] = ()
    dependency_mode: DependencyMode = DependencyMode.ALL

    @property
    def is_checkpoint(self) -> bool:
        return True

    @property
    def type_attr(self) -> str:
        return f"{CHECKPOINT_TYPE_PREFIX}{self.checkpoint_kind.value}"

    @property
    def name(self) -> str:
        return self.what_built or "Checkpoint"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type_attr,
            "gate": self.gate.value,
            "what_built": self.what_built,
            "how_to_verify": self.how_to_verify,
            "resume_signal": self.resume_signal,
            "depends_on": list(self.depends_on),
            "dependency_mode": self.dependency_mode.value,
        }


Task = Union[AutoTask, CheckpointTask]


@dataclass
class ParsedPlan:
    """Structured view of a plan document."""

    metadata: dict[str, str] = field(default_factory=dict)
    objective: Optional[str] = None
    tasks: list[Task] = field(default_factory=list)
    verification: list[str] = field(default_factory=list)
    success_criteria: list[str] = field(default_factory=list)

    @property
    def phase(self) -> str:
        return self.metadata.get("phase", "")

    @property
    def phase_number(self) -> Optional[int]:
        return _leading_number(self.phase)

    @property
    def plan_number(self) -> Optional[int]:
        return _leading_number(self.metadata.get("plan"))

    @property
    def scope(self) -> str:
        """Return the commit scope, e.g. `"01-02"`."""
        phase = _pad(self.phase_number) if self.phase_number is not None else (self.phase or "00")
        plan = _pad(self.plan_number) if self.plan_number is not None else (self.metadata.get("plan") or "00")
        return f"{phase}-{plan}"

    @property
    def depends_on(self) -> list[str]:
        return _parse_inline_list(self.metadata.get("depends_on"))

    @property
    def files_modified(self) -> list[str]:
        return _parse_inline_list(self.metadata.get("files_modified"))

    @property
    def has_checkpoints(self) -> bool:
        return any(task.is_checkpoint for task in self.tasks)

    @property
    def checkpoint_types(self) -> list[str]:
        seen: list[str] = []
        for task in self.tasks:
            if task.is_checkpoint and task.type_attr not in seen:
                seen.append(task.type_attr)
        return seen

    def task_index(self, task_id: str) -> Optional[int]:
        for index, task in enumerate(self.tasks):
            if task.id == task_id:
                return index
        return None

    def get_task(self, task_id: str) -> Optional[Task]:
        index = self.task_index(task_id)
        return None if index is None else self.tasks[index]

    def to_dict(self) -> dict[str, Any]:
        return {
            "metadata": dict(self.metadata),
            "objective": self.objective,
            "tasks": [task.to_dict() for task in self.tasks],
            "verification": list(self.verification),
            "success_criteria": list(self.success_criteria),
            "has_checkpoints": self.has_checkpoints,
            "checkpoint_types": self.checkpoint_types,
        }


def _parse_inline_list(raw: Optional[str]) -> list[str]:
    text = (raw or "").strip()
    if text.startswith("[") and text.endswith("]"):
        text = text[1:-1]
    return [item.strip().strip("'\"") for item in text.split(",") if item.strip().strip("'\"")]


@dataclass
class CommitRecord:
    task_id: str
    type: str
    scope: str
    message: str
    hash: str
    files: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class CommitResult:
    """Outcome of staging and committing one task's files."""

    success: bool
    task_id: str
    commit_hash: Optional[str] = None
    commit_message: Optional[str] = None
    type: Optional[str] = None
    files_staged: list[str] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class TaskResult:
    id: str
    name: str
    status: TaskStatus = TaskStatus.PENDING
    commit_hash: Optional[str] = None
    commit_type: Optional[str] = None
    duration: Optional[str] = None
    files_modified: list[str] = field(default_factory=list)
    verification_passed: bool = False
    deviations: list[dict[str, Any]] = field(default_factory=list)
    error: Optional[str] = None
    error_code: Optional[str] = None
    reason: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


@dataclass
class CheckpointInfo:
    """What a caller needs to present a checkpoint and resume after it."""

    id: str
    type: str
    gate: str
    what_built: Optional[str] = None
    how_to_verify: Optional[str] = None
    resume_signal: Optional[str] = None

    @classmethod
    def from_task(cls, task: CheckpointTask) -> "CheckpointInfo":
        return cls(
            id=task.id,
            type=task.type_attr,
            gate=task.gate.value,
            what_built=task.what_built,
            how_to_verify=task.how_to_verify,
            resume_signal=task.resume_signal or DEFAULT_RESUME_SIGNAL,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ExecutionRecord:
    """Per-invocation result of `execute_plan` or `resume_checkpoint`."""

    plan_path: str
    plan_id: str = ""
    status: PlanStatus = PlanStatus.PENDING
    success: bool = True
    strategy: ExecutionStrategy = ExecutionStrategy.AUTONOMOUS
    dry_run: bool = False
    session_id: Optional[str] = None
    resumed_from: Optional[str] = None
    tasks: list[TaskResult] = field(default_factory=list)
    commits: list[CommitRecord] = field(default_factory=list)
    deviations: list[dict[str, Any]] = field(default_factory=list)
    checkpoint: Optional[CheckpointInfo] = None
    checkpoint_result: Optional[dict[str, Any]] = None
    pending_decision: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    summary_path: Optional[str] = None
    metadata_commit: Optional[str] = None
    state_updated: bool = False
    total_duration: Optional[str] = None
    task_count: int = 0
    tasks_remaining: int = 0
    has_checkpoints: bool = False
    checkpoint_types: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    next_step: Optional[str] = None
    cancel_reason: Optional[str] = None

    @property
    def tasks_completed(self) -> int:
        return sum(1 for task in self.tasks if task.status == TaskStatus.COMPLETED)

    def to_dict(self) -> dict[str, Any]:
        return {
            "plan_path": self.plan_path,
            "plan_id": self.plan_id,
            "status": self.status.value,
            "success": self.success,
            "strategy": self.strategy.value,
            "dry_run": self.dry_run,
            "session_id": self.session_id,
            "resumed_from": self.resumed_from,
            "tasks": [task.to_dict() for task in self.tasks],
            "commits": [commit.to_dict() for commit in self.commits],
            "deviations": list(self.deviations),
            "checkpoint": self.checkpoint.to_dict() if self.checkpoint else None,
            "checkpoint_result": self.checkpoint_result,
            "pending_decision": self.pending_decision,
            "error": self.error,
            "error_code": self.error_code,
            "summary_path": self.summary_path,
            "metadata_commit": self.metadata_commit,
            "state_updated": self.state_updated,
            "total_duration": self.total_duration,
            "task_count": self.task_count,
            "tasks_completed": self.tasks_completed,
            "tasks_remaining": self.tasks_remaining,
            "has_checkpoints": self.has_checkpoints,
            "checkpoint_types": list(self.checkpoint_types),
            "warnings": list(self.warnings),
            "next_step": self.next_step,
            "cancel_reason": self.cancel_reason,
        }


def task_from_dict(data: dict[str, Any], index: int = 0) -> Task:
    """Build a task from the loose mapping accepted by `create_plan`."""
    task_id = str(data.get("id") or f"task-{index + 1}")
    type_attr = str(data.get("type") or "auto")
    depends_on = data.get("depends_on") or data.get("dependsOn") or ()
    if isinstance(depends_on, str):
        depends_on = [part.strip() for part in depends_on.split(",") if part.strip()]
    mode = _coerce_enum(DependencyMode, data.get("dependency_mode") or "all", DependencyMode.ALL)
    if type_attr.startswith(CHECKPOINT_TYPE_PREFIX):
        return CheckpointTask(
            id=task_id,
            checkpoint_kind=_coerce_enum(
                CheckpointKind, type_attr[len(CHECKPOINT_TYPE_PREFIX):], CheckpointKind.HUMAN_VERIFY
            ),
            gate=_coerce_enum(Gate, data.get("gate") or "blocking", Gate.BLOCKING),
            what_built=data.get("what_built") or data.get("whatBuilt"),
            how_to_verify=data.get("how_to_verify") or data.get("howToVerify"),
            resume_signal=data.get("resume_signal") or data.get("resumeSignal"),
            depends_on=tuple(depends_on),
            dependency_mode=mode,
        )
    files = data.get("files") or ()
    if isinstance(files, str):
        files = [part.strip() for part in files.split(",") if part.strip()]
    return AutoTask(
        id=task_id,
        name=str(data.get("name") or f"Task {index + 1}"),
        files=tuple(str(f) for f in files),
        action=str(data.get("action") or ""),
        verify=data.get("verify"),
        done=data.get("done"),
        type_attr=type_attr,
        depends_on=tuple(depends_on),
        dependency_mode=mode,
    )
