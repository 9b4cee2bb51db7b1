"""Error taxonomy for plan parsing, execution and resumption.

Every error carries a stable `code` so callers can tell a missing plan apart
from an unapproved checkpoint without matching on message text.
"""

from __future__ import annotations

from typing import Any, Optional

from .constants import CHECKPOINT_NOT_APPROVED, NO_RETRYABLE_SUBTASKS
from .utils import _now_iso


class PlanRunnerError(Exception):
    """Base class for all runner errors."""

    code = "PLAN_RUNNER_ERROR"

    def __init__(self, message: str, *, context: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = dict(context or {})
        self.timestamp = _now_iso()

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable mapping."""
        return {
            "name": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp,
        }


class MalformedPlanError(PlanRunnerError):
    """The plan document has no usable task section."""

    code = "MALFORMED_PLAN"


class PlanFileNotFoundError(PlanRunnerError):
    code = "PLAN_FILE_NOT_FOUND"

    def __init__(self, plan_path: Any):
        super().__init__(f"Plan file not found: {plan_path}", context={"plan_path": str(plan_path)})
        self.plan_path = str(plan_path)


class CheckpointNotFoundError(PlanRunnerError):
    code = "CHECKPOINT_NOT_FOUND"

    def __init__(self, checkpoint_id: str, plan_path: Any = None):
        super().__init__(
            f"Checkpoint not found: {checkpoint_id}",
            context={"checkpoint_id": checkpoint_id, "plan_path": str(plan_path) if plan_path else None},
        )
        self.checkpoint_id = checkpoint_id


class TaskExecutionError(PlanRunnerError):
    """A single task failed; recorded on the task result, never fatal to the plan."""

    code = "TASK_EXECUTION_FAILED"

    def __init__(self, task_id: str, message: str):
        super().__init__(message, context={"task_id": task_id})
        self.task_id = task_id


class CheckpointNotApprovedError(PlanRunnerError):
    code = "CHECKPOINT_NOT_APPROVED"

    def __init__(self, checkpoint_id: str):
        super().__init__(CHECKPOINT_NOT_APPROVED, context={"checkpoint_id": checkpoint_id})
        self.checkpoint_id = checkpoint_id


class GitOperationError(TaskExecutionError):
    code = "GIT_OPERATION_FAILED"


class PhaseNotFoundError(PlanRunnerError):
    code = "PHASE_NOT_FOUND"

    def __init__(self, phase: Any):
        super().__init__(f"Phase not found: {phase}", context={"phase": phase})


class PlanNotFoundError(PlanRunnerError):
    code = "PLAN_NOT_FOUND"

    def __init__(self, plan_id: str):
        super().__init__(f"Plan not found: {plan_id}", context={"plan_id": plan_id})


class NoRetryableSubtasksError(PlanRunnerError):
    code = "NO_RETRYABLE_SUBTASKS"

    def __init__(self, plan_id: str):
        super().__init__(NO_RETRYABLE_SUBTASKS, context={"plan_id": plan_id})


class SubtaskNotFoundError(PlanRunnerError):
    code = "SUBTASK_NOT_FOUND"

    def __init__(self, plan_id: str, subtask_id: str):
        super().__init__(
            f"Subtask not found: {subtask_id}",
            context={"plan_id": plan_id, "subtask_id": subtask_id},
        )
