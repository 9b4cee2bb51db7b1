"""Long-lived executor for small subtask plans persisted as JSON.

A subtask plan breaks one piece of work into at most `max_subtasks` pieces,
runs them in priority-then-dependency order through a `SubtaskRunner`, and
keeps every attempt on disk under `.planning/subtask_plans/<plan_id>.json`
so status, results and retries survive process restarts.
"""

from __future__ import annotations

import threading
import time
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Mapping, Optional, Protocol, Union

from loguru import logger

from .config import RunnerConfig, load_runner_config
from .constants import DEFAULT_CLEANUP_DAYS, STATE_DIR_NAME, SUBTASK_PLANS_DIR_NAME
from .errors import NoRetryableSubtasksError, PlanNotFoundError, PlanRunnerError, SubtaskNotFoundError
from .io_utils import _atomic_write_json, _load_data_with_error
from .models import DependencyMode, PlanStatus, TaskStatus, _coerce_enum
from .scheduling import dependencies_met, order_by_dependencies
from .utils import _now_iso, _parse_iso

PRIORITY_URGENT = 1
PRIORITY_HIGH = 2
PRIORITY_NORMAL = 3
PRIORITY_LOW = 4

_SUCCESS_STATUSES = {"success", "completed", "ok"}


@dataclass
class RetryPolicy:
    max_attempts: int
    current_attempt: int = 0
    backoff_ms: int = 1000

    @property
    def exhausted(self) -> bool:
        return self.current_attempt >= self.max_attempts


@dataclass
class Subtask:
    """One unit of a subtask plan."""

    id: str
    plan_id: str
    sequence: int
    description: str
    priority: int = PRIORITY_NORMAL
    status: TaskStatus = TaskStatus.PENDING
    agent_type: str = "general"
    input: dict[str, Any] = field(default_factory=dict)
    dependencies: list[str] = field(default_factory=list)
    dependency_mode: DependencyMode = DependencyMode.ALL
    retry: RetryPolicy = field(default_factory=lambda: RetryPolicy(max_attempts=3))
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    duration_ms: Optional[int] = None

    @property
    def depends_on(self) -> list[str]:
        return self.dependencies

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["dependency_mode"] = self.dependency_mode.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Subtask":
        retry = data.get("retry") or {}
        return cls(
            id=data.get("id", ""),
            plan_id=data.get("plan_id", ""),
            sequence=int(data.get("sequence", 0)),
            description=data.get("description", ""),
            priority=int(data.get("priority", PRIORITY_NORMAL)),
            status=_coerce_enum(TaskStatus, data.get("status", "pending"), TaskStatus.PENDING),
            agent_type=data.get("agent_type", "general"),
            input=dict(data.get("input") or {}),
            dependencies=list(data.get("dependencies") or []),
            dependency_mode=_coerce_enum(DependencyMode, data.get("dependency_mode", "all"), DependencyMode.ALL),
            retry=RetryPolicy(
                max_attempts=int(retry.get("max_attempts", 3)),
                current_attempt=int(retry.get("current_attempt", 0)),
                backoff_ms=int(retry.get("backoff_ms", 1000)),
            ),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            duration_ms=data.get("duration_ms"),
        )


@dataclass
class SubtaskPlan:
    id: str
    description: str
    session_id: Optional[str] = None
    status: PlanStatus = PlanStatus.PENDING
    subtasks: list[Subtask] = field(default_factory=list)
    context: dict[str, Any] = field(default_factory=dict)
    results: dict[str, Any] = field(default_factory=dict)
    current_subtask_id: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    cancel_reason: Optional[str] = None
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)

    @property
    def priority(self) -> int:
        return min((s.priority for s in self.subtasks), default=PRIORITY_LOW)

    def get_subtask(self, subtask_id: str) -> Optional[Subtask]:
        return next((s for s in self.subtasks if s.id == subtask_id), None)

    def count(self, status: TaskStatus) -> int:
        return sum(1 for s in self.subtasks if s.status == status)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "session_id": self.session_id,
            "status": self.status.value,
            "priority": self.priority,
            "subtasks": [s.to_dict() for s in self.subtasks],
            "context": self.context,
            "results": self.results,
            "current_subtask_id": self.current_subtask_id,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "cancel_reason": self.cancel_reason,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SubtaskPlan":
        return cls(
            id=data.get("id", ""),
            description=data.get("description", ""),
            session_id=data.get("session_id"),
            status=_coerce_enum(PlanStatus, data.get("status", "pending"), PlanStatus.PENDING),
            subtasks=[Subtask.from_dict(item) for item in data.get("subtasks") or []],
            context=dict(data.get("context") or {}),
            results=dict(data.get("results") or {}),
            current_subtask_id=data.get("current_subtask_id"),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            cancel_reason=data.get("cancel_reason"),
            created_at=data.get("created_at") or _now_iso(),
            updated_at=data.get("updated_at") or _now_iso(),
        )


class SubtaskRunner(Protocol):
    def run(self, subtask: Subtask, plan: SubtaskPlan, prior_results: dict[str, Any]) -> Mapping[str, Any]:
        """Run one subtask; a result whose `status` is `"success"` completes it."""
        ...


SubtaskSpec = Union[str, Mapping[str, Any]]


class SubtaskExecutor:
    """Create, run, retry and inspect persisted subtask plans."""

    def __init__(
        self,
        project_dir: Path,
        runner: SubtaskRunner,
        *,
        config: Optional[RunnerConfig] = None,
    ):
        self.project_dir = Path(project_dir).resolve()
        if config is None:
            config, err = load_runner_config(self.project_dir)
            if err:
                logger.warning("Ignoring invalid runner config: {}", err)
        self.config = config
        self.runner = runner
        self.plans_dir = self.project_dir / STATE_DIR_NAME / SUBTASK_PLANS_DIR_NAME
        self._plans: dict[str, SubtaskPlan] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Persistence

    def _plan_path(self, plan_id: str) -> Path:
        return self.plans_dir / f"{plan_id}.json"

    def _save(self, plan: SubtaskPlan) -> None:
        plan.updated_at = _now_iso()
        _atomic_write_json(self._plan_path(plan.id), plan.to_dict())
        self._plans[plan.id] = plan

    def _load(self, plan_id: str) -> Optional[SubtaskPlan]:
        if plan_id in self._plans:
            return self._plans[plan_id]
        path = self._plan_path(plan_id)
        if not path.exists():
            return None
        data, err = _load_data_with_error(path, {})
        if err:
            logger.warning("Unable to load subtask plan {}: {}", plan_id, err)
            return None
        plan = SubtaskPlan.from_dict(data)
        self._plans[plan_id] = plan
        return plan

    def _require(self, plan_id: str) -> SubtaskPlan:
        plan = self._load(plan_id)
        if plan is None:
            raise PlanNotFoundError(plan_id)
        return plan

    def _plan_ids(self) -> list[str]:
        if not self.plans_dir.exists():
            return []
        return sorted(path.stem for path in self.plans_dir.glob("*.json"))

    # ------------------------------------------------------------------
    # Operations

    def create_plan(
        self,
        task: str,
        session_id: Optional[str] = None,
        *,
        subtasks: Optional[list[SubtaskSpec]] = None,
        context: Optional[dict[str, Any]] = None,
        max_subtasks: Optional[int] = None,
    ) -> SubtaskPlan:
        """Create and persist a pending plan.

        Args:
            task: Description of the overall work.
            session_id: Session the plan belongs to.
            subtasks: Subtask definitions, each a description string or a
                mapping with `description`, `priority`, `agent_type`, `input`,
                `dependencies` (1-based sequence numbers) and
                `dependency_mode`. Defaults to one subtask covering `task`.
            context: Free-form context stored with the plan.
            max_subtasks: Cap on the number of subtasks; definitions beyond
                it are folded into the last kept subtask.
        """
        limit = max(1, min(max_subtasks or self.config.max_subtasks, self.config.max_subtasks))
        specs: list[dict[str, Any]] = [
            {"description": spec} if isinstance(spec, str) else dict(spec) for spec in (subtasks or [task])
        ]
        if len(specs) > limit:
            overflow = specs[limit:]
            specs = specs[:limit]
            folded = "; ".join(str(spec.get("description", "")) for spec in overflow)
            specs[-1]["description"] = f"{specs[-1].get('description', '')}; {folded}"
            logger.info("Folded {} extra subtask(s) into subtask {}", len(overflow), limit)

        plan_id = f"plan_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"
        ids = [f"st_{index}_{uuid.uuid4().hex[:6]}" for index in range(1, len(specs) + 1)]
        built: list[Subtask] = []
        for index, spec in enumerate(specs):
            dependencies = []
            for dep in spec.get("dependencies") or []:
                if isinstance(dep, int) and 1 <= dep <= len(ids):
                    dependencies.append(ids[dep - 1])
                elif isinstance(dep, str):
                    dependencies.append(dep)
            built.append(
                Subtask(
                    id=ids[index],
                    plan_id=plan_id,
                    sequence=index + 1,
                    description=str(spec.get("description") or task),
                    priority=int(spec.get("priority", PRIORITY_NORMAL)),
                    agent_type=str(spec.get("agent_type") or "general"),
                    input=dict(spec.get("input") or {"task": spec.get("description") or task}),
                    dependencies=dependencies,
                    dependency_mode=_coerce_enum(
                        DependencyMode, spec.get("dependency_mode") or "all", DependencyMode.ALL
                    ),
                    retry=RetryPolicy(
                        max_attempts=int(spec.get("max_retries") or self.config.max_attempts),
                        backoff_ms=self.config.backoff_ms,
                    ),
                )
            )

        plan = SubtaskPlan(
            id=plan_id,
            description=task,
            session_id=session_id,
            subtasks=built,
            context=dict(context or {}),
        )
        with self._lock:
            self._save(plan)
        logger.info("Subtask plan {} created with {} subtask(s)", plan_id, len(built))
        return plan

    def execute(self, plan_id: str) -> dict[str, Any]:
        """Run every pending subtask of a plan and return the outcome.

        Raises:
            PlanNotFoundError: No plan with this id exists.
            PlanRunnerError: The plan is already running.
        """
        with self._lock:
            plan = self._require(plan_id)
            if plan.status is PlanStatus.RUNNING:
                raise PlanRunnerError(f"Plan already running: {plan_id}", context={"plan_id": plan_id})
            if plan.status is PlanStatus.COMPLETED:
                return {"status": "already_completed", "plan_id": plan_id}
            plan.status = PlanStatus.RUNNING
            plan.started_at = _now_iso()
            plan.completed_at = None
            self._save(plan)
        logger.info("Executing subtask plan {}", plan_id)

        by_priority = sorted(plan.subtasks, key=lambda s: s.priority)
        ordered, _cyclic = order_by_dependencies(by_priority)
        for subtask in ordered:
            with self._lock:
                if plan.status is PlanStatus.CANCELLED:
                    break
            if subtask.status not in (TaskStatus.PENDING, TaskStatus.BLOCKED):
                continue
            statuses = {s.id: s.status for s in plan.subtasks}
            if not dependencies_met(subtask.dependencies, subtask.dependency_mode, statuses):
                subtask.status = TaskStatus.BLOCKED
                with self._lock:
                    self._save(plan)
                logger.warning("Subtask {} blocked by unmet dependencies", subtask.id)
                continue
            self._run_subtask(plan, subtask)

        with self._lock:
            plan.current_subtask_id = None
            plan.completed_at = _now_iso()
            if plan.status is not PlanStatus.CANCELLED:
                completed = plan.count(TaskStatus.COMPLETED)
                if completed == len(plan.subtasks):
                    plan.status = PlanStatus.COMPLETED
                elif completed > 0:
                    plan.status = PlanStatus.PARTIAL
                else:
                    plan.status = PlanStatus.FAILED
            self._save(plan)
        logger.info("Subtask plan {} finished with status {}", plan_id, plan.status.value)

        return {
            "status": plan.status.value,
            "plan_id": plan_id,
            "results": dict(plan.results),
            "summary": {
                "completed": plan.count(TaskStatus.COMPLETED),
                "failed": plan.count(TaskStatus.FAILED),
                "blocked": plan.count(TaskStatus.BLOCKED),
                "total": len(plan.subtasks),
            },
        }

    def _run_subtask(self, plan: SubtaskPlan, subtask: Subtask) -> None:
        with self._lock:
            plan.current_subtask_id = subtask.id
            subtask.status = TaskStatus.RUNNING
            subtask.started_at = _now_iso()
            subtask.retry.current_attempt += 1
            self._save(plan)

        prior = {dep: plan.results[dep] for dep in subtask.dependencies if dep in plan.results}
        started = time.monotonic()
        try:
            result = dict(self.runner.run(subtask, plan, prior))
            succeeded = str(result.get("status", "")).lower() in _SUCCESS_STATUSES
        except Exception as exc:  # runner failures are recorded per subtask
            logger.exception("Subtask runner raised for {}", subtask.id)
            result = {
                "status": "error",
                "error": f"{exc.__class__.__name__}: {exc}",
                "retryable": not subtask.retry.exhausted,
            }
            succeeded = False

        with self._lock:
            subtask.completed_at = _now_iso()
            subtask.duration_ms = int((time.monotonic() - started) * 1000)
            plan.results[subtask.id] = result
            subtask.status = TaskStatus.COMPLETED if succeeded else TaskStatus.FAILED
            self._save(plan)
        if succeeded:
            logger.info("Subtask {} completed in {}ms", subtask.id, subtask.duration_ms)
        else:
            logger.error(
                "Subtask {} failed (attempt {}/{})",
                subtask.id,
                subtask.retry.current_attempt,
                subtask.retry.max_attempts,
            )

    def get_status(self, plan_id: str) -> dict[str, Any]:
        plan = self._require(plan_id)
        return {
            "plan_id": plan.id,
            "status": plan.status.value,
            "progress": {
                "completed": plan.count(TaskStatus.COMPLETED),
                "running": plan.count(TaskStatus.RUNNING),
                "pending": plan.count(TaskStatus.PENDING),
                "failed": plan.count(TaskStatus.FAILED),
                "blocked": plan.count(TaskStatus.BLOCKED),
                "skipped": plan.count(TaskStatus.SKIPPED),
                "total": len(plan.subtasks),
            },
            "subtasks": [
                {
                    "id": s.id,
                    "sequence": s.sequence,
                    "status": s.status.value,
                    "description": s.description[:100],
                    "priority": s.priority,
                    "attempts": s.retry.current_attempt,
                    "duration_ms": s.duration_ms,
                }
                for s in plan.subtasks
            ],
            "current_subtask": plan.current_subtask_id,
            "started_at": plan.started_at,
            "completed_at": plan.completed_at,
        }

    def get_subtask_result(self, plan_id: str, subtask_id: str) -> dict[str, Any]:
        plan = self._require(plan_id)
        subtask = plan.get_subtask(subtask_id)
        if subtask is None:
            raise SubtaskNotFoundError(plan_id, subtask_id)
        return {
            "subtask_id": subtask.id,
            "status": subtask.status.value,
            "description": subtask.description,
            "result": plan.results.get(subtask.id),
            "started_at": subtask.started_at,
            "completed_at": subtask.completed_at,
            "duration_ms": subtask.duration_ms,
            "attempts": subtask.retry.current_attempt,
        }

    def cancel(self, plan_id: str, reason: str = "User cancelled") -> dict[str, Any]:
        """Cancel a running plan; subtasks that have not started are skipped."""
        with self._lock:
            plan = self._require(plan_id)
            if plan.status is not PlanStatus.RUNNING:
                return {"success": False, "error": "Plan is not running", "status": plan.status.value}
            plan.status = PlanStatus.CANCELLED
            plan.cancel_reason = reason
            plan.completed_at = _now_iso()
            for subtask in plan.subtasks:
                if subtask.status in (TaskStatus.PENDING, TaskStatus.BLOCKED):
                    subtask.status = TaskStatus.SKIPPED
            self._save(plan)
        logger.info("Subtask plan {} cancelled: {}", plan_id, reason)
        return {
            "success": True,
            "status": PlanStatus.CANCELLED.value,
            "plan_id": plan_id,
            "reason": reason,
            "completed_subtasks": [s.id for s in plan.subtasks if s.status == TaskStatus.COMPLETED],
        }

    def retry(self, plan_id: str) -> dict[str, Any]:
        """Reset failed subtasks with attempts left and run the plan again.

        Raises:
            PlanNotFoundError: No plan with this id exists.
            NoRetryableSubtasksError: No failed subtask has attempts left.
        """
        with self._lock:
            plan = self._require(plan_id)
            retryable = [
                s for s in plan.subtasks if s.status == TaskStatus.FAILED and not s.retry.exhausted
            ]
            if not retryable:
                raise NoRetryableSubtasksError(plan_id)
            for subtask in retryable:
                subtask.status = TaskStatus.PENDING
            plan.status = PlanStatus.PENDING
            self._save(plan)
        logger.info("Retrying {} subtask(s) in plan {}", len(retryable), plan_id)
        return self.execute(plan_id)

    def list_plans(self, status: Optional[str] = None, session_id: Optional[str] = None) -> list[dict[str, Any]]:
        """Summaries of stored plans, newest first."""
        plans = []
        for plan_id in self._plan_ids():
            plan = self._load(plan_id)
            if plan is None:
                continue
            if status and plan.status.value != status:
                continue
            if session_id and plan.session_id != session_id:
                continue
            plans.append(plan)
        plans.sort(key=lambda p: p.created_at, reverse=True)
        return [
            {
                "id": p.id,
                "status": p.status.value,
                "subtask_count": len(p.subtasks),
                "created_at": p.created_at,
                "completed_at": p.completed_at,
                "description": p.description[:100],
            }
            for p in plans
        ]

    def cleanup(self, older_than_days: int = DEFAULT_CLEANUP_DAYS) -> int:
        """Delete completed plans created more than `older_than_days` ago."""
        cutoff = datetime.now(timezone.utc) - timedelta(days=older_than_days)
        removed = 0
        for plan_id in self._plan_ids():
            plan = self._load(plan_id)
            if plan is None or plan.status is not PlanStatus.COMPLETED:
                continue
            created = _parse_iso(plan.created_at)
            if created is None or created >= cutoff:
                continue
            try:
                self._plan_path(plan_id).unlink()
            except OSError as exc:
                logger.warning("Unable to remove subtask plan {}: {}", plan_id, exc)
                continue
            self._plans.pop(plan_id, None)
            removed += 1
        if removed:
            logger.info("Removed {} completed subtask plan(s)", removed)
        return removed
