"""Manage the phase/plan directory tree under `.planning/phases`.

Layout::

    .planning/phases/
      01-foundation/
        01-CONTEXT.md
        01-01-PLAN.md
        01-01-SUMMARY.md      # present once plan 01 has been executed
        01-02-PLAN.md

Nothing here is cached. Phase and plan status are recomputed from directory
contents on every call; a plan is complete exactly when its SUMMARY sibling
exists.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Optional, Union

from loguru import logger

from .constants import (
    CONTEXT_MARKER,
    DOCUMENT_EXTENSION,
    PHASES_DIR_NAME,
    PLAN_MARKER,
    STATE_DIR_NAME,
    SUMMARY_MARKER,
)
from .documents import SummaryData, render_phase_context, render_summary
from .errors import MalformedPlanError, PhaseNotFoundError, PlanRunnerError
from .io_utils import _atomic_write_text
from .models import ParsedPlan, Task
from .plan_parser import parse_plan, render_plan
from .utils import _pad, _to_kebab_case

_PHASE_DIR_RE = re.compile(r"^(\d{2,})-(.+)$")
_PLAN_FILE_RE = re.compile(rf"^(\d{{2,}})-(\d{{2,}})-{PLAN_MARKER}\.[A-Za-z0-9]+$")
_SUMMARY_FILE_RE = re.compile(rf"^(\d{{2,}})-(\d{{2,}})-{SUMMARY_MARKER}\.[A-Za-z0-9]+$")

PhaseRef = Union[int, str]


class PhaseStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"


class PlanFileStatus(str, Enum):
    PENDING = "pending"
    COMPLETE = "complete"


@dataclass
class PlanInfo:
    phase_number: int
    number: int
    file_name: str
    path: Path
    status: PlanFileStatus
    task_count: int = 0

    @property
    def scope(self) -> str:
        return f"{_pad(self.phase_number)}-{_pad(self.number)}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "number": self.number,
            "scope": self.scope,
            "file_name": self.file_name,
            "path": str(self.path),
            "status": self.status.value,
            "task_count": self.task_count,
        }


@dataclass
class PhaseInfo:
    number: int
    name: str
    dir_name: str
    path: Path
    plans: list[PlanInfo] = field(default_factory=list)

    @property
    def status(self) -> PhaseStatus:
        if not self.plans:
            return PhaseStatus.PENDING
        if all(plan.status is PlanFileStatus.COMPLETE for plan in self.plans):
            return PhaseStatus.COMPLETE
        return PhaseStatus.IN_PROGRESS

    def to_dict(self) -> dict[str, Any]:
        return {
            "number": self.number,
            "name": self.name,
            "dir_name": self.dir_name,
            "path": str(self.path),
            "status": self.status.value,
            "plans": [plan.to_dict() for plan in self.plans],
        }


def summary_path_for(plan_path: Path) -> Path:
    """Return the SUMMARY sibling of a plan document."""
    plan_path = Path(plan_path)
    name = plan_path.name
    marker = f"-{PLAN_MARKER}."
    if marker in name:
        stem = name.split(marker, 1)[0]
        return plan_path.with_name(f"{stem}-{SUMMARY_MARKER}{plan_path.suffix or DOCUMENT_EXTENSION}")
    return plan_path.with_name(f"{plan_path.stem}-{SUMMARY_MARKER}{DOCUMENT_EXTENSION}")


def compute_progress(completed: int, total: int) -> int:
    """Percentage of completed plans, rounded half up; 0 when there are none."""
    if total <= 0:
        return 0
    return (200 * completed + total) // (2 * total)


def _count_tasks(path: Path) -> int:
    try:
        return len(parse_plan(path.read_text(encoding="utf-8")).tasks)
    except (OSError, UnicodeDecodeError, MalformedPlanError) as exc:
        logger.warning("Unable to read tasks from {}: {}", path.name, exc)
        return 0


class PhaseManager:
    """Create and inspect phases and plans for one project."""

    def __init__(self, project_dir: Path):
        self.project_dir = Path(project_dir).resolve()
        self.state_dir = self.project_dir / STATE_DIR_NAME
        self.phases_dir = self.state_dir / PHASES_DIR_NAME

    def init(self) -> dict[str, Any]:
        """Create the phases root."""
        self.phases_dir.mkdir(parents=True, exist_ok=True)
        logger.info("Initialized phases directory at {}", self.phases_dir)
        return {"success": True, "path": str(self.phases_dir)}

    def create_phase(self, name: str, goal: str, depends_on: Optional[Iterable[str]] = None) -> dict[str, Any]:
        """Create the next numbered phase directory and its context document.

        Args:
            name: Human phase name; stored in kebab-case.
            goal: What the phase achieves.
            depends_on: Names of phases this one builds on.

        Returns:
            Mapping with the assigned number, directory name and path.

        Raises:
            PlanRunnerError: If the name is empty or the next number is
                already used by an existing directory.
        """
        kebab = _to_kebab_case(name)
        if not kebab:
            raise PlanRunnerError("Phase name must contain letters or digits", context={"name": name})

        phases = self.list_phases()
        number = len(phases) + 1
        taken = {phase.number for phase in phases}
        if number in taken:
            raise PlanRunnerError(
                f"Phase number {_pad(number)} is already in use; phase numbering has a gap",
                context={"number": number, "existing": sorted(taken)},
            )

        dir_name = f"{_pad(number)}-{kebab}"
        phase_path = self.phases_dir / dir_name
        phase_path.mkdir(parents=True, exist_ok=False)
        context = render_phase_context(
            number=number,
            name=kebab,
            goal=goal,
            depends_on=list(depends_on or []),
        )
        _atomic_write_text(phase_path / f"{_pad(number)}-{CONTEXT_MARKER}{DOCUMENT_EXTENSION}", context)
        logger.info("Phase {} '{}' created at {}", number, kebab, phase_path)
        return {
            "success": True,
            "phase_number": number,
            "phase_name": dir_name,
            "path": str(phase_path),
            "message": f"Phase {number} '{kebab}' created",
        }

    def list_phases(self) -> list[PhaseInfo]:
        if not self.phases_dir.exists():
            return []
        phases: list[PhaseInfo] = []
        for entry in self.phases_dir.iterdir():
            if not entry.is_dir():
                continue
            match = _PHASE_DIR_RE.match(entry.name)
            if not match:
                continue
            number = int(match.group(1))
            phases.append(
                PhaseInfo(
                    number=number,
                    name=match.group(2),
                    dir_name=entry.name,
                    path=entry,
                    plans=self._list_plans(entry, number),
                )
            )
        return sorted(phases, key=lambda phase: phase.number)

    def _list_plans(self, phase_path: Path, phase_number: int) -> list[PlanInfo]:
        try:
            names = [entry.name for entry in phase_path.iterdir() if entry.is_file()]
        except OSError as exc:
            logger.warning("Unable to list {}: {}", phase_path, exc)
            return []

        summaries = set()
        for name in names:
            match = _SUMMARY_FILE_RE.match(name)
            if match:
                summaries.add((int(match.group(1)), int(match.group(2))))

        plans: list[PlanInfo] = []
        for name in names:
            match = _PLAN_FILE_RE.match(name)
            if not match or int(match.group(1)) != phase_number:
                continue
            plan_number = int(match.group(2))
            complete = (phase_number, plan_number) in summaries
            path = phase_path / name
            plans.append(
                PlanInfo(
                    phase_number=phase_number,
                    number=plan_number,
                    file_name=name,
                    path=path,
                    status=PlanFileStatus.COMPLETE if complete else PlanFileStatus.PENDING,
                    task_count=_count_tasks(path),
                )
            )
        return sorted(plans, key=lambda plan: plan.number)

    def get_phase(self, identifier: PhaseRef) -> Optional[PhaseInfo]:
        """Find a phase by number (int or digit string) or by name."""
        phases = self.list_phases()
        if isinstance(identifier, int) or str(identifier).strip().isdigit():
            number = int(identifier)
            return next((phase for phase in phases if phase.number == number), None)
        wanted = _to_kebab_case(str(identifier))
        for phase in phases:
            if phase.name == wanted or phase.dir_name == wanted:
                return phase
        return None

    def _require_phase(self, identifier: PhaseRef) -> PhaseInfo:
        phase = self.get_phase(identifier)
        if phase is None:
            raise PhaseNotFoundError(identifier)
        return phase

    def create_plan(
        self,
        phase: PhaseRef,
        tasks: list[Union[Task, dict[str, Any]]],
        objective: Union[str, dict[str, Any], None] = None,
        *,
        depends_on: Optional[list[str]] = None,
        files_modified: Optional[list[str]] = None,
    ) -> dict[str, Any]:
        """Write the next numbered plan document into a phase."""
        phase_info = self._require_phase(phase)
        plan_number = len(phase_info.plans) + 1
        if any(plan.number == plan_number for plan in phase_info.plans):
            raise PlanRunnerError(
                f"Plan number {_pad(plan_number)} is already in use in phase {phase_info.dir_name}",
                context={"phase": phase_info.number, "plan": plan_number},
            )

        content = render_plan(
            phase_number=phase_info.number,
            phase_name=phase_info.name,
            plan_number=plan_number,
            tasks=tasks,
            objective=objective,
            depends_on=depends_on,
            files_modified=files_modified,
        )
        file_name = f"{_pad(phase_info.number)}-{_pad(plan_number)}-{PLAN_MARKER}{DOCUMENT_EXTENSION}"
        plan_path = phase_info.path / file_name
        _atomic_write_text(plan_path, content)
        parsed = parse_plan(content)
        logger.info("Plan {} created with {} task(s)", file_name, len(parsed.tasks))
        return {
            "success": True,
            "plan_number": plan_number,
            "path": str(plan_path),
            "task_count": len(parsed.tasks),
            "tasks": [task.name for task in parsed.tasks],
        }

    def get_plan(self, phase: PhaseRef, plan_number: int) -> Optional[dict[str, Any]]:
        phase_info = self.get_phase(phase)
        if phase_info is None:
            return None
        plan = next((p for p in phase_info.plans if p.number == int(plan_number)), None)
        if plan is None:
            return None
        content = plan.path.read_text(encoding="utf-8")
        parsed: ParsedPlan = parse_plan(content)
        return {
            "phase": phase_info.number,
            "phase_name": phase_info.name,
            "plan_number": plan.number,
            "path": str(plan.path),
            "status": plan.status.value,
            "content": content,
            "parsed": parsed,
        }

    def create_summary(self, phase: PhaseRef, plan_number: int, data: SummaryData) -> dict[str, Any]:
        """Write the SUMMARY document that marks a plan complete."""
        phase_info = self._require_phase(phase)
        plan = next((p for p in phase_info.plans if p.number == int(plan_number)), None)
        if plan is not None:
            path = summary_path_for(plan.path)
        else:
            name = f"{_pad(phase_info.number)}-{_pad(plan_number)}-{SUMMARY_MARKER}{DOCUMENT_EXTENSION}"
            path = phase_info.path / name
        return {"success": True, "path": str(write_summary(path, data))}

    def get_current_phase(self) -> Optional[PhaseInfo]:
        """Return the first phase that is not complete."""
        return next((p for p in self.list_phases() if p.status is not PhaseStatus.COMPLETE), None)

    def get_next_plan(self) -> Optional[dict[str, Any]]:
        current = self.get_current_phase()
        if current is None:
            return None
        pending = next((p for p in current.plans if p.status is PlanFileStatus.PENDING), None)
        if pending is None:
            return None
        return self.get_plan(current.number, pending.number)

    def complete_phase(self, phase: PhaseRef, summary: str = "") -> dict[str, Any]:
        """Confirm every plan in a phase has a SUMMARY."""
        phase_info = self._require_phase(phase)
        incomplete = [p.number for p in phase_info.plans if p.status is not PlanFileStatus.COMPLETE]
        if incomplete:
            return {
                "success": False,
                "error": f"{len(incomplete)} plan(s) not complete",
                "incomplete_plans": incomplete,
            }
        logger.info("Phase {} '{}' complete", phase_info.number, phase_info.name)
        return {
            "success": True,
            "phase": phase_info.number,
            "summary": summary,
            "plans_executed": len(phase_info.plans),
        }

    def get_phase_status(self, phase: Optional[PhaseRef] = None) -> dict[str, Any]:
        """Aggregate plan statuses for a phase (default: the current one).

        The first plan without a SUMMARY is reported as in progress; later
        ones as pending.
        """
        phase_info = self.get_phase(phase) if phase is not None else self.get_current_phase()
        if phase_info is None:
            raise PhaseNotFoundError(phase if phase is not None else "current")

        completed = [p for p in phase_info.plans if p.status is PlanFileStatus.COMPLETE]
        outstanding = [p for p in phase_info.plans if p.status is not PlanFileStatus.COMPLETE]
        current = outstanding[0] if outstanding else None
        total = len(phase_info.plans)

        return {
            "phase": phase_info.number,
            "name": phase_info.name,
            "status": phase_info.status.value,
            "plans": {
                "total": total,
                "completed": len(completed),
                "in_progress": 1 if current else 0,
                "pending": max(0, len(outstanding) - 1),
                "current": current.number if current else None,
            },
            "current_plan": current.to_dict() if current else None,
            "tasks_completed": sum(p.task_count for p in completed),
            "tasks_remaining": sum(p.task_count for p in outstanding),
            "progress": compute_progress(len(completed), total),
            "next_step": self._next_step(phase_info, current),
        }

    @staticmethod
    def _next_step(phase_info: PhaseInfo, current: Optional[PlanInfo]) -> str:
        if phase_info.status is PhaseStatus.COMPLETE:
            return "Phase complete. Start next phase."
        if not phase_info.plans:
            return f"Plan phase {phase_info.number}"
        if current is not None:
            return f"Execute plan {current.scope}"
        return "Complete current plan"


def write_summary(path: Path, data: SummaryData) -> Path:
    _atomic_write_text(path, render_summary(data))
    logger.info("Summary written to {}", path)
    return path
