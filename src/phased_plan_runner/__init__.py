"""Provide the public `phased_plan_runner` package exports."""

from __future__ import annotations

from .deviations import classify_deviation, get_deviation_rules, handle_deviation
from .errors import PlanRunnerError
from .executor import PlanExecutor
from .models import ExecutionRecord, ExecutionStrategy, PlanStatus, TaskStatus
from .phase_manager import PhaseManager
from .plan_parser import parse_plan, render_plan, validate_plan
from .subtask_executor import SubtaskExecutor

__all__ = [
    "ExecutionRecord",
    "ExecutionStrategy",
    "PhaseManager",
    "PlanExecutor",
    "PlanRunnerError",
    "PlanStatus",
    "SubtaskExecutor",
    "TaskStatus",
    "classify_deviation",
    "get_deviation_rules",
    "handle_deviation",
    "parse_plan",
    "render_plan",
    "validate_plan",
]
