#!/usr/bin/env python3
"""Provide the CLI entrypoint and subcommands for the phased plan runner.

Human-facing output (tables, checkpoint and decision panels) goes to stderr;
`--json` prints the machine-readable payload to stdout.
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Callable, Optional

from loguru import logger

from .config import load_runner_config
from .deviations import Deviation, get_deviation_rules, handle_deviation
from .display import make_console, print_decision, print_phases, print_record, print_rules
from .errors import PlanRunnerError
from .executor import PlanExecutor
from .io_utils import _load_data_with_error
from .models import ExecutionRecord
from .phase_manager import PhaseManager

__all__ = ["main"]

_STRATEGIES = ["auto", "autonomous", "segmented", "decision"]


def _configure_logging(level: str = "INFO") -> None:
    """Configure loguru logger with the specified level."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{module}</cyan>:<cyan>{line}</cyan>\n"
            "{message}"
        ),
    )


def _emit_json(payload: Any) -> None:
    sys.stdout.write(json.dumps(payload, indent=2, default=str) + "\n")


def _add_common_args(parser: argparse.ArgumentParser) -> argparse.ArgumentParser:
    parser.add_argument(
        "--project-dir",
        type=Path,
        default=Path("."),
        help="Project directory (default: current directory)",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        type=str.upper,
        help="Logging level (default: config log_level, else INFO)",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print machine-readable JSON",
    )
    return parser


def _build_init_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="phased-plan-runner init",
        description="Create the .planning/phases directory",
    )
    return _add_common_args(parser)


def _build_phase_create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="phased-plan-runner phase-create",
        description="Create the next numbered phase",
    )
    parser.add_argument("name", help="Phase name (stored in kebab-case)")
    parser.add_argument("--goal", default="", help="What the phase achieves")
    parser.add_argument(
        "--depends-on",
        action="append",
        default=[],
        help="Name of a phase this one builds on (repeatable)",
    )
    return _add_common_args(parser)


def _build_phases_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="phased-plan-runner phases",
        description="List phases and their plans",
    )
    return _add_common_args(parser)


def _build_phase_status_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="phased-plan-runner phase-status",
        description="Show plan progress for a phase (default: the current phase)",
    )
    parser.add_argument("phase", nargs="?", default=None, help="Phase number or name")
    return _add_common_args(parser)


def _build_plan_create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="phased-plan-runner plan-create",
        description="Write the next numbered plan document into a phase",
    )
    parser.add_argument("phase", help="Phase number or name")
    parser.add_argument(
        "--tasks-file",
        type=Path,
        required=True,
        help="JSON or YAML file with a 'tasks' list (and optional objective, depends_on, files_modified)",
    )
    parser.add_argument("--objective", default=None, help="Plan objective (overrides the tasks file)")
    return _add_common_args(parser)


def _build_execute_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="phased-plan-runner execute",
        description="Execute a plan document from its first task",
    )
    parser.add_argument("plan", type=Path, help="Plan document path")
    parser.add_argument("--dry-run", action="store_true", help="Parse and lint only; run nothing")
    parser.add_argument("--strategy", choices=_STRATEGIES, default=None, help="Execution strategy")
    parser.add_argument("--session-id", default=None, help="Opaque id passed to the task runner")
    return _add_common_args(parser)


def _build_resume_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="phased-plan-runner resume",
        description="Continue a plan after answering a checkpoint",
    )
    parser.add_argument("plan", type=Path, help="Plan document path")
    parser.add_argument("checkpoint_id", help="Id of the checkpoint task that was answered")
    parser.add_argument("--reject", action="store_true", help="Reject the checkpoint; fails the plan")
    parser.add_argument("--result", default=None, help="Free-form answer recorded with the checkpoint")
    parser.add_argument("--strategy", choices=_STRATEGIES, default=None, help="Execution strategy")
    parser.add_argument("--session-id", default=None, help="Opaque id passed to the task runner")
    return _add_common_args(parser)


def _build_classify_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="phased-plan-runner classify",
        description="Classify a deviation against the deviation rules",
    )
    parser.add_argument("description", help="What deviated from the plan")
    parser.add_argument("--type", dest="deviation_type", default=None, help="Deviation type hint (bug, design, ...)")
    parser.add_argument("--blocks-progress", action="store_true", help="The deviation blocks further work")
    parser.add_argument("--task", default=None, help="Task id the deviation was found in")
    return _add_common_args(parser)


def _build_rules_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="phased-plan-runner rules",
        description="Show the deviation rules",
    )
    return _add_common_args(parser)


def _record_exit_code(record: ExecutionRecord) -> int:
    return 0 if record.success else 1


def _show_record(record: ExecutionRecord, *, as_json: bool) -> int:
    if as_json:
        _emit_json(record.to_dict())
    else:
        print_record(record, make_console())
        for warning in record.warnings:
            logger.warning("{}", warning)
        if record.error:
            make_console().print(f"[red]{record.error}[/red]")
    return _record_exit_code(record)


def _init_command(args: argparse.Namespace) -> int:
    result = PhaseManager(args.project_dir).init()
    if args.json:
        _emit_json(result)
    else:
        make_console().print(f"Initialized [cyan]{result['path']}[/cyan]")
    return 0


def _phase_create_command(args: argparse.Namespace) -> int:
    result = PhaseManager(args.project_dir).create_phase(args.name, args.goal, args.depends_on)
    if args.json:
        _emit_json(result)
    else:
        make_console().print(f"[green]{result['message']}[/green] at {result['path']}")
    return 0


def _phases_command(args: argparse.Namespace) -> int:
    phases = PhaseManager(args.project_dir).list_phases()
    if args.json:
        _emit_json([phase.to_dict() for phase in phases])
    elif phases:
        print_phases(phases, make_console())
    else:
        make_console().print("No phases found. Create one with `phase-create`.")
    return 0


def _phase_status_command(args: argparse.Namespace) -> int:
    status = PhaseManager(args.project_dir).get_phase_status(args.phase)
    if args.json:
        _emit_json(status)
        return 0
    console = make_console()
    plans = status["plans"]
    console.print(f"[bold]Phase {status['phase']}: {status['name']}[/bold] ({status['status']})")
    console.print(
        f"Plans: {plans['completed']}/{plans['total']} complete, "
        f"{plans['in_progress']} in progress, {plans['pending']} pending"
    )
    console.print(f"Progress: {status['progress']}%")
    console.print(f"[bold]Next:[/bold] {status['next_step']}")
    return 0


def _plan_create_command(args: argparse.Namespace) -> int:
    context = {"path": str(args.tasks_file)}
    if not args.tasks_file.exists():
        raise PlanRunnerError(f"Tasks file not found: {args.tasks_file}", context=context)
    data, err = _load_data_with_error(args.tasks_file, {})
    if err:
        raise PlanRunnerError(f"Unable to read tasks file: {err}", context=context)
    tasks = data.get("tasks")
    if not isinstance(tasks, list) or not tasks:
        raise PlanRunnerError("Tasks file must contain a non-empty 'tasks' list", context=context)

    result = PhaseManager(args.project_dir).create_plan(
        args.phase,
        tasks,
        args.objective or data.get("objective"),
        depends_on=data.get("depends_on"),
        files_modified=data.get("files_modified"),
    )
    if args.json:
        _emit_json(result)
    else:
        make_console().print(
            f"[green]Plan {result['plan_number']} created[/green] "
            f"with {result['task_count']} task(s): {result['path']}"
        )
    return 0


def _execute_command(args: argparse.Namespace) -> int:
    executor = PlanExecutor(args.project_dir)
    record = executor.execute_plan(
        args.plan,
        dry_run=bool(args.dry_run),
        strategy=args.strategy,
        session_id=args.session_id,
    )
    return _show_record(record, as_json=bool(args.json))


def _resume_command(args: argparse.Namespace) -> int:
    executor = PlanExecutor(args.project_dir)
    record = executor.resume_checkpoint(
        args.plan,
        args.checkpoint_id,
        approved=not args.reject,
        result=args.result,
        session_id=args.session_id,
        strategy=args.strategy,
    )
    return _show_record(record, as_json=bool(args.json))


def _classify_command(args: argparse.Namespace) -> int:
    deviation = Deviation(
        description=args.description,
        type=args.deviation_type or "",
        blocks_progress=bool(args.blocks_progress),
    )
    handling = handle_deviation(deviation, task_id=args.task)
    if args.json:
        _emit_json(handling.to_dict())
        return 0
    console = make_console()
    classification = handling.classification
    console.print(
        f"[bold]Rule {int(classification.rule)}[/bold] ({classification.category}): "
        f"{classification.action.value}"
    )
    if handling.user_prompt:
        print_decision(handling.user_prompt, console)
    for step in handling.instructions:
        console.print(f"- {step}")
    return 0


def _rules_command(args: argparse.Namespace) -> int:
    rules = get_deviation_rules()
    if args.json:
        _emit_json(rules)
    else:
        print_rules(rules, make_console())
        make_console().print(rules["summary"])
    return 0


_COMMANDS: dict[str, tuple[Callable[[], argparse.ArgumentParser], Callable[[argparse.Namespace], int]]] = {
    "init": (_build_init_parser, _init_command),
    "phase-create": (_build_phase_create_parser, _phase_create_command),
    "phases": (_build_phases_parser, _phases_command),
    "phase-status": (_build_phase_status_parser, _phase_status_command),
    "plan-create": (_build_plan_create_parser, _plan_create_command),
    "execute": (_build_execute_parser, _execute_command),
    "resume": (_build_resume_parser, _resume_command),
    "classify": (_build_classify_parser, _classify_command),
    "rules": (_build_rules_parser, _rules_command),
}


def _usage() -> str:
    return "usage: phased-plan-runner {" + ",".join(_COMMANDS) + "} [options]\n"


def _resolve_log_level(args: argparse.Namespace) -> str:
    if args.log_level:
        return args.log_level
    config, _err = load_runner_config(Path(args.project_dir))
    return config.log_level


def main(argv: Optional[list[str]] = None) -> None:
    """Run the `phased-plan-runner` CLI.

    Args:
        argv: Optional argument list (excluding the executable name). When omitted,
            uses `sys.argv[1:]`.

    Raises:
        SystemExit: Always; 0 on success, 1 when an execution record reports
            failure, 2 on a runner error or bad usage.
    """
    argv = list(sys.argv[1:] if argv is None else argv)
    if not argv or argv[0] in {"-h", "--help"}:
        sys.stderr.write(_usage())
        raise SystemExit(0 if argv else 2)
    if argv[0] not in _COMMANDS:
        sys.stderr.write(f"Unknown command: {argv[0]}\n{_usage()}")
        raise SystemExit(2)

    build_parser, handler = _COMMANDS[argv[0]]
    args = build_parser().parse_args(argv[1:])
    _configure_logging(_resolve_log_level(args))
    try:
        code = handler(args)
    except PlanRunnerError as exc:
        logger.error("{} failed: {}", argv[0], exc.message)
        _emit_json({"success": False, "error": exc.to_dict()})
        raise SystemExit(2)
    raise SystemExit(code)


if __name__ == "__main__":
    main()
