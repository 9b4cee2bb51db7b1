"""Human-facing console rendering for the CLI."""

from __future__ import annotations

from typing import Any, Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .models import ExecutionRecord, PlanStatus, TaskStatus
from .phase_manager import PhaseInfo, PhaseStatus, PlanFileStatus

_TASK_STYLES = {
    TaskStatus.COMPLETED: "[green]✓ Completed[/green]",
    TaskStatus.FAILED: "[red]✗ Failed[/red]",
    TaskStatus.BLOCKED: "[red]Blocked[/red]",
    TaskStatus.SKIPPED: "[dim]Skipped[/dim]",
    TaskStatus.RUNNING: "[yellow]Running[/yellow]",
}

_PHASE_STYLES = {
    PhaseStatus.COMPLETE: "[green]✓ Complete[/green]",
    PhaseStatus.IN_PROGRESS: "[yellow]In progress[/yellow]",
    PhaseStatus.PENDING: "[dim]Pending[/dim]",
}


def make_console() -> Console:
    return Console(stderr=True)


def print_record(record: ExecutionRecord, console: Optional[Console] = None) -> None:
    console = console or make_console()
    if record.tasks:
        table = Table(title=f"Plan {record.plan_id} ({record.strategy.value})", show_header=True)
        table.add_column("Task", style="cyan")
        table.add_column("Name")
        table.add_column("Status", style="bold")
        table.add_column("Commit")
        table.add_column("Note", style="red")
        for task in record.tasks:
            note = task.error or task.reason or ""
            table.add_row(
                task.id,
                task.name,
                _TASK_STYLES.get(task.status, task.status.value),
                task.commit_hash or "",
                note[:60],
            )
        console.print(table)

    if record.status is PlanStatus.AWAITING_CHECKPOINT and record.checkpoint is not None:
        print_checkpoint(record, console)
    if record.pending_decision:
        print_decision(record.pending_decision, console)
    if record.next_step:
        console.print(f"[bold]Next:[/bold] {record.next_step}")


def print_checkpoint(record: ExecutionRecord, console: Optional[Console] = None) -> None:
    console = console or make_console()
    checkpoint = record.checkpoint
    if checkpoint is None:
        return
    body = [
        f"[bold]{checkpoint.what_built or checkpoint.id}[/bold]",
        "",
        "[bold]How to verify:[/bold]",
        checkpoint.how_to_verify or "(no guidance given)",
        "",
        f"[dim]{checkpoint.resume_signal}[/dim]",
        f"[dim]Resume with: resume {record.plan_path} {checkpoint.id}[/dim]",
    ]
    console.print(
        Panel(
            "\n".join(body),
            title=f"CHECKPOINT {checkpoint.id}: {checkpoint.type} ({checkpoint.gate})",
            border_style="yellow",
        )
    )


def print_decision(prompt: dict[str, Any], console: Optional[Console] = None) -> None:
    console = console or make_console()
    table = Table(show_header=False, box=None)
    table.add_column("Option", style="cyan")
    table.add_column("Description")
    for option in prompt.get("options") or []:
        table.add_row(option.get("id", ""), f"{option.get('label', '')} - {option.get('description', '')}")
    console.print(
        Panel(
            f"{prompt.get('description', '')}\n[dim]Task {prompt.get('task') or 'N/A'}[/dim]",
            title=f"[bold red]{prompt.get('title', 'Decision required')}[/bold red]",
            border_style="red",
        )
    )
    console.print(table)


def print_phases(phases: list[PhaseInfo], console: Optional[Console] = None) -> None:
    console = console or make_console()
    table = Table(title="Phases", show_header=True)
    table.add_column("#", style="cyan")
    table.add_column("Name")
    table.add_column("Plans")
    table.add_column("Status", style="bold")
    for phase in phases:
        done = sum(1 for plan in phase.plans if plan.status is PlanFileStatus.COMPLETE)
        table.add_row(
            f"{phase.number:02d}",
            phase.name,
            f"{done}/{len(phase.plans)}",
            _PHASE_STYLES.get(phase.status, phase.status.value),
        )
    console.print(table)


def print_rules(rules: dict[str, Any], console: Optional[Console] = None) -> None:
    console = console or make_console()
    table = Table(title="Deviation Rules", show_header=True)
    table.add_column("Rule", style="cyan")
    table.add_column("Name")
    table.add_column("Trigger")
    table.add_column("Action")
    table.add_column("Asks user", style="bold")
    for rule in rules.get("rules", []):
        table.add_row(
            str(rule["number"]),
            rule["name"],
            rule["trigger"],
            rule["action"],
            "[red]yes[/red]" if rule["requires_user_input"] else "no",
        )
    console.print(table)
