"""Render the markdown documents kept in the phase tree."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Optional

import yaml

from .utils import _now_iso, _today

_CURRENT_POSITION_RE = re.compile(r"## Current Position\n.*?(?=\n## |\Z)", re.S)


def _frontmatter(data: dict[str, Any]) -> str:
    body = yaml.safe_dump(data, sort_keys=False, default_flow_style=None, allow_unicode=True)
    return f"---\n{body}---\n"


def render_phase_context(
    *,
    number: int,
    name: str,
    goal: str,
    depends_on: list[str],
    created_at: Optional[str] = None,
) -> str:
    dependencies = "\n".join(f"- {dep}" for dep in depends_on) if depends_on else "- None"
    return (
        f"# Phase {number}: {name}\n\n"
        f"## Goal\n{goal}\n\n"
        f"## Dependencies\n{dependencies}\n\n"
        "## Discussion Notes\n"
        "*Use this space to capture important decisions and context during phase planning.*\n\n"
        "## Key Decisions\n"
        "| Decision | Rationale | Date |\n"
        "|----------|-----------|------|\n\n"
        "## Technical Notes\n"
        "*Important implementation details, patterns to follow, etc.*\n\n"
        "---\n"
        f"*Created: {created_at or _now_iso()}*\n"
    )


@dataclass
class SummaryData:
    """Everything the summary document reports about one finished plan."""

    phase: str
    phase_name: str
    plan: str
    duration: str = "0s"
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    task_count: int = 0
    accomplishments: list[str] = field(default_factory=list)
    task_commits: list[dict[str, Any]] = field(default_factory=list)
    files_modified: list[str] = field(default_factory=list)
    deviations: list[dict[str, Any]] = field(default_factory=list)
    issues: list[str] = field(default_factory=list)
    decisions: list[str] = field(default_factory=list)
    next_phase_readiness: Optional[str] = None


def _bullets(items: list[str], empty: str = "*None*") -> str:
    return "\n".join(f"- {item}" for item in items) if items else empty


def _render_deviation(index: int, entry: dict[str, Any]) -> str:
    return (
        f"**{index}. [Rule {entry.get('rule', 'N/A')} - {entry.get('category', 'general')}] "
        f"{entry.get('description', '')}**\n"
        f"- **Found during**: Task {entry.get('task') or 'N/A'}\n"
        f"- **Issue**: {entry.get('issue') or 'N/A'}\n"
        f"- **Fix**: {entry.get('fix') or 'N/A'}\n"
        f"- **Verification**: {entry.get('verification') or 'N/A'}\n"
        f"- **Committed in**: {entry.get('commit_hash') or 'N/A'}"
    )


def render_summary(data: SummaryData) -> str:
    """Render the summary document whose presence marks a plan complete."""
    completed_at = data.completed_at or _now_iso()
    front = _frontmatter(
        {
            "phase": f"{data.phase}-{data.phase_name}",
            "plan": data.plan,
            "duration": data.duration,
            "completed": completed_at.split("T")[0] if "T" in completed_at else _today(),
            "key-files": {"modified": list(data.files_modified)},
            "issues-created": [
                entry.get("issue_id") for entry in data.deviations if entry.get("issue_id")
            ],
        }
    )

    commits = (
        "\n".join(
            f"{i}. **{c.get('name')}** - `{c.get('hash')}` ({c.get('type') or 'feat'})"
            for i, c in enumerate(data.task_commits, 1)
        )
        or "*No commits recorded*"
    )
    auto_fixed = [entry for entry in data.deviations if entry.get("type") == "auto-fix"]
    deferred = [entry for entry in data.deviations if entry.get("type") != "auto-fix"]
    auto_fixed_text = "\n\n".join(_render_deviation(i, e) for i, e in enumerate(auto_fixed, 1)) or "*None*"
    deferred_text = (
        "\n".join(
            f"- {e.get('issue_id') or 'Deferred'}: {e.get('description', '')} (Task {e.get('task') or 'N/A'})"
            for e in deferred
        )
        or "*None*"
    )
    files_text = "\n".join(f"- `{path}`" for path in data.files_modified) or "*None*"
    headline = data.accomplishments[0] if data.accomplishments else "Plan executed"

    return (
        f"{front}\n"
        f"# Phase {data.phase} Plan {data.plan}: {data.phase_name} Summary\n\n"
        f"**{headline}**\n\n"
        "## Performance\n"
        f"- **Duration**: {data.duration}\n"
        f"- **Started**: {data.started_at or 'N/A'}\n"
        f"- **Completed**: {completed_at}\n"
        f"- **Tasks**: {data.task_count}\n"
        f"- **Files modified**: {len(data.files_modified)}\n\n"
        f"## Accomplishments\n{_bullets(data.accomplishments, '- Plan completed')}\n\n"
        "## Task Commits\n"
        "Each task committed atomically:\n\n"
        f"{commits}\n\n"
        f"## Files Created/Modified\n{files_text}\n\n"
        f"## Decisions Made\n{_bullets(data.decisions)}\n\n"
        "## Deviations from Plan\n\n"
        f"### Auto-fixed Issues\n{auto_fixed_text}\n\n"
        f"### Deferred Enhancements\n{deferred_text}\n\n"
        f"## Issues Encountered\n{_bullets(data.issues)}\n\n"
        f"## Next Phase Readiness\n{data.next_phase_readiness or 'Ready to proceed to next plan'}\n\n"
        "---\n"
        f"*Completed: {completed_at}*\n"
    )


def render_issue_entry(issue_id: str, entry: dict[str, Any]) -> str:
    lines = [
        f"### {issue_id}: {entry.get('title') or 'Deferred work'}",
        f"- **Phase**: {entry.get('phase') or 'N/A'} (Task {entry.get('task') or 'N/A'})",
        f"- **Type**: {entry.get('type') or 'enhancement'}",
        f"- **Effort**: {entry.get('effort') or 'M'}",
        f"- **Priority**: {entry.get('priority') or 'medium'}",
        f"- **Description**: {entry.get('description') or ''}",
    ]
    if entry.get("proposed_fix"):
        lines.append(f"- **Proposed fix**: {entry['proposed_fix']}")
    return "\n".join(lines) + "\n"


def update_state_position(
    content: str,
    *,
    phase: str,
    plan: str,
    status: str,
    completed: int,
    total: int,
) -> str:
    """Rewrite the `## Current Position` section of STATE.md.

    Content without that section is returned unchanged.
    """
    section = (
        "## Current Position\n"
        f"- **Phase**: {phase}\n"
        f"- **Plan**: {plan} ({status})\n"
        f"- **Status**: {completed}/{total} tasks completed\n"
        f"- **Last activity**: {_today()} - Plan {plan} executed\n"
    )
    return _CURRENT_POSITION_RE.sub(lambda _match: section, content, count=1)
