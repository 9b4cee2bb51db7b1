"""Append deferred work to the project's ISSUES.md."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any

from loguru import logger

from .documents import render_issue_entry
from .io_utils import _atomic_write_text

OPEN_ISSUES_HEADING = "## Open Issues"
_ISSUE_ID_RE = re.compile(r"^### ISS-\d+", re.M)

_ISSUES_TEMPLATE = "# Deferred Issues\n\n" f"{OPEN_ISSUES_HEADING}\n"


class IssueLog:
    """Numbered `ISS-NNN` entries kept under the `## Open Issues` heading."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def _read(self) -> str:
        if not self.path.exists():
            return ""
        return self.path.read_text(encoding="utf-8")

    def count(self) -> int:
        return len(_ISSUE_ID_RE.findall(self._read()))

    def defer(self, entry: dict[str, Any]) -> str:
        """Record `entry` as a new open issue and return its id."""
        content = self._read() or _ISSUES_TEMPLATE
        issue_id = f"ISS-{len(_ISSUE_ID_RE.findall(content)) + 1:03d}"
        block = "\n" + render_issue_entry(issue_id, entry)

        heading = f"{OPEN_ISSUES_HEADING}\n"
        if heading in content:
            content = content.replace(heading, heading + block, 1)
        else:
            if not content.endswith("\n"):
                content += "\n"
            content += f"\n{heading}{block}"

        _atomic_write_text(self.path, content)
        logger.info("Deferred {} to {}: {}", issue_id, self.path.name, entry.get("title") or "")
        return issue_id
