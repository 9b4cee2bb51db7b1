"""Provide utility helpers for timestamps, durations and identifiers."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Optional

_KEBAB_RE = re.compile(r"[^a-z0-9]+")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _today() -> str:
    return datetime.now(timezone.utc).date().isoformat()


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        if not isinstance(value, str):
            value = str(value)
        if value.endswith("Z"):
            value = value[:-1] + "+00:00"
        dt = datetime.fromisoformat(value)
        # If a naive timestamp slips in, assume UTC to avoid crashes.
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt
    except ValueError:
        return None


def _format_duration(seconds: float) -> str:
    """Render a duration as `"{m}min {s}s"` or `"{s}s"`."""
    total = max(0, int(seconds))
    minutes, remaining = divmod(total, 60)
    if minutes > 0:
        return f"{minutes}min {remaining}s"
    return f"{remaining}s"


def _pad(number: int | str, width: int = 2) -> str:
    return str(int(number)).zfill(width)


def _to_kebab_case(value: str) -> str:
    return _KEBAB_RE.sub("-", str(value).lower()).strip("-")


def _leading_number(value: object) -> Optional[int]:
    """Return the integer prefix of values like `"01-foundation"` or `"03"`."""
    match = re.match(r"\s*(\d+)", str(value or ""))
    if not match:
        return None
    return int(match.group(1))
