"""Placeholder rendering for assistant instructions."""

from __future__ import annotations

import re
from datetime import date, datetime, timezone

__all__ = ["render_instructions", "format_current_date"]

_CURRENT_DATE_RE = re.compile(r"\{\{\s*current_date\s*\}\}", re.IGNORECASE)
_USER_CONTEXT_RE = re.compile(r"\{\{\s*user_context\s*\}\}", re.IGNORECASE)


def format_current_date(today: date | None = None) -> str:
    """Long-month date such as ``August 16, 2025`` (UTC when ``today`` is omitted)."""
    value = today or datetime.now(timezone.utc).date()
    return f"{value:%B} {value.day}, {value.year}"


def render_instructions(
    instructions: str | None,
    *,
    user_context: str | None = None,
    today: date | None = None,
) -> str | None:
    """Replace ``{{current_date}}`` and ``{{user_context}}`` in ``instructions``.

    Spaces inside the braces and any letter case are accepted. Without a
    user context the placeholder is removed.
    """
    if not instructions:
        return instructions
    rendered = _CURRENT_DATE_RE.sub(format_current_date(today), instructions)
    return _USER_CONTEXT_RE.sub(lambda _match: user_context or "", rendered)
