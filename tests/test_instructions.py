"""Tests for instruction placeholder rendering."""

from __future__ import annotations

from datetime import date

from agentdesk.ai.instructions import format_current_date, render_instructions


def test_current_date_format() -> None:
    assert format_current_date(date(2025, 8, 16)) == "August 16, 2025"
    assert format_current_date(date(2024, 1, 5)) == "January 5, 2024"


def test_placeholders_accept_spaces_and_any_case() -> None:
    rendered = render_instructions(
        "Today is {{ Current_Date }}. Context: {{USER_CONTEXT}}",
        user_context="likes tea",
        today=date(2025, 8, 16),
    )

    assert rendered == "Today is August 16, 2025. Context: likes tea"


def test_missing_user_context_removes_placeholder() -> None:
    assert render_instructions("A{{user_context}}B") == "AB"


def test_user_context_is_inserted_literally() -> None:
    assert render_instructions("{{user_context}}", user_context=r"path \1 \g<0>") == r"path \1 \g<0>"


def test_empty_instructions_pass_through() -> None:
    assert render_instructions("") == ""
    assert render_instructions(None) is None
