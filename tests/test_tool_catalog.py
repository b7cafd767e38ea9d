"""Tests for the tool catalog refresh loop."""

from __future__ import annotations

import pytest

from agentdesk.ai.tools import ToolCatalog, ToolDefinition
from agentdesk.ai.tools.backend import MAX_TOOL_DESCRIPTION
from agentdesk.events import ToolsUpdated

from tests.helpers import EventRecorder


class _FlakyBackend:
    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.calls = 0

    async def list_tools(self):
        self.calls += 1
        outcome = self.outcomes.pop(0) if self.outcomes else []
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    async def call_tool(self, name, arguments):  # pragma: no cover - unused
        raise NotImplementedError


@pytest.mark.asyncio
async def test_refresh_retries_errors_and_empty_lists(app_state, bus) -> None:
    tools = [ToolDefinition(name="search")]
    backend = _FlakyBackend([RuntimeError("not up yet"), [], tools])
    recorder = EventRecorder(bus, ToolsUpdated)
    catalog = ToolCatalog(backend, app_state, delays=(0,))

    result = await catalog.refresh()

    assert [tool.name for tool in result] == ["search"]
    assert backend.calls == 3
    assert [tool.name for tool in app_state.tools] == ["search"]
    assert recorder.events[-1].tool_names == ("search",)


@pytest.mark.asyncio
async def test_refresh_returns_empty_list_after_last_attempt(app_state) -> None:
    backend = _FlakyBackend([])
    catalog = ToolCatalog(backend, app_state, delays=(0,), max_attempts=3)

    result = await catalog.refresh()

    assert result == []
    assert backend.calls == 3
    assert app_state.tools == []


@pytest.mark.asyncio
async def test_refresh_reraises_when_every_attempt_fails() -> None:
    backend = _FlakyBackend([RuntimeError("down")] * 2)
    catalog = ToolCatalog(backend, delays=(0,), max_attempts=2)

    with pytest.raises(RuntimeError, match="down"):
        await catalog.refresh()
    assert backend.calls == 2


def test_delays_must_not_be_empty() -> None:
    with pytest.raises(ValueError):
        ToolCatalog(_FlakyBackend([]), delays=())


def test_tool_definition_wire_shape_truncates_description() -> None:
    definition = ToolDefinition(name="long", description="x" * 2000)

    function = definition.to_chat_param()["function"]

    assert len(function["description"]) == MAX_TOOL_DESCRIPTION
    assert function["parameters"] == {"type": "object", "properties": {}}
    assert function["strict"] is False
