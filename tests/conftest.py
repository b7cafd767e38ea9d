"""Shared pytest fixtures."""

from __future__ import annotations

import pytest

from agentdesk.events import EventBus
from agentdesk.state import AppState


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    """Keep user settings, keys and logs out of the developer's home directory."""
    for name in (
        "AGENTDESK_API_KEY",
        "AGENTDESK_BASE_URL",
        "AGENTDESK_MODEL",
        "AGENTDESK_PROVIDER",
        "AGENTDESK_DEBUG_LOGGING",
        "AGENTDESK_REQUEST_TIMEOUT",
        "AGENTDESK_TOOL_STEPS",
        "AGENTDESK_SETTINGS_PATH",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("AGENTDESK_LOG_DIR", str(tmp_path / "logs"))


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def app_state(bus: EventBus) -> AppState:
    return AppState(bus)
