"""Tests for the shared state containers."""

from __future__ import annotations

import json

import pytest

from agentdesk.ai.orchestration import CancelToken, DEFAULT_ASSISTANT, ModelSelection, ToolCall, ToolResult
from agentdesk.ai.orchestration.types import ToolCallRecord, new_assistant_content, new_user_content
from agentdesk.ai.tools import ToolDefinition
from agentdesk.events import MessageAdded, ModelLoadFailed, ThreadCreated, ToolsUpdated
from agentdesk.state import AppState, JsonlMessagePersistence, MessageStore, ThreadRegistry

from tests.helpers import EventRecorder


class TestThreadRegistry:
    def test_create_thread_becomes_current(self, bus) -> None:
        recorder = EventRecorder(bus, ThreadCreated)
        registry = ThreadRegistry(bus)

        thread = registry.create_thread(ModelSelection(id="m", provider="openai"), "Hello")

        assert registry.current_thread is thread
        assert thread.assistant is DEFAULT_ASSISTANT
        assert recorder.events[0].title == "Hello"

    def test_unknown_current_thread_is_rejected(self) -> None:
        with pytest.raises(KeyError):
            ThreadRegistry().set_current_thread("nope")


class TestMessageStore:
    def test_add_message_fills_timestamp_and_assistant(self, bus) -> None:
        recorder = EventRecorder(bus, MessageAdded)
        store = MessageStore(bus)

        stored = store.add_message(new_user_content("t1", "hi"), DEFAULT_ASSISTANT)

        assert stored.created_at > 0
        assert stored.metadata["assistant"] is DEFAULT_ASSISTANT
        assert recorder.events[0].role == "user"

    def test_get_messages_returns_copy(self) -> None:
        store = MessageStore()
        store.add_message(new_user_content("t1", "hi"))

        store.get_messages("t1").clear()

        assert len(store.get_messages("t1")) == 1

    def test_persisted_thread_round_trips(self, tmp_path) -> None:
        persistence = JsonlMessagePersistence(tmp_path)
        store = MessageStore(persistence=persistence)
        call = ToolCall(id="c1", name="search", arguments="{}")
        reply = new_assistant_content(
            "t1",
            "done",
            {"tool_calls": [ToolCallRecord(tool=call).resolved(ToolResult.from_text("found"))]},
        )
        store.add_message(new_user_content("t1", "find"))
        store.add_message(reply, DEFAULT_ASSISTANT)

        loaded = MessageStore(persistence=persistence).load_thread("t1")

        assert [message.text for message in loaded] == ["find", "done"]
        assert loaded[1].metadata["assistant"] == DEFAULT_ASSISTANT.id
        assert loaded[1].metadata["tool_calls"][0]["state"] == "ready"

    @pytest.mark.asyncio
    async def test_writes_inside_the_loop_are_queued_in_call_order(self, tmp_path) -> None:
        persistence = JsonlMessagePersistence(tmp_path)
        store = MessageStore(persistence=persistence)

        for text in ("one", "two", "three"):
            store.add_message(new_user_content("t1", text))
        store.delete_message("t1", store.get_messages("t1")[1].id)
        await store.flush()

        assert [message.text for message in persistence.load("t1")] == ["one", "three"]

    @pytest.mark.asyncio
    async def test_ensure_loaded_reads_the_thread_once(self, tmp_path) -> None:
        persistence = JsonlMessagePersistence(tmp_path)
        persistence.append(new_user_content("t1", "stored"))
        store = MessageStore(persistence=persistence)

        first = await store.ensure_loaded("t1")
        persistence.append(new_user_content("t1", "written elsewhere"))
        second = await store.ensure_loaded("t1")

        assert [message.text for message in first] == ["stored"]
        assert second == first

    def test_delete_rewrites_file(self, tmp_path) -> None:
        persistence = JsonlMessagePersistence(tmp_path)
        store = MessageStore(persistence=persistence)
        first = store.add_message(new_user_content("t1", "one"))
        store.add_message(new_user_content("t1", "two"))

        assert store.delete_message("t1", first.id) is True
        assert store.delete_message("t1", "missing") is False

        lines = persistence.path_for("t1").read_text(encoding="utf-8").splitlines()
        assert [json.loads(line)["content"][0]["text"] for line in lines] == ["two"]

    def test_unreadable_lines_are_skipped(self, tmp_path) -> None:
        persistence = JsonlMessagePersistence(tmp_path)
        persistence.append(new_user_content("t1", "kept"))
        with persistence.path_for("t1").open("a", encoding="utf-8") as handle:
            handle.write("{not json\n")

        assert [message.text for message in persistence.load("t1")] == ["kept"]

    def test_persistence_failure_is_logged_not_raised(self) -> None:
        class _Broken:
            def append(self, message):
                raise OSError("disk full")

        store = MessageStore(persistence=_Broken())

        stored = store.add_message(new_user_content("t1", "hi"))

        assert store.get_messages("t1") == [stored]


class TestAppState:
    def test_token_speed_counts_against_first_update(self) -> None:
        ticks = iter([10.0, 10.0, 14.0])
        state = AppState(clock=lambda: next(ticks))
        preview = new_assistant_content("t1", "x")

        state.update_token_speed(preview, 2)
        same_instant = state.update_token_speed(preview, 2)
        later = state.update_token_speed(preview, 4)

        assert same_instant.token_speed == 4.0
        assert later.token_count == 8
        assert later.token_speed == 2.0

        state.reset_token_speed()
        assert state.token_speed is None

    def test_abort_handles_are_superseded_not_cancelled(self) -> None:
        state = AppState()
        first, second = CancelToken(), CancelToken()

        state.set_abort_handle("t1", first)
        state.set_abort_handle("t1", second)
        state.clear_abort_handle("t1", first)

        assert state.get_abort_handle("t1") is second
        assert not first.cancelled
        state.clear_abort_handle("t1", second)
        assert state.get_abort_handle("t1") is None

    def test_model_error_and_tools_are_published(self, app_state, bus) -> None:
        recorder = EventRecorder(bus, ModelLoadFailed, ToolsUpdated)

        app_state.set_model_load_error("boom", "t1")
        app_state.set_model_load_error(None)
        app_state.update_tools([ToolDefinition(name="a")])

        assert app_state.model_load_error is None
        assert [type(event) for event in recorder.events] == [ModelLoadFailed, ToolsUpdated]
        assert recorder.events[1].tool_names == ("a",)
