"""Process-wide state containers shared by the completion core.

Each container has a single writer per field and publishes its changes on the
:class:`~agentdesk.events.EventBus`. They are handed to the orchestrator
explicitly; nothing here is a module-level singleton.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
import time
from dataclasses import replace
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Iterable, Protocol, Sequence

from .ai.orchestration.types import (
    Assistant,
    DEFAULT_ASSISTANT,
    ModelSelection,
    Thread,
    ThreadMessage,
    TokenSpeed,
    new_id,
    now_ms,
)
from .events import (
    EventBus,
    MessageAdded,
    ModelLoadFailed,
    ModelLoadingChanged,
    StreamingContentUpdated,
    ThreadCreated,
    TokenSpeedUpdated,
    ToolsUpdated,
)

if TYPE_CHECKING:  # pragma: no cover - imports for type checking only
    from .ai.orchestration.cancellation import CancelToken
    from .ai.tools.backend import ToolDefinition

__all__ = [
    "AppState",
    "ThreadRegistry",
    "MessageStore",
    "MessagePersistence",
    "JsonlMessagePersistence",
]

LOGGER = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Threads
# -----------------------------------------------------------------------------


class ThreadRegistry:
    """Known threads plus the current-thread pointer."""

    def __init__(self, bus: EventBus | None = None) -> None:
        self._bus = bus
        self._threads: dict[str, Thread] = {}
        self._current_id: str | None = None

    @property
    def current_thread(self) -> Thread | None:
        if self._current_id is None:
            return None
        return self._threads.get(self._current_id)

    def set_current_thread(self, thread_id: str | None) -> None:
        if thread_id is not None and thread_id not in self._threads:
            raise KeyError(f"Unknown thread: {thread_id}")
        self._current_id = thread_id

    def get_thread(self, thread_id: str) -> Thread | None:
        return self._threads.get(thread_id)

    def threads(self) -> list[Thread]:
        return sorted(self._threads.values(), key=lambda thread: thread.updated, reverse=True)

    def create_thread(
        self,
        model: ModelSelection | None,
        title: str,
        assistant: Assistant | None = None,
    ) -> Thread:
        """Create a thread, make it current and announce it."""
        thread = Thread(
            id=new_id(),
            title=title,
            model=model,
            assistant=assistant or DEFAULT_ASSISTANT,
            updated=time.time(),
        )
        self._threads[thread.id] = thread
        self._current_id = thread.id
        LOGGER.info("Created thread %s (%s)", thread.id, model.id if model else "no model")
        if self._bus is not None:
            self._bus.publish(ThreadCreated(thread_id=thread.id, title=title))
        return thread

    def update_thread(self, thread: Thread) -> None:
        self._threads[thread.id] = thread

    def touch(self, thread_id: str) -> None:
        thread = self._threads.get(thread_id)
        if thread is not None:
            thread.updated = time.time()


# -----------------------------------------------------------------------------
# Messages
# -----------------------------------------------------------------------------


class MessagePersistence(Protocol):
    """Storage backend for thread messages."""

    def append(self, message: ThreadMessage) -> None:
        ...

    def rewrite(self, thread_id: str, messages: Sequence[ThreadMessage]) -> None:
        ...

    def load(self, thread_id: str) -> list[ThreadMessage]:
        ...


class JsonlMessagePersistence:
    """One ``<thread_id>.jsonl`` file per thread under ``directory``."""

    def __init__(self, directory: Path | str) -> None:
        self._directory = Path(directory).expanduser()

    @property
    def directory(self) -> Path:
        return self._directory

    def path_for(self, thread_id: str) -> Path:
        return self._directory / f"{thread_id}.jsonl"

    def append(self, message: ThreadMessage) -> None:
        self._directory.mkdir(parents=True, exist_ok=True)
        with self.path_for(message.thread_id).open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(message.to_dict(), ensure_ascii=False) + "\n")

    def rewrite(self, thread_id: str, messages: Sequence[ThreadMessage]) -> None:
        self._directory.mkdir(parents=True, exist_ok=True)
        path = self.path_for(thread_id)
        fd, tmp_path = tempfile.mkstemp(dir=self._directory, prefix=path.stem, suffix=".tmp")
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            for message in messages:
                handle.write(json.dumps(message.to_dict(), ensure_ascii=False) + "\n")
        os.replace(tmp_path, path)

    def load(self, thread_id: str) -> list[ThreadMessage]:
        path = self.path_for(thread_id)
        if not path.exists():
            return []
        messages: list[ThreadMessage] = []
        for line_number, line in enumerate(path.read_text(encoding="utf-8").splitlines(), start=1):
            if not line.strip():
                continue
            try:
                messages.append(ThreadMessage.from_dict(json.loads(line)))
            except (json.JSONDecodeError, AttributeError, TypeError, ValueError):
                LOGGER.warning("Skipping unreadable message at %s:%s", path, line_number)
        return messages


class MessageStore:
    """Append-only message lists keyed by thread id.

    The in-memory list is updated synchronously. File writes leave the event
    loop through :func:`asyncio.to_thread` and run one at a time in call
    order; :meth:`flush` waits for them. Without a running loop they happen
    inline.
    """

    def __init__(
        self,
        bus: EventBus | None = None,
        persistence: MessagePersistence | None = None,
    ) -> None:
        self._bus = bus
        self._persistence = persistence
        self._messages: dict[str, list[ThreadMessage]] = {}
        self._writes: asyncio.Task[None] | None = None

    def get_messages(self, thread_id: str) -> list[ThreadMessage]:
        return list(self._messages.get(thread_id, ()))

    def load_thread(self, thread_id: str) -> list[ThreadMessage]:
        """Populate a thread from persistence when it is not loaded yet."""
        if thread_id not in self._messages and self._persistence is not None:
            self._messages[thread_id] = self._persistence.load(thread_id)
        return self.get_messages(thread_id)

    async def ensure_loaded(self, thread_id: str) -> list[ThreadMessage]:
        """:meth:`load_thread` for the event loop; the file is read in a worker thread."""
        if thread_id not in self._messages and self._persistence is not None:
            loaded = await asyncio.to_thread(self._persistence.load, thread_id)
            self._messages.setdefault(thread_id, loaded)
        return self.get_messages(thread_id)

    def add_message(self, message: ThreadMessage, assistant: Assistant | None = None) -> ThreadMessage:
        """Append ``message`` to its thread.

        Fills ``created_at`` when unset and stamps the producing assistant
        into the metadata.
        """
        if not message.created_at:
            message = replace(message, created_at=now_ms())
        if assistant is not None and "assistant" not in message.metadata:
            message = message.with_metadata(assistant=assistant)
        self._messages.setdefault(message.thread_id, []).append(message)
        if self._persistence is not None:
            self._persist(self._persistence.append, message)
        if self._bus is not None:
            self._bus.publish(
                MessageAdded(thread_id=message.thread_id, message_id=message.id, role=message.role)
            )
        return message

    def set_messages(self, thread_id: str, messages: Iterable[ThreadMessage]) -> None:
        self._messages[thread_id] = list(messages)

    def delete_message(self, thread_id: str, message_id: str) -> bool:
        messages = self._messages.get(thread_id)
        if not messages:
            return False
        remaining = [message for message in messages if message.id != message_id]
        if len(remaining) == len(messages):
            return False
        self._messages[thread_id] = remaining
        if self._persistence is not None:
            self._persist(self._persistence.rewrite, thread_id, remaining)
        return True

    async def flush(self) -> None:
        """Wait until every queued file write has finished."""
        while self._writes is not None:
            pending = self._writes
            await asyncio.wait({pending})
            if self._writes is pending:
                self._writes = None

    def _persist(self, write: Callable[..., None], *args: Any) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            _run_write(write, *args)
            return
        self._writes = loop.create_task(self._write_after(self._writes, write, *args))

    @staticmethod
    async def _write_after(previous: asyncio.Task[None] | None, write: Callable[..., None], *args: Any) -> None:
        if previous is not None:
            await asyncio.wait({previous})
        await asyncio.to_thread(_run_write, write, *args)


def _run_write(write: Callable[..., None], *args: Any) -> None:
    try:
        write(*args)
    except OSError:
        LOGGER.exception("Failed to write messages with %s", getattr(write, "__qualname__", write))


# -----------------------------------------------------------------------------
# Application state
# -----------------------------------------------------------------------------


class AppState:
    """Transient state of the running application.

    Holds the streaming preview, token-speed stats, abort handles, the
    in-flight tool cancel handle, the model loading flag and the advertised
    tool list.
    """

    def __init__(
        self,
        bus: EventBus | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._bus = bus
        self._clock = clock
        self.streaming_content: ThreadMessage | None = None
        self.token_speed: TokenSpeed | None = None
        self.loading_model = False
        self.model_load_error: str | None = None
        self.tools: list[ToolDefinition] = []
        self._abort_handles: dict[str, CancelToken] = {}
        self._cancel_tool_call: Callable[[], None] | None = None

    @property
    def bus(self) -> EventBus | None:
        return self._bus

    def _publish(self, event) -> None:
        if self._bus is not None:
            self._bus.publish(event)

    # Streaming preview ------------------------------------------------------

    def update_streaming_content(self, message: ThreadMessage | None) -> None:
        self.streaming_content = message
        self._publish(StreamingContentUpdated(message=message))

    def update_token_speed(self, message: ThreadMessage, increment: int = 1) -> TokenSpeed:
        """Add ``increment`` deltas to the running rate for ``message``."""
        now = self._clock()
        current = self.token_speed
        if current is None:
            speed = TokenSpeed(
                message_id=message.id,
                token_count=increment,
                started_at=now,
                last_timestamp=now,
            )
        else:
            count = current.token_count + increment
            elapsed = now - current.started_at
            speed = TokenSpeed(
                message_id=message.id,
                token_count=count,
                started_at=current.started_at,
                last_timestamp=now,
                token_speed=count / (elapsed if elapsed > 0 else 1),
            )
        self.token_speed = speed
        self._publish(
            TokenSpeedUpdated(
                message_id=speed.message_id,
                token_speed=speed.token_speed,
                token_count=speed.token_count,
            )
        )
        return speed

    def reset_token_speed(self) -> None:
        self.token_speed = None

    # Abort handles ----------------------------------------------------------

    def set_abort_handle(self, thread_id: str, token: CancelToken) -> None:
        """Register the live token for ``thread_id``, superseding any previous one."""
        previous = self._abort_handles.get(thread_id)
        if previous is not None and previous is not token and not previous.cancelled:
            LOGGER.warning("Superseding a live request on thread %s without cancelling it", thread_id)
        self._abort_handles[thread_id] = token

    def get_abort_handle(self, thread_id: str) -> CancelToken | None:
        return self._abort_handles.get(thread_id)

    def clear_abort_handle(self, thread_id: str, token: CancelToken) -> None:
        """Drop ``token`` if it is still the live handle for ``thread_id``."""
        if self._abort_handles.get(thread_id) is token:
            del self._abort_handles[thread_id]

    # Tool cancel handle -----------------------------------------------------

    def set_cancel_tool_call(self, cancel: Callable[[], None] | None) -> None:
        self._cancel_tool_call = cancel

    def cancel_tool_call(self) -> bool:
        cancel = self._cancel_tool_call
        if cancel is None:
            return False
        cancel()
        return True

    # Model / tools ----------------------------------------------------------

    def set_loading_model(self, loading: bool) -> None:
        self.loading_model = loading
        self._publish(ModelLoadingChanged(loading=loading))

    def set_model_load_error(self, error: str | None, thread_id: str | None = None) -> None:
        self.model_load_error = error
        if error:
            self._publish(ModelLoadFailed(thread_id=thread_id, error=error))

    def update_tools(self, tools: Sequence[ToolDefinition]) -> None:
        self.tools = list(tools)
        self._publish(ToolsUpdated(tool_names=tuple(tool.name for tool in self.tools)))
