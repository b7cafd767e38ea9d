"""Event bus and the chat events published by the completion core.

The orchestrator never talks to a UI directly. Every observable change
(streaming previews, token speed, appended turns, tool activity, state
transitions) is published on an :class:`EventBus` that presentation code may
subscribe to.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, TypeVar, Union
from weakref import WeakMethod

logger = logging.getLogger(__name__)

E = TypeVar("E", bound="Event")

Handler = Callable[[E], Union[None, Awaitable[None]]]


@dataclass(slots=True)
class Event:
    """Base class for all events published by agentdesk."""

    pass


# =============================================================================
# Streaming Events
# =============================================================================


@dataclass(slots=True)
class StreamingContentUpdated(Event):
    """Emitted when the streaming preview is replaced.

    Attributes:
        message: The new preview message, or ``None`` once the turn ends.
    """

    message: Any | None


@dataclass(slots=True)
class TokenSpeedUpdated(Event):
    """Emitted after a flush that carried new text deltas.

    Attributes:
        message_id: Identifier of the preview message the speed refers to.
        token_speed: Average deltas per second since the stream started.
        token_count: Total deltas counted so far.
    """

    message_id: str
    token_speed: float
    token_count: int


# =============================================================================
# Thread Events
# =============================================================================


@dataclass(slots=True)
class ThreadCreated(Event):
    """Emitted when a send creates a thread lazily."""

    thread_id: str
    title: str


@dataclass(slots=True)
class MessageAdded(Event):
    """Emitted when a finalized turn is appended to a thread."""

    thread_id: str
    message_id: str
    role: str


# =============================================================================
# Tool Events
# =============================================================================


@dataclass(slots=True)
class ToolCallStarted(Event):
    """Emitted right before an approved tool call is dispatched."""

    thread_id: str
    call_id: str
    tool_name: str


@dataclass(slots=True)
class ToolCallFinished(Event):
    """Emitted once a tool call reached the ``ready`` state.

    Attributes:
        approved: ``False`` when the user declined the call.
        error: ``True`` when the tool failed.
    """

    thread_id: str
    call_id: str
    tool_name: str
    approved: bool
    error: bool


@dataclass(slots=True)
class ToolsUpdated(Event):
    """Emitted when the tool catalog is refreshed."""

    tool_names: tuple[str, ...]


# =============================================================================
# Orchestrator / Model Events
# =============================================================================


@dataclass(slots=True)
class OrchestratorStateChanged(Event):
    """Emitted on every turn-loop state transition."""

    thread_id: str
    previous: str
    current: str


@dataclass(slots=True)
class ModelLoadingChanged(Event):
    """Emitted when a model start/restart begins or ends."""

    loading: bool


@dataclass(slots=True)
class ModelLoadFailed(Event):
    """Emitted when a turn fails with a user-visible error."""

    thread_id: str | None
    error: str


# Published once per flush; logging each publish would swamp DEBUG output.
_QUIET_EVENT_TYPES: frozenset[type] = frozenset({StreamingContentUpdated, TokenSpeedUpdated})


class _Subscription:
    """A handler slot. Bound methods are held weakly, other callables strongly."""

    __slots__ = ("_target", "_weak", "name")

    def __init__(self, handler: Handler) -> None:
        self.name = getattr(handler, "__qualname__", None) or repr(handler)
        self._weak = inspect.ismethod(handler)
        self._target: Any = WeakMethod(handler) if self._weak else handler

    @property
    def handler(self) -> Handler | None:
        return self._target() if self._weak else self._target

    def is_for(self, handler: Handler) -> bool:
        current = self.handler
        return current is not None and current == handler


class EventBus(Generic[E]):
    """Typed publish/subscribe bus living on the event loop thread.

    Handlers run synchronously in subscription order. A handler returning an
    awaitable has it scheduled on the running loop; the bus keeps the task
    alive until it finishes. Exceptions raised by a handler (or its task) are
    logged and never reach the publisher.

    Example::

        bus = EventBus()
        unsubscribe = bus.subscribe(MessageAdded, lambda event: print(event.message_id))
        bus.publish(MessageAdded(thread_id="t1", message_id="m1", role="assistant"))
        unsubscribe()
    """

    __slots__ = ("_subscriptions", "_pending")

    def __init__(self) -> None:
        self._subscriptions: defaultdict[type[Event], list[_Subscription]] = defaultdict(list)
        self._pending: set[asyncio.Future[Any]] = set()

    def subscribe(self, event_type: type[E], handler: Handler[E]) -> Callable[[], None]:
        """Register ``handler`` for ``event_type`` and return its unsubscriber."""
        subscription = _Subscription(handler)
        self._subscriptions[event_type].append(subscription)
        logger.debug("%s subscribed to %s", subscription.name, event_type.__name__)

        def unsubscribe() -> None:
            slots = self._subscriptions.get(event_type, [])
            if subscription in slots:
                slots.remove(subscription)

        return unsubscribe

    def unsubscribe(self, event_type: type[E], handler: Handler[E]) -> None:
        """Drop the first subscription of ``handler``; unknown handlers are ignored."""
        slots = self._subscriptions.get(event_type, [])
        for subscription in slots:
            if subscription.is_for(handler):
                slots.remove(subscription)
                logger.debug("%s unsubscribed from %s", subscription.name, event_type.__name__)
                return

    def publish(self, event: E) -> None:
        event_type = type(event)
        slots = self._subscriptions.get(event_type)
        if not slots:
            return
        if event_type not in _QUIET_EVENT_TYPES:
            logger.debug("Publishing %s to %d handler(s)", event_type.__name__, len(slots))

        for subscription in list(slots):
            handler = subscription.handler
            if handler is None:
                slots.remove(subscription)
                continue
            try:
                result = handler(event)
            except Exception:
                logger.exception("Handler %s failed on %s", subscription.name, event_type.__name__)
                continue
            if inspect.isawaitable(result):
                self._schedule(result, subscription.name, event_type.__name__)

    def clear(self) -> None:
        self._subscriptions.clear()

    def handler_count(self, event_type: type[E] | None = None) -> int:
        """Number of live subscriptions for ``event_type`` (or for all types)."""
        if event_type is not None:
            return sum(1 for slot in self._subscriptions.get(event_type, []) if slot.handler is not None)
        return sum(self.handler_count(kind) for kind in list(self._subscriptions))

    async def drain(self) -> None:
        """Wait for every scheduled async handler to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _schedule(self, awaitable: Awaitable[None], handler_name: str, event_name: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("Dropping async handler %s for %s: no running event loop", handler_name, event_name)
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return
        task = asyncio.ensure_future(awaitable, loop=loop)
        self._pending.add(task)

        def _finished(done: asyncio.Future[Any]) -> None:
            self._pending.discard(done)
            if not done.cancelled() and done.exception() is not None:
                logger.error(
                    "Async handler %s failed on %s",
                    handler_name,
                    event_name,
                    exc_info=done.exception(),
                )

        task.add_done_callback(_finished)


__all__ = [
    "Event",
    "EventBus",
    "Handler",
    "StreamingContentUpdated",
    "TokenSpeedUpdated",
    "ThreadCreated",
    "MessageAdded",
    "ToolCallStarted",
    "ToolCallFinished",
    "ToolsUpdated",
    "OrchestratorStateChanged",
    "ModelLoadingChanged",
    "ModelLoadFailed",
]
