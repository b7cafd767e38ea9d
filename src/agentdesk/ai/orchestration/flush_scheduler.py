"""Frame-rate bounded publishing of the streaming preview.

A stream can deliver hundreds of fragments per second while the preview only
needs repainting once per display frame. :class:`StreamFlushScheduler`
collects the accumulated text and tool calls of one stream and publishes at
most one preview per ``frame_interval``.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import TYPE_CHECKING

from .cancellation import CancelToken
from .types import ThreadMessage, ToolCall, ToolCallRecord, new_assistant_content

if TYPE_CHECKING:  # pragma: no cover - imports for type checking only
    from ...state import AppState

__all__ = ["DEFAULT_FRAME_INTERVAL", "StreamFlushScheduler"]

LOGGER = logging.getLogger(__name__)

DEFAULT_FRAME_INTERVAL = 1 / 60


class StreamFlushScheduler:
    """Coalesces stream updates into one preview publish per tick.

    The stream pump mutates :attr:`text` (through :meth:`append_text`) and
    :attr:`tool_calls`, then calls :meth:`schedule_flush`. The first call after
    a flush arms a timer on the running loop; further calls before it fires
    are no-ops. With ``frame_interval`` of zero or ``None`` the tick runs on the
    next loop iteration instead.

    Args:
        app_state: Receives previews and token-speed updates.
        thread_id: Thread the previews belong to.
        cancel_token: Token of the owning request; a tick that fires after
            cancellation publishes nothing.
        frame_interval: Seconds between ticks.
    """

    def __init__(
        self,
        app_state: AppState,
        thread_id: str,
        cancel_token: CancelToken,
        *,
        frame_interval: float | None = DEFAULT_FRAME_INTERVAL,
    ) -> None:
        self._app_state = app_state
        self._thread_id = thread_id
        self._cancel_token = cancel_token
        self._frame_interval = frame_interval
        self._handle: asyncio.Handle | None = None
        self._scheduled = False
        self.text = ""
        self.tool_calls: list[ToolCall] = []
        self.pending_deltas = 0
        self.flush_count = 0

    @property
    def scheduled(self) -> bool:
        return self._scheduled

    def append_text(self, delta: str) -> None:
        """Add a text (or reasoning) delta counted toward the token rate."""
        if not delta:
            return
        self.text += delta
        self.pending_deltas += 1

    def schedule_flush(self) -> None:
        """Arm a tick unless one is already pending or the request was cancelled."""
        if self._scheduled or self._cancel_token.cancelled:
            return
        self._scheduled = True
        loop = asyncio.get_running_loop()
        if self._frame_interval:
            self._handle = loop.call_later(self._frame_interval, self._tick)
        else:
            self._handle = loop.call_soon(self._tick)

    def flush_if_pending(self) -> ThreadMessage | None:
        """Replace a pending tick with an immediate flush."""
        if not self._scheduled:
            return None
        self.release()
        return self.flush()

    def release(self) -> bool:
        """Cancel the pending tick, if any.

        Returns:
            ``True`` when a tick was pending.
        """
        was_scheduled = self._scheduled
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        self._scheduled = False
        return was_scheduled

    def flush(self) -> ThreadMessage:
        """Publish a preview of the current state right away."""
        preview = self.preview()
        self._app_state.update_streaming_content(preview)
        if self.pending_deltas > 0:
            self._app_state.update_token_speed(preview, self.pending_deltas)
        self.pending_deltas = 0
        self._scheduled = False
        self.flush_count += 1
        return preview

    def preview(self) -> ThreadMessage:
        """Build a fresh preview message; every tool call shows as pending."""
        records = [ToolCallRecord(tool=replace(call)) for call in self.tool_calls]
        return new_assistant_content(self._thread_id, self.text, {"tool_calls": records})

    def _tick(self) -> None:
        self._handle = None
        if self._cancel_token.cancelled:
            self._scheduled = False
            LOGGER.debug("Skipping preview flush for cancelled request on thread %s", self._thread_id)
            return
        self.flush()
