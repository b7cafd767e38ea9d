"""Cooperative cancellation for one ``send_message`` call.

A :class:`CancelToken` is created per send and threaded through every
suspension point of the turn loop. Cancelling only sets a flag and wakes
waiters; code observes it at the points that check it.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Awaitable, Callable, TypeVar

from .errors import TurnAborted

__all__ = ["CancelToken"]

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class CancelToken:
    """Idempotent cancellation flag with awaitable helpers.

    Example:
        >>> token = CancelToken()
        >>> token.cancel()
        True
        >>> token.cancel()
        False
        >>> token.cancelled
        True
    """

    __slots__ = ("_event", "_callbacks", "_reason")

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._callbacks: list[Callable[[], None]] = []
        self._reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> bool:
        """Signal cancellation.

        Returns:
            ``True`` on the first call, ``False`` on every later call.
        """
        if self._event.is_set():
            return False
        self._reason = reason
        self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:
                LOGGER.exception("Cancel callback %r failed", callback)
        return True

    def add_callback(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Run ``callback`` on cancellation (immediately if already cancelled).

        Returns a callable that unregisters the callback.
        """
        if self._event.is_set():
            callback()
            return lambda: None
        self._callbacks.append(callback)

        def _remove() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return _remove

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise TurnAborted(self._reason or "cancelled")

    async def wait(self) -> None:
        await self._event.wait()

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the token fires first.

        The awaited work is cancelled when the token wins the race.

        Raises:
            TurnAborted: If the token is or becomes cancelled.
        """
        if self._event.is_set():
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            raise TurnAborted(self._reason or "cancelled")
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            waiter.cancel()
        if work in done:
            return work.result()
        work.cancel()
        try:
            await work
        except (asyncio.CancelledError, Exception):
            LOGGER.debug("Guarded work ended after cancellation", exc_info=True)
        raise TurnAborted(self._reason or "cancelled")

    async def sleep(self, delay: float) -> None:
        """Sleep for ``delay`` seconds, waking early with :class:`TurnAborted`."""
        if delay <= 0:
            self.raise_if_cancelled()
            await asyncio.sleep(0)
            return
        await self.guard(asyncio.sleep(delay))
