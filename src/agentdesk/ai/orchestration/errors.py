"""Error taxonomy for the completion turn loop.

Tool failures never show up here: the tool gate converts them into
:class:`~agentdesk.ai.orchestration.types.ToolResult` data. Everything below
propagates out of the turn loop to the single top-level handler in the
orchestrator.
"""

from __future__ import annotations

import json
from typing import Any, Mapping

__all__ = [
    "CompletionError",
    "ProtocolError",
    "EmptyTurnError",
    "NoCompletionError",
    "TurnAborted",
    "OUT_OF_CONTEXT_SIZE",
    "is_capacity_error",
    "describe_error",
]

# Substring local inference servers put in over-capacity errors.
OUT_OF_CONTEXT_SIZE = "the request exceeds the available context size"

_CAPACITY_CODES = frozenset({"context_length_exceeded", "context_window_exceeded"})


class CompletionError(Exception):
    """Base class for failures surfaced to the user as a failed turn."""


class ProtocolError(CompletionError):
    """A streamed chunk did not carry ``choices``; the payload is an error.

    Attributes:
        payload: The raw chunk the backend sent.
    """

    def __init__(self, payload: Any) -> None:
        self.payload = payload
        super().__init__(self._message_for(payload))

    @staticmethod
    def _message_for(payload: Any) -> str:
        message = payload.get("message") if isinstance(payload, Mapping) else getattr(payload, "message", None)
        if message:
            return str(message)
        try:
            return json.dumps(payload, default=str)
        except (TypeError, ValueError):
            return repr(payload)


class EmptyTurnError(CompletionError):
    """The backend finished a turn with neither text nor tool calls."""

    def __init__(self, message: str = "No response received from the model") -> None:
        super().__init__(message)


class NoCompletionError(CompletionError):
    """The adapter had nothing to send (no model or no provider)."""

    def __init__(self, message: str = "No completion received") -> None:
        super().__init__(message)


class TurnAborted(Exception):
    """Raised at cancel-aware suspension points once the turn was cancelled.

    Not a :class:`CompletionError`: cancellation is never reported to the user.
    """


def is_capacity_error(exc: BaseException) -> bool:
    """Return ``True`` when ``exc`` signals a context-window overflow."""

    code = getattr(exc, "code", None)
    if isinstance(code, str) and code in _CAPACITY_CODES:
        return True
    body = getattr(exc, "body", None)
    if isinstance(body, Mapping):
        nested = body.get("error") if isinstance(body.get("error"), Mapping) else body
        if nested.get("code") in _CAPACITY_CODES:
            return True
    return OUT_OF_CONTEXT_SIZE in describe_error(exc).lower()


def describe_error(exc: BaseException | Any) -> str:
    """Human-readable text for a failure, used for the user-visible error state."""

    message = getattr(exc, "message", None)
    if isinstance(message, str) and message:
        return message
    text = str(exc)
    return text or type(exc).__name__
