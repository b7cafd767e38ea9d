"""Reasoning side-channel handling.

Some backends stream chain-of-thought in a field next to ``content``
(``reasoning_content`` or ``reasoning``). The extractor folds it into the
visible text between ``<think>`` delimiters.
"""

from __future__ import annotations

from typing import Any, Mapping

__all__ = [
    "THINK_OPEN",
    "THINK_CLOSE",
    "REASONING_FIELDS",
    "ReasoningProcessor",
    "extract_reasoning_from_message",
    "chunk_delta",
]

THINK_OPEN = "<think>"
THINK_CLOSE = "</think>"
REASONING_FIELDS: tuple[str, ...] = ("reasoning_content", "reasoning")


def _get(payload: Any, name: str) -> Any:
    if payload is None:
        return None
    if isinstance(payload, Mapping):
        return payload.get(name)
    value = getattr(payload, name, None)
    if value is None:
        # openai models keep unknown provider fields in model_extra
        extra = getattr(payload, "model_extra", None)
        if isinstance(extra, Mapping):
            value = extra.get(name)
    return value


def chunk_delta(chunk: Any) -> Any:
    """Return ``chunk.choices[0].delta`` or ``None``."""
    choices = _get(chunk, "choices")
    if not choices:
        return None
    return _get(choices[0], "delta")


def _reasoning_text(source: Any) -> str | None:
    for name in REASONING_FIELDS:
        value = _get(source, name)
        if isinstance(value, str) and value:
            return value
    return None


def extract_reasoning_from_message(message: Any) -> str | None:
    """Return the reasoning text of a non-streamed completion message."""
    return _reasoning_text(message)


class ReasoningProcessor:
    """Incremental reasoning folder for one stream.

    State is a single flag: whether a ``<think>`` block is open.
    """

    __slots__ = ("_open",)

    def __init__(self) -> None:
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    def process_chunk(self, chunk: Any) -> str | None:
        """Return the text this chunk contributes ahead of its visible content.

        Reasoning opens the block on first sight; visible content arriving
        while the block is open closes it.
        """
        delta = chunk_delta(chunk)
        if delta is None:
            return None
        reasoning = _reasoning_text(delta)
        if reasoning:
            if not self._open:
                self._open = True
                return THINK_OPEN + reasoning
            return reasoning
        content = _get(delta, "content")
        if self._open and content:
            self._open = False
            return THINK_CLOSE
        return None

    def finalize(self) -> str:
        """Close a block left open at stream end."""
        if self._open:
            self._open = False
            return THINK_CLOSE
        return ""
