"""Reconstruction of streamed tool calls."""

from __future__ import annotations

import logging
from typing import Any, Mapping, MutableSequence

from .reasoning import chunk_delta
from .types import ToolCall, new_id

__all__ = ["extract_tool_call", "tool_call_deltas"]

LOGGER = logging.getLogger(__name__)


def _get(payload: Any, name: str) -> Any:
    if payload is None:
        return None
    if isinstance(payload, Mapping):
        return payload.get(name)
    return getattr(payload, name, None)


def tool_call_deltas(chunk: Any) -> list[Any]:
    """Return the tool-call delta list of ``chunk`` (empty when absent)."""
    delta = chunk_delta(chunk)
    deltas = _get(delta, "tool_calls")
    return list(deltas) if deltas else []


def _slot_of(call: ToolCall, position: int) -> int:
    return call.index if call.index is not None else position


def extract_tool_call(chunk: Any, calls: MutableSequence[ToolCall]) -> MutableSequence[ToolCall]:
    """Fold the tool-call deltas of ``chunk`` into ``calls``.

    ``calls`` is keyed by slot: the delta tagged ``index`` updates the call
    assembled for that slot, wherever it sits in the list. The first delta for
    a slot creates the call and inserts it in slot order; later deltas only
    ever append to its name and arguments. Slots may arrive sparse or out of
    order without existing calls being split or reordered.

    Args:
        chunk: One streamed completion chunk.
        calls: Accumulator list, mutated in place.

    Returns:
        The same ``calls`` list.
    """
    for delta in tool_call_deltas(chunk):
        index = _get(delta, "index")
        if index is None:
            index = 0
        function = _get(delta, "function")
        name = _get(function, "name") or ""
        arguments = _get(function, "arguments") or ""

        call = next(
            (existing for position, existing in enumerate(calls) if _slot_of(existing, position) == index),
            None,
        )
        if call is None:
            call = ToolCall(
                id=str(_get(delta, "id") or new_id()),
                name=name,
                arguments=arguments,
                type=str(_get(delta, "type") or "function"),
                index=index,
            )
            insert_at = next(
                (position for position, existing in enumerate(calls) if _slot_of(existing, position) > index),
                len(calls),
            )
            if insert_at < len(calls):
                LOGGER.debug("Tool call slot %s arrived after a higher slot", index)
            calls.insert(insert_at, call)
            continue

        if name and name != call.name:
            call.name += name
        if arguments:
            call.arguments += arguments
    return calls
