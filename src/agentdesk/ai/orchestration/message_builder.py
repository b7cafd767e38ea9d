"""Outbound transcript construction for completion requests."""

from __future__ import annotations

import copy
import logging
import re
from typing import Any, Sequence

from .types import Attachment, ThreadMessage, ToolCall

__all__ = ["CompletionMessagesBuilder", "strip_reasoning"]

LOGGER = logging.getLogger(__name__)

_THINK_BLOCK_RE = re.compile(r"<think>.*?</think>", re.DOTALL)


def strip_reasoning(content: str) -> str:
    """Remove ``<think>...</think>`` blocks so reasoning is not re-sent."""
    if "<think>" not in content:
        return content
    return _THINK_BLOCK_RE.sub("", content).strip()


class CompletionMessagesBuilder:
    """Accumulates the wire-format transcript for one send.

    History turns are converted once at construction; later turns are only
    ever appended. :meth:`get_messages` hands out a copy so a list already
    passed to the backend is never mutated by subsequent appends.

    Tool messages must reference an id emitted by a previous assistant
    message; the builder does not check this and the backend rejects
    transcripts that break it.
    """

    def __init__(
        self,
        history: Sequence[ThreadMessage] = (),
        system_instruction: str | None = None,
    ) -> None:
        """Initialize the builder.

        Args:
            history: Stored thread turns preceding this send.
            system_instruction: Rendered assistant instructions, if any.
        """
        self._messages: list[dict[str, Any]] = []
        if system_instruction:
            self._messages.append({"role": "system", "content": system_instruction})
        for message in history:
            if message.metadata.get("error"):
                continue
            if message.role not in ("user", "assistant"):
                # Tool turns cannot be replayed without the originating assistant tool_calls.
                continue
            text = message.text or "."
            if message.role == "assistant":
                text = strip_reasoning(text) or "."
            self._messages.append({"role": message.role, "content": text})

    def __len__(self) -> int:
        return len(self._messages)

    def add_user_message(
        self,
        content: str,
        attachments: Sequence[Attachment] | None = None,
    ) -> None:
        """Append a user turn; non-image attachments are dropped."""
        if self._messages and self._messages[-1]["role"] == "user":
            # Backends reject two consecutive user turns; the newest one wins.
            self._messages.pop()
        images = [attachment for attachment in attachments or () if attachment.is_image]
        if images:
            parts: list[dict[str, Any]] = [{"type": "text", "text": content}]
            for image in images:
                parts.append({"type": "image_url", "image_url": {"url": image.data_uri(), "detail": "auto"}})
            self._messages.append({"role": "user", "content": parts})
        else:
            self._messages.append({"role": "user", "content": content})

    def add_assistant_message(
        self,
        content: str,
        reasoning: str | None = None,
        tool_calls: Sequence[ToolCall] | None = None,
    ) -> None:
        """Append an assistant turn with optional reasoning and tool calls."""
        message: dict[str, Any] = {"role": "assistant", "content": strip_reasoning(content)}
        if reasoning:
            message["reasoning_content"] = reasoning
        if tool_calls:
            message["tool_calls"] = [call.to_chat_param() for call in tool_calls]
        self._messages.append(message)

    def add_tool_message(self, content: str, tool_call_id: str) -> None:
        """Append the result of a tool call."""
        self._messages.append({"role": "tool", "content": content, "tool_call_id": tool_call_id})

    def get_messages(self) -> list[dict[str, Any]]:
        """Return the ordered wire-format transcript (a deep copy)."""
        return copy.deepcopy(self._messages)
