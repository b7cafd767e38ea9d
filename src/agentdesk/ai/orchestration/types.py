"""Core type definitions for the completion orchestrator.

Threads, turns, tool calls and the records attached to finalized assistant
turns. Wire-format conversion (``to_chat_param``) lives next to each type so
the message builder stays a thin list manager.
"""

from __future__ import annotations

import json
import time
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Literal, Mapping, Sequence

__all__ = [
    # Thread / turn types
    "MessageRole",
    "Attachment",
    "ContentPart",
    "ThreadMessage",
    "Thread",
    "ModelSelection",
    "Assistant",
    "DEFAULT_ASSISTANT",
    # Tool types
    "ToolCall",
    "ToolCallState",
    "ToolResult",
    "ToolCallRecord",
    # Stats / outcomes
    "TokenSpeed",
    "TurnStatus",
    "TurnOutcome",
    "OrchestratorState",
    # Constructors
    "new_id",
    "now_ms",
    "new_user_content",
    "new_assistant_content",
    "empty_thread_content",
]

MessageRole = Literal["system", "user", "assistant", "tool"]


def new_id() -> str:
    """Return a fresh opaque identifier for threads, turns and tool calls."""
    return uuid.uuid4().hex


def now_ms() -> int:
    """Milliseconds since epoch, the timestamp unit used on thread messages."""
    return int(time.time() * 1000)


# -----------------------------------------------------------------------------
# Content
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class Attachment:
    """A file attached to a user turn.

    Only image attachments are inlined into the transcript; everything else
    is dropped silently when the turn is built.
    """

    name: str
    type: str
    size: int = 0
    base64: str = ""
    data_url: str = ""

    @property
    def is_image(self) -> bool:
        return self.type.startswith("image/")

    def data_uri(self) -> str:
        return f"data:{self.type};base64,{self.base64}"


@dataclass(slots=True, frozen=True)
class ContentPart:
    """One content part of a thread message (text or inline image)."""

    type: Literal["text", "image_url"]
    text: str | None = None
    image_url: str | None = None

    @classmethod
    def of_text(cls, text: str) -> ContentPart:
        return cls(type="text", text=text)

    @classmethod
    def of_image(cls, url: str) -> ContentPart:
        return cls(type="image_url", image_url=url)

    def to_chat_param(self) -> dict[str, Any]:
        if self.type == "image_url":
            return {"type": "image_url", "image_url": {"url": self.image_url or "", "detail": "auto"}}
        return {"type": "text", "text": self.text or ""}


@dataclass(slots=True)
class ThreadMessage:
    """A turn stored in a thread.

    Attributes:
        id: Opaque message identifier.
        thread_id: Owning thread.
        role: ``user``, ``assistant`` or ``tool``.
        content: Ordered content parts.
        status: Always ``ready`` once appended.
        created_at: Milliseconds since epoch, filled on append when zero.
        completed_at: Milliseconds since epoch for finalized assistant turns.
        metadata: Free-form metadata (tool-call records, token speed, assistant).
    """

    id: str
    thread_id: str
    role: MessageRole
    content: list[ContentPart] = field(default_factory=list)
    status: str = "ready"
    created_at: int = 0
    completed_at: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def text(self) -> str:
        for part in self.content:
            if part.type == "text":
                return part.text or ""
        return ""

    @property
    def tool_call_records(self) -> list[ToolCallRecord]:
        records = self.metadata.get("tool_calls")
        return list(records) if isinstance(records, list) else []

    def with_metadata(self, **updates: Any) -> ThreadMessage:
        merged = dict(self.metadata)
        merged.update(updates)
        return replace(self, metadata=merged)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for persistence (tool records are flattened)."""
        metadata: dict[str, Any] = {}
        for key, value in self.metadata.items():
            if key == "tool_calls" and isinstance(value, list):
                metadata[key] = [
                    record.to_dict() if isinstance(record, ToolCallRecord) else record
                    for record in value
                ]
            elif key == "assistant" and isinstance(value, Assistant):
                metadata[key] = value.id
            elif key == "token_speed" and isinstance(value, TokenSpeed):
                metadata[key] = value.to_dict()
            else:
                metadata[key] = value
        return {
            "id": self.id,
            "thread_id": self.thread_id,
            "role": self.role,
            "content": [part.to_chat_param() for part in self.content],
            "status": self.status,
            "created_at": self.created_at,
            "completed_at": self.completed_at,
            "metadata": metadata,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> ThreadMessage:
        parts: list[ContentPart] = []
        for raw in payload.get("content") or []:
            if raw.get("type") == "image_url":
                image = raw.get("image_url") or {}
                parts.append(ContentPart.of_image(str(image.get("url", ""))))
            else:
                parts.append(ContentPart.of_text(str(raw.get("text", ""))))
        return cls(
            id=str(payload.get("id") or new_id()),
            thread_id=str(payload.get("thread_id", "")),
            role=payload.get("role", "user"),  # type: ignore[arg-type]
            content=parts,
            status=str(payload.get("status", "ready")),
            created_at=int(payload.get("created_at") or 0),
            completed_at=int(payload.get("completed_at") or 0),
            metadata=dict(payload.get("metadata") or {}),
        )


def new_user_content(
    thread_id: str,
    text: str,
    attachments: Sequence[Attachment] | None = None,
) -> ThreadMessage:
    """Create a user turn; only image attachments become content parts."""
    parts = [ContentPart.of_text(text)]
    for attachment in attachments or ():
        if attachment.is_image:
            parts.append(ContentPart.of_image(attachment.data_uri()))
    return ThreadMessage(id=new_id(), thread_id=thread_id, role="user", content=parts)


def new_assistant_content(
    thread_id: str,
    text: str,
    metadata: Mapping[str, Any] | None = None,
) -> ThreadMessage:
    """Create an assistant turn (used for previews and finalized turns)."""
    return ThreadMessage(
        id=new_id(),
        thread_id=thread_id,
        role="assistant",
        content=[ContentPart.of_text(text)],
        metadata=dict(metadata or {}),
    )


def empty_thread_content() -> ThreadMessage:
    """Placeholder preview shown while a request is being issued."""
    return ThreadMessage(id=new_id(), thread_id="", role="assistant", content=[])


# -----------------------------------------------------------------------------
# Threads and assistants
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ModelSelection:
    """Model id plus the provider that serves it."""

    id: str
    provider: str


@dataclass(slots=True, frozen=True)
class Assistant:
    """Assistant profile: instructions, request parameters and step budget."""

    id: str
    name: str
    instructions: str = ""
    parameters: Mapping[str, Any] = field(default_factory=dict)
    tool_steps: int = 20
    description: str = ""


DEFAULT_ASSISTANT = Assistant(
    id="desk-agent",
    name="Desk Agent",
    description=(
        "A helpful desktop assistant that can reason through complex tasks and use tools "
        "to complete them on the user's behalf."
    ),
    instructions=(
        "You are a helpful AI assistant. Your primary goal is to assist users with tasks to "
        "the best of your abilities and tools.\n\n"
        "When responding:\n"
        "- Answer directly from your knowledge when you can\n"
        "- Be concise, clear, and helpful\n"
        "- Admit when you're unsure rather than making things up\n\n"
        "When using tools:\n"
        "- Use one tool at a time and wait for results before proceeding to the next tool\n"
        "- Use actual values as arguments, not variable names\n"
        "- Avoid repeating the same tool call with identical parameters\n\n"
        "Current date: {{current_date}}\n\n"
        "# User Context\n\n"
        "{{user_context}}"
    ),
)


@dataclass(slots=True)
class Thread:
    """An append-only conversation with its model selection and assistant."""

    id: str
    title: str
    model: ModelSelection | None
    assistant: Assistant = DEFAULT_ASSISTANT
    updated: float = 0.0


# -----------------------------------------------------------------------------
# Tool calls
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class ToolCall:
    """A function invocation requested by the model.

    ``name`` and ``arguments`` grow by concatenation while the call streams
    in; nothing ever overwrites them. ``index`` is the stream slot the call
    was assembled from (``None`` for calls that never streamed).
    """

    id: str
    name: str = ""
    arguments: str = ""
    type: str = "function"
    index: int | None = field(default=None, compare=False, repr=False)

    def to_chat_param(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "function": {"name": self.name, "arguments": self.arguments},
        }

    def parsed_arguments(self) -> dict[str, Any]:
        """Return the arguments as a dict.

        Raises:
            ValueError: If the payload is not a JSON object.
        """
        if not self.arguments.strip():
            return {}
        try:
            parsed = json.loads(self.arguments)
        except json.JSONDecodeError as exc:
            raise ValueError(f"Invalid JSON in tool arguments: {exc}") from exc
        if not isinstance(parsed, dict):
            raise ValueError(f"Arguments must be a JSON object, got {type(parsed).__name__}")
        return parsed

    @classmethod
    def from_chat_param(cls, payload: Any) -> ToolCall:
        """Build from an OpenAI tool-call object or mapping."""
        function = _field(payload, "function")
        return cls(
            id=str(_field(payload, "id") or new_id()),
            name=str(_field(function, "name") or ""),
            arguments=str(_field(function, "arguments") or ""),
            type=str(_field(payload, "type") or "function"),
        )


class ToolCallState(str, Enum):
    """Execution state of a tool call record."""

    PENDING = "pending"
    READY = "ready"


@dataclass(slots=True, frozen=True)
class ToolResult:
    """Normalized tool backend response: ``{content: [{type, text}], error?}``."""

    content: tuple[Mapping[str, Any], ...] = ()
    error: bool = False

    @property
    def text(self) -> str:
        if not self.content:
            return ""
        first = self.content[0]
        return str(first.get("text") or "")

    @classmethod
    def from_text(cls, text: str, *, error: bool = False) -> ToolResult:
        return cls(content=({"type": "text", "text": text},), error=error)

    @classmethod
    def from_error(cls, tool_name: str, exc: BaseException | str) -> ToolResult:
        if isinstance(exc, BaseException):
            detail = str(exc) or type(exc).__name__
        else:
            detail = exc
        return cls.from_text(f"Error calling tool {tool_name}: {detail}", error=True)

    @classmethod
    def denied(cls) -> ToolResult:
        return cls.from_text("The user has chosen to disallow the tool call.")

    @classmethod
    def coerce(cls, payload: Any) -> ToolResult:
        """Normalize whatever the tool backend returned."""
        if isinstance(payload, ToolResult):
            return payload
        if payload is None:
            return cls.from_text("")
        if isinstance(payload, str):
            return cls.from_text(payload)
        if isinstance(payload, Mapping):
            raw_content = payload.get("content")
            if isinstance(raw_content, str):
                return cls.from_text(raw_content, error=bool(payload.get("error")))
            if isinstance(raw_content, Sequence):
                parts = tuple(dict(part) for part in raw_content if isinstance(part, Mapping))
                return cls(content=parts, error=bool(payload.get("error")))
        try:
            return cls.from_text(json.dumps(payload, ensure_ascii=False))
        except (TypeError, ValueError):
            return cls.from_text(str(payload))

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"content": [dict(part) for part in self.content]}
        if self.error:
            payload["error"] = True
        return payload


@dataclass(slots=True, frozen=True)
class ToolCallRecord:
    """A tool call paired with its execution outcome on an assistant turn."""

    tool: ToolCall
    state: ToolCallState = ToolCallState.PENDING
    response: ToolResult | None = None

    def resolved(self, response: ToolResult) -> ToolCallRecord:
        return ToolCallRecord(tool=self.tool, state=ToolCallState.READY, response=response)

    def to_dict(self) -> dict[str, Any]:
        return {
            "tool": self.tool.to_chat_param(),
            "state": self.state.value,
            "response": self.response.to_dict() if self.response is not None else None,
        }


# -----------------------------------------------------------------------------
# Stats and outcomes
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class TokenSpeed:
    """Average streaming rate measured across flushes.

    ``token_speed`` is ``token_count`` divided by the seconds elapsed since
    ``started_at``.
    """

    message_id: str
    token_count: int
    started_at: float
    last_timestamp: float
    token_speed: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": self.message_id,
            "token_count": self.token_count,
            "token_speed": round(self.token_speed, 3),
        }


class TurnStatus(str, Enum):
    """Terminal status of one ``send_message`` call."""

    COMPLETED = "completed"
    ABORTED = "aborted"
    ERRORED = "errored"
    SKIPPED = "skipped"


class OrchestratorState(str, Enum):
    """Turn-loop states."""

    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    BATCHED = "batched"
    TOOL_EXECUTING = "tool_executing"
    COMPLETED = "completed"
    ABORTED = "aborted"
    ERRORED = "errored"


@dataclass(slots=True, frozen=True)
class TurnOutcome:
    """What one ``send_message`` produced.

    Attributes:
        thread_id: Thread the send ran against (``None`` when skipped early).
        status: Terminal status.
        messages: Assistant turns appended during the loop, in order.
        error: User-visible error text when ``status`` is ``errored``.
        steps: Number of request round-trips that consumed the step budget.
    """

    thread_id: str | None
    status: TurnStatus
    messages: tuple[ThreadMessage, ...] = ()
    error: str | None = None
    steps: int = 0

    @property
    def final_message(self) -> ThreadMessage | None:
        return self.messages[-1] if self.messages else None


def _field(payload: Any, name: str) -> Any:
    if payload is None:
        return None
    if isinstance(payload, Mapping):
        return payload.get(name)
    return getattr(payload, name, None)
