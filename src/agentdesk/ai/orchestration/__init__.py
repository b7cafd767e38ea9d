"""Agentic completion orchestration: turn loop, tool gate and stream helpers."""

from .types import (
    Assistant,
    Attachment,
    ContentPart,
    DEFAULT_ASSISTANT,
    ModelSelection,
    OrchestratorState,
    Thread,
    ThreadMessage,
    TokenSpeed,
    ToolCall,
    ToolCallRecord,
    ToolCallState,
    ToolResult,
    TurnOutcome,
    TurnStatus,
)
from .errors import (
    CompletionError,
    EmptyTurnError,
    NoCompletionError,
    ProtocolError,
    TurnAborted,
    describe_error,
    is_capacity_error,
)
from .cancellation import CancelToken
from .message_builder import CompletionMessagesBuilder, strip_reasoning
from .reasoning import ReasoningProcessor
from .tool_calls import extract_tool_call
from .flush_scheduler import StreamFlushScheduler
from .tool_gate import ApprovalCallback, ApprovalMode, ToolExecutionGate, ToolPermissions, is_tool_approved
from .context_recovery import ContextRecovery, ContextResolver
from .orchestrator import CompletionOrchestrator

__all__ = [
    "Assistant",
    "Attachment",
    "ContentPart",
    "DEFAULT_ASSISTANT",
    "ModelSelection",
    "OrchestratorState",
    "Thread",
    "ThreadMessage",
    "TokenSpeed",
    "ToolCall",
    "ToolCallRecord",
    "ToolCallState",
    "ToolResult",
    "TurnOutcome",
    "TurnStatus",
    "CompletionError",
    "EmptyTurnError",
    "NoCompletionError",
    "ProtocolError",
    "TurnAborted",
    "describe_error",
    "is_capacity_error",
    "CancelToken",
    "CompletionMessagesBuilder",
    "strip_reasoning",
    "ReasoningProcessor",
    "extract_tool_call",
    "StreamFlushScheduler",
    "ApprovalCallback",
    "ApprovalMode",
    "ToolExecutionGate",
    "ToolPermissions",
    "is_tool_approved",
    "ContextRecovery",
    "ContextResolver",
    "CompletionOrchestrator",
]
