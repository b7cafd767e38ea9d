"""Tool backend integration."""

from .backend import (
    DEFAULT_REFRESH_DELAYS,
    MAX_TOOL_DESCRIPTION,
    ToolBackend,
    ToolCallHandle,
    ToolCatalog,
    ToolDefinition,
    call_tool_with_cancellation,
)

__all__ = [
    "DEFAULT_REFRESH_DELAYS",
    "MAX_TOOL_DESCRIPTION",
    "ToolBackend",
    "ToolCallHandle",
    "ToolCatalog",
    "ToolDefinition",
    "call_tool_with_cancellation",
]
