"""Approval-gated execution of model-requested tool calls.

Every outcome of :meth:`ToolExecutionGate.resolve` is a
:class:`~agentdesk.ai.orchestration.types.ToolResult`: approval, denial,
unparseable arguments and backend failures alike. Only cancellation of the
turn itself escapes as :class:`~agentdesk.ai.orchestration.errors.TurnAborted`.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Collection, Iterable, Mapping

from ..tools.backend import ToolBackend, ToolDefinition, call_tool_with_cancellation
from ...events import ToolCallFinished, ToolCallStarted
from .cancellation import CancelToken
from .errors import TurnAborted
from .types import ToolCall, ToolResult

if TYPE_CHECKING:  # pragma: no cover - imports for type checking only
    from ...state import AppState

__all__ = [
    "ApprovalCallback",
    "ApprovalMode",
    "ToolPermissions",
    "ToolExecutionGate",
    "is_tool_approved",
]

LOGGER = logging.getLogger(__name__)

ApprovalCallback = Callable[[str, str, Mapping[str, Any]], Awaitable[bool]]
"""``(tool_name, thread_id, parameters) -> approved``"""


class ApprovalMode(str, Enum):
    """Decision taken when no approval callback is wired."""

    PERMISSIVE = "permissive"
    STRICT = "strict"


async def is_tool_approved(
    tool_name: str,
    thread_id: str,
    parameters: Mapping[str, Any],
    *,
    approved: Collection[str] = (),
    prompt: ApprovalCallback | None = None,
    allow_all: bool = False,
    mode: ApprovalMode = ApprovalMode.PERMISSIVE,
) -> bool:
    """Apply the approval policy to one call.

    Order: ``allow_all``, the thread's pre-approved names, the interactive
    ``prompt``, then ``mode``.
    """
    if allow_all:
        return True
    if tool_name in approved:
        return True
    if prompt is not None:
        return bool(await prompt(tool_name, thread_id, parameters))
    return mode is ApprovalMode.PERMISSIVE


@dataclass(slots=True)
class ToolPermissions:
    """Per-thread tool approvals and availability."""

    allow_all: bool = False
    mode: ApprovalMode = ApprovalMode.PERMISSIVE
    approval_callback: ApprovalCallback | None = None
    approved: dict[str, set[str]] = field(default_factory=dict)
    disabled: dict[str, set[str]] = field(default_factory=dict)

    def approve(self, thread_id: str, tool_name: str) -> None:
        self.approved.setdefault(thread_id, set()).add(tool_name)

    def approved_tools(self, thread_id: str) -> frozenset[str]:
        return frozenset(self.approved.get(thread_id, ()))

    def disable(self, thread_id: str, tool_name: str) -> None:
        self.disabled.setdefault(thread_id, set()).add(tool_name)

    def enable(self, thread_id: str, tool_name: str) -> None:
        self.disabled.get(thread_id, set()).discard(tool_name)

    def available_tools(self, thread_id: str, tools: Iterable[ToolDefinition]) -> list[ToolDefinition]:
        """``tools`` minus the ones disabled for ``thread_id``."""
        disabled = self.disabled.get(thread_id, set())
        return [tool for tool in tools if tool.name not in disabled]


class ToolExecutionGate:
    """Runs tool calls after consulting :class:`ToolPermissions`."""

    def __init__(
        self,
        backend: ToolBackend,
        permissions: ToolPermissions | None = None,
        app_state: AppState | None = None,
    ) -> None:
        self._backend = backend
        self._permissions = permissions or ToolPermissions()
        self._app_state = app_state

    @property
    def permissions(self) -> ToolPermissions:
        return self._permissions

    async def resolve(
        self,
        call: ToolCall,
        thread_id: str,
        cancel_token: CancelToken | None = None,
    ) -> ToolResult:
        """Approve and run ``call``, converting every failure into a result.

        Raises:
            TurnAborted: If ``cancel_token`` fires while awaiting approval.
        """
        try:
            arguments = call.parsed_arguments()
        except ValueError as exc:
            LOGGER.warning("Rejecting tool %s with unparseable arguments: %s", call.name, exc)
            result = ToolResult.from_error(call.name, exc)
            self._finished(thread_id, call, approved=True, result=result)
            return result

        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        approval = is_tool_approved(
            call.name,
            thread_id,
            arguments,
            approved=self._permissions.approved_tools(thread_id),
            prompt=self._permissions.approval_callback,
            allow_all=self._permissions.allow_all,
            mode=self._permissions.mode,
        )
        try:
            approved = await (cancel_token.guard(approval) if cancel_token is not None else approval)
        except TurnAborted:
            raise
        except Exception:
            LOGGER.exception("Approval prompt for tool %s failed; treating as denied", call.name)
            approved = False
        if not approved:
            LOGGER.info("Tool %s was not approved for thread %s", call.name, thread_id)
            result = ToolResult.denied()
            self._finished(thread_id, call, approved=False, result=result)
            return result

        result = await self._execute(call, thread_id, arguments)
        self._finished(thread_id, call, approved=True, result=result)
        return result

    async def _execute(self, call: ToolCall, thread_id: str, arguments: Mapping[str, Any]) -> ToolResult:
        LOGGER.debug("Executing tool %s (%s)", call.name, call.id)
        self._publish(ToolCallStarted(thread_id=thread_id, call_id=call.id, tool_name=call.name))
        handle = call_tool_with_cancellation(self._backend, call.name, arguments)
        if self._app_state is not None:
            self._app_state.set_cancel_tool_call(handle.cancel)
        try:
            await asyncio.wait({handle.task})
        except asyncio.CancelledError:
            handle.cancel()
            raise
        finally:
            if self._app_state is not None:
                self._app_state.set_cancel_tool_call(None)

        if handle.task.cancelled():
            return ToolResult.from_error(call.name, "Tool call was cancelled")
        exc = handle.task.exception()
        if exc is not None:
            LOGGER.warning("Tool %s failed: %s", call.name, exc)
            return ToolResult.from_error(call.name, exc)
        return ToolResult.coerce(handle.task.result())

    def _finished(self, thread_id: str, call: ToolCall, *, approved: bool, result: ToolResult) -> None:
        self._publish(
            ToolCallFinished(
                thread_id=thread_id,
                call_id=call.id,
                tool_name=call.name,
                approved=approved,
                error=result.error,
            )
        )

    def _publish(self, event) -> None:
        bus = self._app_state.bus if self._app_state is not None else None
        if bus is not None:
            bus.publish(event)
