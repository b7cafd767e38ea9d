"""Tool backend interface and the advertised tool catalog."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Mapping, Protocol, Sequence

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
    wait_chain,
    wait_fixed,
)

if TYPE_CHECKING:  # pragma: no cover - imports for type checking only
    from ...state import AppState

__all__ = [
    "MAX_TOOL_DESCRIPTION",
    "DEFAULT_REFRESH_DELAYS",
    "ToolDefinition",
    "ToolBackend",
    "ToolCallHandle",
    "call_tool_with_cancellation",
    "ToolCatalog",
]

LOGGER = logging.getLogger(__name__)

MAX_TOOL_DESCRIPTION = 1024
DEFAULT_REFRESH_DELAYS: tuple[float, ...] = (10.0, 15.0, 30.0)


@dataclass(slots=True, frozen=True)
class ToolDefinition:
    """A tool advertised by the tool backend."""

    name: str
    description: str = ""
    input_schema: Mapping[str, Any] = field(default_factory=dict)
    server: str | None = None

    def to_chat_param(self) -> dict[str, Any]:
        """OpenAI ``tools`` entry; descriptions are cut to what backends accept."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description[:MAX_TOOL_DESCRIPTION],
                "parameters": dict(self.input_schema) or {"type": "object", "properties": {}},
                "strict": False,
            },
        }


class ToolBackend(Protocol):
    """External service that lists and runs tools."""

    async def call_tool(self, name: str, arguments: Mapping[str, Any]) -> Any:
        """Run ``name`` and return ``{content: [{type, text}], error?}`` (or raise)."""
        ...

    async def list_tools(self) -> list[ToolDefinition]:
        ...


@dataclass(slots=True)
class ToolCallHandle:
    """An in-flight tool call and the means to cancel it."""

    name: str
    task: asyncio.Future[Any]

    def cancel(self) -> None:
        if not self.task.done():
            LOGGER.info("Cancelling tool call %s", self.name)
            self.task.cancel()

    @property
    def cancelled(self) -> bool:
        return self.task.cancelled()


def call_tool_with_cancellation(
    backend: ToolBackend,
    name: str,
    arguments: Mapping[str, Any],
) -> ToolCallHandle:
    """Dispatch a tool call as a task so an external stop action can cancel it."""
    task = asyncio.ensure_future(backend.call_tool(name, arguments))
    return ToolCallHandle(name=name, task=task)


def _return_last_outcome(retry_state: RetryCallState) -> Any:
    outcome = retry_state.outcome
    if outcome is None:  # pragma: no cover - tenacity always records an outcome
        return []
    return outcome.result()


class ToolCatalog:
    """Fetches the tool list and publishes it to the application state.

    An empty list is treated like a failure and retried, since tool servers
    usually come up after the application.
    """

    def __init__(
        self,
        backend: ToolBackend,
        app_state: AppState | None = None,
        *,
        delays: Sequence[float] = DEFAULT_REFRESH_DELAYS,
        max_attempts: int = 6,
    ) -> None:
        if not delays:
            raise ValueError("delays must not be empty")
        self._backend = backend
        self._app_state = app_state
        self._delays = tuple(delays)
        self._max_attempts = max(1, int(max_attempts))
        self._tools: list[ToolDefinition] = []

    @property
    def tools(self) -> list[ToolDefinition]:
        return list(self._tools)

    async def refresh(self) -> list[ToolDefinition]:
        """Fetch tools, retrying failures and empty results.

        Returns the last fetched list (possibly empty). The last error is
        re-raised when every attempt failed with an exception.
        """
        tools = await self._retrying()(self._fetch)
        self._tools = list(tools)
        LOGGER.info("Tool catalog refreshed with %d tool(s)", len(self._tools))
        if self._app_state is not None:
            self._app_state.update_tools(self._tools)
        return self.tools

    async def _fetch(self) -> list[ToolDefinition]:
        return list(await self._backend.list_tools())

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_chain(*(wait_fixed(delay) for delay in self._delays)),
            retry=retry_if_exception_type(Exception) | retry_if_result(lambda tools: not tools),
            before_sleep=self._log_retry,
            retry_error_callback=_return_last_outcome,
        )

    @staticmethod
    def _log_retry(retry_state: RetryCallState) -> None:
        outcome = retry_state.outcome
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        if outcome is not None and outcome.failed:
            LOGGER.warning(
                "Loading tools failed (%s); retrying in %.0fs (attempt %d)",
                outcome.exception(),
                delay,
                retry_state.attempt_number + 1,
            )
        else:
            LOGGER.info("No tools available; retrying in %.0fs (attempt %d)", delay, retry_state.attempt_number + 1)
