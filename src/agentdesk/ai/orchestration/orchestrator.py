"""Completion orchestrator: the agentic turn loop.

One :meth:`CompletionOrchestrator.send_message` call drives the conversation
until the model answers without requesting tools:

1. build the outbound transcript and make sure the model is running,
2. issue the request and consume the response (single object or stream),
3. run requested tools through the :class:`ToolExecutionGate`,
4. feed the results back and repeat.

Context-window overflow is the only error that is retried, and only after
the injected resolver decides how to recover.
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Callable, Mapping, Sequence

from ..client import ProviderAdapter, is_completion_response
from ..engines import EngineManager
from ..instructions import render_instructions
from ..providers import ModelProvider, model_settings_params, policy_for
from ..tools.backend import ToolDefinition
from ...events import OrchestratorStateChanged
from ...utils.logging import thread_context
from .cancellation import CancelToken
from .context_recovery import ContextRecovery, ContextResolver
from .errors import (
    EmptyTurnError,
    NoCompletionError,
    ProtocolError,
    TurnAborted,
    describe_error,
    is_capacity_error,
)
from .flush_scheduler import DEFAULT_FRAME_INTERVAL, StreamFlushScheduler
from .message_builder import CompletionMessagesBuilder
from .reasoning import (
    THINK_CLOSE,
    THINK_OPEN,
    ReasoningProcessor,
    chunk_delta,
    extract_reasoning_from_message,
)
from .tool_calls import extract_tool_call, tool_call_deltas
from .tool_gate import ToolExecutionGate
from .types import (
    Assistant,
    Attachment,
    DEFAULT_ASSISTANT,
    ModelSelection,
    OrchestratorState,
    Thread,
    ThreadMessage,
    ToolCall,
    ToolCallRecord,
    ToolResult,
    TurnOutcome,
    TurnStatus,
    empty_thread_content,
    new_assistant_content,
    new_user_content,
    now_ms,
)

if TYPE_CHECKING:  # pragma: no cover - imports for type checking only
    from ...state import AppState, MessageStore, ThreadRegistry
    from ..providers import ProviderRegistry

__all__ = ["CompletionOrchestrator", "UserContextSource"]

LOGGER = logging.getLogger(__name__)

UserContextSource = Callable[[], Any]


@dataclass(slots=True)
class _Turn:
    """Mutable bookkeeping for one ``send_message`` call."""

    thread: Thread
    provider: ModelProvider
    token: CancelToken
    assistant: Assistant
    tools: list[ToolDefinition] = field(default_factory=list)
    steps: int = 0
    appended: list[ThreadMessage] = field(default_factory=list)

    @property
    def model_id(self) -> str:
        return self.thread.model.id if self.thread.model is not None else ""


def _field(payload: Any, name: str) -> Any:
    if payload is None:
        return None
    if isinstance(payload, Mapping):
        return payload.get(name)
    return getattr(payload, name, None)


class CompletionOrchestrator:
    """Owns the turn loop, context recovery and cancellation.

    Collaborators are passed in explicitly; the orchestrator is the only writer
    of assistant turns while a send is running.

    Args:
        adapter: Issues completion requests.
        providers: Provider list and current model selection.
        threads: Thread registry; a thread is created lazily on first send.
        messages: Message store the finalized turns are appended to.
        app_state: Streaming preview, token speed, abort handles and tools.
        tool_gate: Runs tool calls; without one every call fails as data.
        engines: Local model engines (start/stop).
        context_recovery: Applies context-window decisions.
        context_resolver: Asked what to do on a context-window overflow.
        assistant: Active assistant profile.
        user_context: Text (or callable returning text) for ``{{user_context}}``.
        frame_interval: Seconds between streaming preview flushes.
    """

    def __init__(
        self,
        adapter: ProviderAdapter,
        *,
        providers: ProviderRegistry,
        threads: ThreadRegistry,
        messages: MessageStore,
        app_state: AppState,
        tool_gate: ToolExecutionGate | None = None,
        engines: EngineManager | None = None,
        context_recovery: ContextRecovery | None = None,
        context_resolver: ContextResolver | None = None,
        assistant: Assistant | None = None,
        user_context: str | UserContextSource | None = None,
        frame_interval: float | None = DEFAULT_FRAME_INTERVAL,
    ) -> None:
        self._adapter = adapter
        self._providers = providers
        self._threads = threads
        self._messages = messages
        self._app_state = app_state
        self._tool_gate = tool_gate
        self._engines = engines or EngineManager()
        self._context_recovery = context_recovery
        self._context_resolver = context_resolver
        self._assistant = assistant or DEFAULT_ASSISTANT
        self._user_context = user_context
        self._frame_interval = frame_interval
        self._state = OrchestratorState.IDLE

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def state(self) -> OrchestratorState:
        return self._state

    @property
    def assistant(self) -> Assistant:
        return self._assistant

    @assistant.setter
    def assistant(self, assistant: Assistant) -> None:
        self._assistant = assistant

    async def send_message(
        self,
        text: str,
        *,
        troubleshooting: bool = True,
        attachments: Sequence[Attachment] | None = None,
    ) -> TurnOutcome:
        """Run one user-initiated send to completion.

        Args:
            text: The user's prompt.
            troubleshooting: ``False`` re-runs the thread without storing or
                sending a new user turn.
            attachments: Files attached to the prompt; only images are sent.

        Returns:
            The outcome. Failures are reported through the outcome and
            :meth:`AppState.set_model_load_error`, never raised.
        """
        thread = self._current_thread(text)
        self._app_state.reset_token_speed()
        provider = self._providers.selected_provider
        if thread is None or provider is None:
            LOGGER.info("Skipping send: no thread or no provider selected")
            return TurnOutcome(thread_id=thread.id if thread else None, status=TurnStatus.SKIPPED)

        history = await self._messages.ensure_loaded(thread.id)
        token = CancelToken()
        self._app_state.set_abort_handle(thread.id, token)
        self._app_state.update_streaming_content(empty_thread_content())
        if troubleshooting:
            self._messages.add_message(new_user_content(thread.id, text, attachments))
        self._threads.touch(thread.id)

        turn = _Turn(thread=thread, provider=provider, token=token, assistant=self._assistant)
        status = TurnStatus.COMPLETED
        error: str | None = None
        try:
            with thread_context(thread.id):
                await self._run(turn, history, text, attachments, troubleshooting)
        except TurnAborted:
            status = TurnStatus.ABORTED
        except Exception as exc:
            if token.cancelled:
                LOGGER.debug("Suppressing error after cancellation: %s", exc)
                status = TurnStatus.ABORTED
            else:
                LOGGER.warning("Send on thread %s failed: %s", thread.id, describe_error(exc), exc_info=True)
                status = TurnStatus.ERRORED
                error = describe_error(exc)
                self._app_state.set_model_load_error(error, thread.id)
        finally:
            self._app_state.set_loading_model(False)
            self._app_state.update_streaming_content(None)
            self._app_state.clear_abort_handle(thread.id, token)

        terminal = {
            TurnStatus.COMPLETED: OrchestratorState.COMPLETED,
            TurnStatus.ABORTED: OrchestratorState.ABORTED,
            TurnStatus.ERRORED: OrchestratorState.ERRORED,
        }[status]
        self._set_state(terminal, thread.id)
        LOGGER.info("Send on thread %s ended %s after %d step(s)", thread.id, status.value, turn.steps)
        return TurnOutcome(
            thread_id=thread.id,
            status=status,
            messages=tuple(turn.appended),
            error=error,
            steps=turn.steps,
        )

    def cancel(self, thread_id: str | None = None) -> bool:
        """Cancel the live send on ``thread_id`` (the current thread by default).

        Tool calls already dispatched keep running; see :meth:`cancel_tool_call`.

        Returns:
            ``True`` if this call cancelled a live request.
        """
        if thread_id is None:
            current = self._threads.current_thread
            thread_id = current.id if current is not None else None
        if thread_id is None:
            return False
        token = self._app_state.get_abort_handle(thread_id)
        if token is None:
            return False
        cancelled = token.cancel("cancelled by user")
        if cancelled:
            LOGGER.info("Cancelled send on thread %s", thread_id)
        return cancelled

    def cancel_tool_call(self) -> bool:
        """Stop the tool call currently in flight, if any."""
        return self._app_state.cancel_tool_call()

    async def aclose(self) -> None:
        await self._adapter.aclose()

    # ------------------------------------------------------------------
    # Turn loop
    # ------------------------------------------------------------------

    async def _run(
        self,
        turn: _Turn,
        history: Sequence[ThreadMessage],
        text: str,
        attachments: Sequence[Attachment] | None,
        troubleshooting: bool,
    ) -> None:
        if turn.model_id:
            self._app_state.set_loading_model(True)
            await turn.token.guard(self._engines.start_model(turn.provider, turn.model_id))
            self._app_state.set_loading_model(False)

        instructions = render_instructions(turn.assistant.instructions, user_context=await self._resolve_user_context())
        builder = CompletionMessagesBuilder(history, instructions)
        if troubleshooting:
            builder.add_user_message(text, attachments)

        model = turn.provider.get_model(turn.model_id)
        if model is not None and model.supports("tools"):
            permissions = self._tool_gate.permissions if self._tool_gate is not None else None
            tools = list(self._app_state.tools)
            turn.tools = permissions.available_tools(turn.thread.id, tools) if permissions else tools

        while True:
            turn.token.raise_if_cancelled()
            model = turn.provider.get_model(turn.model_id)
            params = {**model_settings_params(model), **turn.assistant.parameters}
            stream = params.pop("stream", True) is not False

            try:
                content, calls = await self._request(turn, builder.get_messages(), stream, params)
            except TurnAborted:
                raise
            except Exception as exc:
                if not is_capacity_error(exc):
                    raise
                updated = await self._recover(turn)
                if updated is None:
                    raise
                turn.provider = updated
                continue

            turn.steps += 1
            LOGGER.debug(
                "Step %d on thread %s: %d char(s), %d tool call(s)",
                turn.steps,
                turn.thread.id,
                len(content),
                len(calls),
            )
            if not content and not calls and policy_for(turn.provider.provider, self._adapter.catalog).fatal_empty_turn:
                await self._engines.stop_model(turn.provider.provider, turn.model_id)
                raise EmptyTurnError()

            final = new_assistant_content(
                turn.thread.id,
                content,
                {"token_speed": self._app_state.token_speed, "assistant": turn.assistant},
            )
            builder.add_assistant_message(content, None, calls)
            if calls:
                final = await self._execute_tools(turn, calls, final, builder)

            stored = self._messages.add_message(replace(final, completed_at=now_ms()), turn.assistant)
            turn.appended.append(stored)
            self._app_state.update_streaming_content(empty_thread_content())
            self._threads.touch(turn.thread.id)

            turn.token.raise_if_cancelled()
            if not calls:
                return
            if turn.steps >= turn.assistant.tool_steps and turn.tools:
                LOGGER.info("Step budget of %d reached; no more tools offered", turn.assistant.tool_steps)
                turn.tools = []

    async def _request(
        self,
        turn: _Turn,
        wire_messages: list[dict[str, Any]],
        stream: bool,
        params: dict[str, Any],
    ) -> tuple[str, list[ToolCall]]:
        self._set_state(OrchestratorState.SENDING, turn.thread.id)
        response = await self._adapter.send_completion(
            turn.thread,
            turn.provider,
            wire_messages,
            turn.token,
            turn.tools,
            stream,
            params,
        )
        if response is None:
            raise NoCompletionError()
        if is_completion_response(response):
            self._set_state(OrchestratorState.BATCHED, turn.thread.id)
            return self._read_completion(response)
        self._set_state(OrchestratorState.STREAMING, turn.thread.id)
        return await self._pump(turn, response)

    def _read_completion(self, response: Any) -> tuple[str, list[ToolCall]]:
        choices = _field(response, "choices") or []
        message = _field(choices[0], "message") if choices else None
        content = _field(message, "content") or ""
        reasoning = extract_reasoning_from_message(message)
        if reasoning:
            content = f"{THINK_OPEN}{reasoning}{THINK_CLOSE}{content}"
        calls = [ToolCall.from_chat_param(raw) for raw in _field(message, "tool_calls") or ()]
        return content, calls

    async def _pump(self, turn: _Turn, response: Any) -> tuple[str, list[ToolCall]]:
        token = turn.token
        scheduler = StreamFlushScheduler(
            self._app_state,
            turn.thread.id,
            token,
            frame_interval=self._frame_interval,
        )
        reasoning = ReasoningProcessor()
        iterator = response.__aiter__()
        chunk_count = 0
        try:
            while not token.cancelled:
                try:
                    chunk = await token.guard(iterator.__anext__())
                except StopAsyncIteration:
                    break
                except TurnAborted:
                    break
                chunk_count += 1
                if token.cancelled:
                    LOGGER.debug("Stream aborted at chunk %d", chunk_count)
                    break
                if _field(chunk, "choices") is None:
                    raise ProtocolError(chunk)

                if tool_call_deltas(chunk):
                    extract_tool_call(chunk, scheduler.tool_calls)
                    scheduler.schedule_flush()
                reasoning_delta = reasoning.process_chunk(chunk)
                if reasoning_delta:
                    scheduler.append_text(reasoning_delta)
                    scheduler.schedule_flush()
                content = _field(chunk_delta(chunk), "content")
                if content:
                    scheduler.append_text(content)
                    scheduler.schedule_flush()
        finally:
            scheduler.release()
            if token.cancelled:
                await self._close_response(response)
            else:
                scheduler.text += reasoning.finalize()
                scheduler.flush()

        if token.cancelled:
            raise TurnAborted(token.reason or "cancelled")
        LOGGER.debug("Stream on thread %s ended after %d chunk(s)", turn.thread.id, chunk_count)
        return scheduler.text, list(scheduler.tool_calls)

    async def _execute_tools(
        self,
        turn: _Turn,
        calls: Sequence[ToolCall],
        final: ThreadMessage,
        builder: CompletionMessagesBuilder,
    ) -> ThreadMessage:
        self._set_state(OrchestratorState.TOOL_EXECUTING, turn.thread.id)
        records: list[ToolCallRecord] = []
        for call in calls:
            if turn.token.cancelled:
                break
            records.append(ToolCallRecord(tool=call))
            self._app_state.update_streaming_content(final.with_metadata(tool_calls=list(records)))
            try:
                result = await self._resolve_tool(turn, call)
            except TurnAborted:
                records.pop()
                break
            records[-1] = records[-1].resolved(result)
            builder.add_tool_message(result.text, call.id)
        return final.with_metadata(tool_calls=records)

    async def _resolve_tool(self, turn: _Turn, call: ToolCall) -> ToolResult:
        if self._tool_gate is None:
            return ToolResult.from_error(call.name, "No tool backend is configured")
        return await self._tool_gate.resolve(call, turn.thread.id, turn.token)

    async def _recover(self, turn: _Turn) -> ModelProvider | None:
        """Ask the resolver how to handle a context overflow and apply it."""
        if self._context_recovery is None or self._context_resolver is None or not turn.model_id:
            return None
        LOGGER.info("Context window exceeded on %s/%s", turn.provider.provider, turn.model_id)
        decision = await turn.token.guard(self._context_resolver())
        return await self._context_recovery.apply(decision, turn.model_id, turn.provider, turn.token)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _current_thread(self, title: str) -> Thread | None:
        thread = self._threads.current_thread
        if thread is not None:
            return thread
        selection = self._providers.selection
        if selection is None:
            provider_name = self._providers.selected_provider_name
            if not provider_name:
                return None
            selection = ModelSelection(id="", provider=provider_name)
        return self._threads.create_thread(selection, title, self._assistant)

    async def _resolve_user_context(self) -> str | None:
        source = self._user_context
        if source is None or isinstance(source, str):
            return source
        value = source()
        if inspect.isawaitable(value):
            value = await value
        return value

    async def _close_response(self, response: Any) -> None:
        close = getattr(response, "close", None) or getattr(response, "aclose", None)
        if close is None:
            return
        try:
            result = close()
            if inspect.isawaitable(result):
                await result
        except Exception:
            LOGGER.debug("Closing aborted stream failed", exc_info=True)

    def _set_state(self, state: OrchestratorState, thread_id: str) -> None:
        previous = self._state
        if previous is state:
            return
        self._state = state
        LOGGER.debug("Orchestrator %s -> %s (thread %s)", previous.value, state.value, thread_id)
        bus = self._app_state.bus
        if bus is not None:
            bus.publish(OrchestratorStateChanged(thread_id=thread_id, previous=previous.value, current=state.value))
