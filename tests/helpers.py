"""Shared test helpers and stub classes.

Scripted completion clients, a fake local engine and a fake tool backend used
across the orchestrator, adapter and gate tests. Import from here instead of
duplicating these classes in individual test files.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from types import SimpleNamespace
from typing import Any, Callable, Iterable, Mapping, Sequence

from agentdesk.ai.client import ProviderAdapter
from agentdesk.ai.engines import EngineManager
from agentdesk.ai.orchestration import (
    Assistant,
    CompletionOrchestrator,
    ContextRecovery,
    ToolExecutionGate,
    ToolPermissions,
)
from agentdesk.ai.providers import Model, ModelCatalog, ModelProvider, ProviderRegistry
from agentdesk.ai.tools import ToolDefinition
from agentdesk.events import Event, EventBus
from agentdesk.state import AppState, MessageStore, ThreadRegistry


# =============================================================================
# Wire payload builders
# =============================================================================


def chunk(
    content: str | None = None,
    *,
    reasoning: str | None = None,
    tool_calls: Sequence[Mapping[str, Any]] | None = None,
) -> dict[str, Any]:
    """One streamed chunk in the OpenAI ``chat.completion.chunk`` shape."""
    delta: dict[str, Any] = {}
    if content is not None:
        delta["content"] = content
    if reasoning is not None:
        delta["reasoning_content"] = reasoning
    if tool_calls is not None:
        delta["tool_calls"] = list(tool_calls)
    return {"choices": [{"index": 0, "delta": delta}]}


def tool_delta(
    index: int = 0,
    *,
    call_id: str | None = None,
    name: str | None = None,
    arguments: str | None = None,
) -> dict[str, Any]:
    function: dict[str, Any] = {}
    if name is not None:
        function["name"] = name
    if arguments is not None:
        function["arguments"] = arguments
    delta: dict[str, Any] = {"index": index, "function": function}
    if call_id is not None:
        delta["id"] = call_id
        delta["type"] = "function"
    return delta


def tool_call_chunks(call_id: str, name: str, arguments: Mapping[str, Any], index: int = 0) -> list[dict[str, Any]]:
    """Chunks streaming one complete tool call, arguments split in two."""
    payload = json.dumps(dict(arguments))
    middle = len(payload) // 2
    return [
        chunk(tool_calls=[tool_delta(index, call_id=call_id, name=name, arguments="")]),
        chunk(tool_calls=[tool_delta(index, arguments=payload[:middle])]),
        chunk(tool_calls=[tool_delta(index, arguments=payload[middle:])]),
    ]


def completion(
    content: str | None = "",
    *,
    tool_calls: Sequence[Mapping[str, Any]] | None = None,
    reasoning: str | None = None,
) -> dict[str, Any]:
    """A non-streamed ``chat.completion`` object."""
    message: dict[str, Any] = {"role": "assistant", "content": content}
    if tool_calls:
        message["tool_calls"] = list(tool_calls)
    if reasoning is not None:
        message["reasoning_content"] = reasoning
    return {"id": "cmpl-1", "object": "chat.completion", "choices": [{"index": 0, "message": message}]}


async def stream(chunks: Iterable[Any]):
    for item in chunks:
        await asyncio.sleep(0)
        yield item


class CapacityError(Exception):
    """Stand-in for the backend's context-window overflow error."""

    code = "context_length_exceeded"


# =============================================================================
# Scripted client
# =============================================================================


class ScriptedCompletions:
    """``client.chat.completions`` double answering from a script.

    Each script entry is consumed by one ``create`` call:

    * a list of chunks is returned as an async stream,
    * a mapping is returned as a single completion,
    * an exception instance is raised,
    * a callable receives the request kwargs and returns any of the above.
    """

    def __init__(self, script: Iterable[Any]):
        self.script = list(script)
        self.calls: list[dict[str, Any]] = []

    async def create(self, **kwargs: Any) -> Any:
        self.calls.append(kwargs)
        if not self.script:
            raise AssertionError("Completion requested beyond the scripted responses")
        entry = self.script.pop(0)
        if callable(entry) and not isinstance(entry, Mapping):
            entry = entry(kwargs)
        if isinstance(entry, BaseException):
            raise entry
        if isinstance(entry, list):
            return stream(entry)
        return entry


@dataclass
class ScriptedClientFactory:
    """``client_factory`` for :class:`ProviderAdapter` that records its arguments."""

    completions: ScriptedCompletions
    builds: list[dict[str, Any]] = field(default_factory=list)
    closed: int = 0

    def __call__(self, provider: ModelProvider, policy: Any, api_key: str, headers: Mapping[str, str]) -> Any:
        self.builds.append({"provider": provider, "policy": policy, "api_key": api_key, "headers": dict(headers)})

        async def close() -> None:
            self.closed += 1

        return SimpleNamespace(chat=SimpleNamespace(completions=self.completions), close=close)


# =============================================================================
# Engines and tool backends
# =============================================================================


class FakeEngine:
    """Local engine double tracking starts, stops and settings pushes."""

    def __init__(self, *, fail_start: bool = False):
        self.running: set[str] = set()
        self.starts: list[str] = []
        self.stops: list[str] = []
        self.stop_all_calls = 0
        self.settings_updates: list[list[Any]] = []
        self.fail_start = fail_start

    async def start_model(self, provider: ModelProvider, model_id: str) -> None:
        self.starts.append(model_id)
        if self.fail_start:
            raise RuntimeError("engine failed to load model")
        self.running.add(model_id)

    async def stop_model(self, model_id: str) -> None:
        self.stops.append(model_id)
        self.running.discard(model_id)

    async def stop_all(self) -> None:
        self.stop_all_calls += 1
        self.running.clear()

    async def is_model_running(self, model_id: str) -> bool:
        return model_id in self.running

    async def update_settings(self, settings: Sequence[Any]) -> None:
        self.settings_updates.append(list(settings))


class FakeToolBackend:
    """Tool backend whose responses are keyed by tool name.

    A response may be a payload, an exception instance (raised) or an async
    callable receiving the arguments.
    """

    def __init__(self, responses: Mapping[str, Any] | None = None, tools: Sequence[ToolDefinition] = ()):
        self.responses = dict(responses or {})
        self.tools = list(tools)
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.list_calls = 0

    async def call_tool(self, name: str, arguments: Mapping[str, Any]) -> Any:
        self.calls.append((name, dict(arguments)))
        response = self.responses.get(name, {"content": [{"type": "text", "text": f"{name} ok"}]})
        if isinstance(response, BaseException):
            raise response
        if callable(response):
            return await response(arguments)
        return response

    async def list_tools(self) -> list[ToolDefinition]:
        self.list_calls += 1
        return list(self.tools)


class EventRecorder:
    """Collects every published event of the given types."""

    def __init__(self, bus: EventBus, *event_types: type[Event]):
        self.events: list[Event] = []
        for event_type in event_types:
            bus.subscribe(event_type, self.events.append)

    def of_type(self, event_type: type[Event]) -> list[Event]:
        return [event for event in self.events if isinstance(event, event_type)]


# =============================================================================
# Orchestrator harness
# =============================================================================


WEATHER_TOOL = ToolDefinition(
    name="get_weather",
    description="Current weather for a city.",
    input_schema={"type": "object", "properties": {"city": {"type": "string"}}},
)


def build_harness(
    script: Iterable[Any],
    *,
    provider_name: str = "openai",
    model_id: str = "m",
    capabilities: tuple[str, ...] = ("streaming", "tools"),
    tools: Sequence[ToolDefinition] = (WEATHER_TOOL,),
    backend: FakeToolBackend | None = None,
    permissions: ToolPermissions | None = None,
    assistant: Assistant | None = None,
    engine: FakeEngine | None = None,
    context_resolver: Callable[[], Any] | None = None,
    user_context: Any = None,
    messages: MessageStore | None = None,
) -> SimpleNamespace:
    """Wire a :class:`CompletionOrchestrator` around scripted collaborators."""
    bus: EventBus = EventBus()
    app_state = AppState(bus)
    app_state.update_tools(list(tools))
    threads = ThreadRegistry(bus)
    messages = messages or MessageStore(bus)
    provider = ModelProvider(
        provider=provider_name,
        base_url="http://backend.test/v1",
        api_key="sk-test",
        models=(Model(id=model_id, name=model_id, capabilities=capabilities),),
    )
    providers = ProviderRegistry([provider])
    providers.select(provider_name, model_id)

    engines = EngineManager({provider_name: engine} if engine is not None else None)
    completions = ScriptedCompletions(script)
    factory = ScriptedClientFactory(completions)
    adapter = ProviderAdapter(catalog=ModelCatalog(), engines=engines, client_factory=factory)
    backend = backend or FakeToolBackend()
    gate = ToolExecutionGate(backend, permissions or ToolPermissions(), app_state)
    orchestrator = CompletionOrchestrator(
        adapter,
        providers=providers,
        threads=threads,
        messages=messages,
        app_state=app_state,
        tool_gate=gate,
        engines=engines,
        context_recovery=ContextRecovery(providers, engines, app_state, restart_delay=0),
        context_resolver=context_resolver,
        assistant=assistant,
        user_context=user_context,
        frame_interval=0,
    )
    return SimpleNamespace(
        bus=bus,
        app_state=app_state,
        threads=threads,
        messages=messages,
        providers=providers,
        engines=engines,
        completions=completions,
        factory=factory,
        adapter=adapter,
        backend=backend,
        gate=gate,
        orchestrator=orchestrator,
    )
