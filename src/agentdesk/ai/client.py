"""Provider adapter built around OpenAI-compatible endpoints."""

from __future__ import annotations

import copy
import inspect
import logging
from typing import Any, Callable, Iterable, Mapping, Sequence

import httpx
from openai import AsyncOpenAI

from .engines import EngineManager
from .orchestration.cancellation import CancelToken
from .orchestration.types import Thread
from .providers import ModelCatalog, ModelProvider, ProviderPolicy, policy_for
from .tools.backend import ToolDefinition

__all__ = [
    "ProviderAdapter",
    "ClientFactory",
    "normalize_tools",
    "build_completion_request",
    "is_completion_response",
]

LOGGER = logging.getLogger(__name__)

# Keyword arguments ``chat.completions.create`` accepts directly; everything
# else from model settings travels in ``extra_body``.
_OPENAI_REQUEST_PARAMS = frozenset(
    {
        "frequency_penalty",
        "logit_bias",
        "logprobs",
        "max_completion_tokens",
        "max_tokens",
        "metadata",
        "n",
        "parallel_tool_calls",
        "presence_penalty",
        "reasoning_effort",
        "response_format",
        "seed",
        "stop",
        "stream_options",
        "temperature",
        "top_logprobs",
        "top_p",
        "user",
    }
)

ClientFactory = Callable[[ModelProvider, ProviderPolicy, str, Mapping[str, str]], Any]
TokenSource = Callable[[], Any]


def normalize_tools(tools: Iterable[ToolDefinition]) -> list[dict[str, Any]] | None:
    """OpenAI ``tools`` payload, or ``None`` for an empty list."""
    normalized = [tool.to_chat_param() for tool in tools]
    return normalized or None


def build_completion_request(
    model_id: str,
    messages: Sequence[Mapping[str, Any]],
    tools: Sequence[ToolDefinition] = (),
    *,
    stream: bool = True,
    params: Mapping[str, Any] | None = None,
) -> dict[str, Any]:
    """Flat request body; the caller's ``messages`` are deep-copied."""
    body: dict[str, Any] = {
        "model": model_id,
        "messages": copy.deepcopy(list(messages)),
        "stream": stream,
    }
    normalized = normalize_tools(tools)
    if normalized:
        body["tools"] = normalized
        body["tool_choice"] = "auto"
    for key, value in (params or {}).items():
        if key in ("stream", "model", "messages", "tools", "tool_choice"):
            continue
        body[key] = value
    return body


def is_completion_response(response: Any) -> bool:
    """``True`` for a single completion object, ``False`` for a chunk stream."""
    if isinstance(response, Mapping):
        return "choices" in response
    if hasattr(response, "__aiter__"):
        return False
    return getattr(response, "choices", None) is not None


async def _resolve_token(source: TokenSource | None) -> str | None:
    if source is None:
        return None
    value = source()
    if inspect.isawaitable(value):
        value = await value
    return value or None


async def _close_client(client: Any) -> None:
    close = getattr(client, "close", None)
    if close is None:
        return
    result = close()
    if inspect.isawaitable(result):
        await result


class ProviderAdapter:
    """Turns an abstract completion request into a concrete backend call.

    Local engines that serve completions themselves are called directly; every
    other provider goes through a cached :class:`openai.AsyncOpenAI` client.
    The SDK's own retry loop is disabled: a failed request is reported, never
    silently repeated.
    """

    def __init__(
        self,
        *,
        catalog: ModelCatalog | None = None,
        engines: EngineManager | None = None,
        session_token: TokenSource | None = None,
        app_token: TokenSource | None = None,
        request_timeout: float | None = 90.0,
        default_headers: Mapping[str, str] | None = None,
        client_factory: ClientFactory | None = None,
    ) -> None:
        """Initialize the adapter.

        Args:
            catalog: Model capability catalog, extended on unknown model ids.
            engines: Local engines keyed by provider name.
            session_token: Bearer credential source for session-authenticated
                providers. May return an awaitable.
            app_token: Fallback API key source when a provider has no key.
            request_timeout: Per-request timeout in seconds.
            default_headers: Headers sent to every provider.
            client_factory: Builds the client object; defaults to ``AsyncOpenAI``.
        """
        self._catalog = catalog or ModelCatalog()
        self._engines = engines or EngineManager()
        self._session_token = session_token
        self._app_token = app_token
        self._request_timeout = request_timeout
        self._default_headers = dict(default_headers or {})
        self._client_factory = client_factory or self._build_client
        # (provider, base_url) -> (credential fingerprint, client)
        self._clients: dict[tuple[str, str], tuple[tuple[Any, ...], Any]] = {}

    @property
    def catalog(self) -> ModelCatalog:
        return self._catalog

    async def send_completion(
        self,
        thread: Thread,
        provider: ModelProvider | None,
        messages: Sequence[Mapping[str, Any]],
        cancel_token: CancelToken,
        tools: Sequence[ToolDefinition] = (),
        stream: bool = True,
        params: Mapping[str, Any] | None = None,
    ) -> Any:
        """Issue one completion request.

        Returns:
            A completion object, an async iterable of chunks, or ``None`` when
            the thread has no model or no provider was given.

        Raises:
            TurnAborted: If ``cancel_token`` fires before the backend answers.
        """
        if thread.model is None or not thread.model.id or provider is None:
            LOGGER.debug("Nothing to send: thread model or provider missing")
            return None

        model_id = thread.model.id
        policy = policy_for(provider.provider, self._catalog)
        if not policy.fixed_model_set and not self._catalog.is_known(provider.provider, model_id):
            self._catalog.resolve(provider.provider, model_id)

        request = build_completion_request(model_id, messages, tools, stream=stream, params=params)
        LOGGER.debug(
            "Sending completion to %s/%s with %d message(s), %d tool(s), stream=%s",
            provider.provider,
            model_id,
            len(request["messages"]),
            len(tools),
            stream,
        )

        engine = self._engines.chat_engine(provider.provider)
        if engine is not None:
            request["stream"] = True
            return await cancel_token.guard(engine.chat(request, cancel_token))

        api_key, headers = await self._credentials(provider, policy)
        client = await self._client_for(provider, policy, api_key, headers)
        return await cancel_token.guard(client.chat.completions.create(**self._split_extra_body(request)))

    async def aclose(self) -> None:
        """Close every cached client."""
        entries, self._clients = list(self._clients.values()), {}
        for _, client in entries:
            await _close_client(client)

    async def _credentials(self, provider: ModelProvider, policy: ProviderPolicy) -> tuple[str, dict[str, str]]:
        headers = dict(self._default_headers)
        headers.update(policy.extra_headers)
        if policy.session_auth:
            token = await _resolve_token(self._session_token) or ""
            headers.update(
                {
                    "Authorization": f"Bearer {token}",
                    "Accept": "text/event-stream",
                    "Content-Type": "application/json",
                }
            )
            return token, headers
        api_key = provider.api_key or await _resolve_token(self._app_token) or ""
        return api_key, headers

    async def _client_for(
        self,
        provider: ModelProvider,
        policy: ProviderPolicy,
        api_key: str,
        headers: Mapping[str, str],
    ) -> Any:
        """One client per endpoint; a changed credential replaces (and closes) it."""
        key = (provider.provider, provider.base_url)
        fingerprint = (api_key, tuple(sorted(headers.items())))
        cached = self._clients.get(key)
        if cached is not None:
            cached_fingerprint, client = cached
            if cached_fingerprint == fingerprint:
                return client
            LOGGER.debug("Credentials for %s changed; replacing its client", provider.provider)
            del self._clients[key]
            await _close_client(client)
        client = self._client_factory(provider, policy, api_key, headers)
        self._clients[key] = (fingerprint, client)
        return client

    def _build_client(
        self,
        provider: ModelProvider,
        policy: ProviderPolicy,
        api_key: str,
        headers: Mapping[str, str],
    ) -> AsyncOpenAI:
        http_client = None
        if policy.native_transport:
            # Owned by the AsyncOpenAI client, which closes it on close().
            http_client = httpx.AsyncClient(
                transport=httpx.AsyncHTTPTransport(retries=0),
                timeout=self._request_timeout,
            )
        return AsyncOpenAI(
            api_key=api_key,
            base_url=provider.base_url or None,
            timeout=self._request_timeout,
            max_retries=0,
            default_headers=dict(headers) or None,
            http_client=http_client,
        )

    @staticmethod
    def _split_extra_body(request: Mapping[str, Any]) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        extra_body: dict[str, Any] = {}
        for key, value in request.items():
            if key in ("model", "messages", "stream", "tools", "tool_choice") or key in _OPENAI_REQUEST_PARAMS:
                payload[key] = value
            else:
                extra_body[key] = value
        if extra_body:
            payload["extra_body"] = extra_body
        return payload
