"""Recovery from context-window overflow.

When the backend rejects a request because the conversation no longer fits,
the orchestrator asks an injected resolver what to do. The two recoverable
answers reconfigure the model and restart it; the request is then re-issued.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Awaitable, Callable

from ..engines import EngineManager
from ..providers import ModelProvider, ProviderRegistry
from .cancellation import CancelToken
from .errors import TurnAborted

if TYPE_CHECKING:  # pragma: no cover - imports for type checking only
    from ...state import AppState

__all__ = [
    "CTX_LEN",
    "CONTEXT_SHIFT",
    "MIN_CONTEXT_LENGTH",
    "ContextResolver",
    "ContextRecovery",
]

LOGGER = logging.getLogger(__name__)

CTX_LEN = "ctx_len"
CONTEXT_SHIFT = "context_shift"
MIN_CONTEXT_LENGTH = 16384

ContextResolver = Callable[[], Awaitable[str | None]]


def _as_int(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    if isinstance(value, float):
        return int(value)
    return None


class ContextRecovery:
    """Applies context-window decisions to the provider registry and engine."""

    def __init__(
        self,
        registry: ProviderRegistry,
        engines: EngineManager,
        app_state: AppState | None = None,
        *,
        restart_delay: float = 1.0,
        min_context_length: int = MIN_CONTEXT_LENGTH,
    ) -> None:
        self._registry = registry
        self._engines = engines
        self._app_state = app_state
        self._restart_delay = restart_delay
        self._min_context_length = min_context_length

    async def apply(
        self,
        decision: str | None,
        model_id: str,
        provider: ModelProvider,
        cancel_token: CancelToken,
    ) -> ModelProvider | None:
        """Carry out ``decision``.

        Returns:
            The provider to retry with, or ``None`` when the decision is to
            give up.
        """
        if decision == CTX_LEN:
            updated = await self.increase_context_size(model_id, provider, cancel_token)
            return updated or provider
        if decision == CONTEXT_SHIFT:
            return await self.enable_context_shift(model_id, provider, cancel_token)
        LOGGER.info("Context recovery declined (%r)", decision)
        return None

    async def increase_context_size(
        self,
        model_id: str,
        provider: ModelProvider,
        cancel_token: CancelToken,
    ) -> ModelProvider | None:
        """Double the model's ``ctx_len`` (floored at the minimum) and restart it."""
        model = provider.get_model(model_id)
        if model is None:
            LOGGER.warning("Cannot resize context of unknown model %s on %s", model_id, provider.provider)
            return None
        current = _as_int(model.setting_value("ctx_len"))
        new_size = max(current or self._min_context_length, self._min_context_length) * 2
        LOGGER.info("Increasing context of %s from %s to %d", model_id, current, new_size)
        updated_model = model.with_setting("ctx_len", new_size)
        self._registry.update_provider(provider.provider, models=provider.with_model(updated_model).models)
        updated = self._registry.get_provider_by_name(provider.provider)
        if updated is not None:
            await self.restart_model(updated, model_id, cancel_token)
        return updated

    async def enable_context_shift(
        self,
        model_id: str,
        provider: ModelProvider,
        cancel_token: CancelToken,
    ) -> ModelProvider | None:
        """Turn on the provider's ``ctx_shift`` setting and restart the model."""
        LOGGER.info("Enabling context shift on %s", provider.provider)
        settings = provider.with_setting("ctx_shift", True).settings
        await cancel_token.guard(self._engines.update_settings(provider.provider, settings))
        self._registry.update_provider(provider.provider, settings=settings)
        updated = self._registry.get_provider_by_name(provider.provider)
        if updated is not None:
            await self.restart_model(updated, model_id, cancel_token)
        return updated

    async def restart_model(self, provider: ModelProvider, model_id: str, cancel_token: CancelToken) -> None:
        """Stop every model, then start ``model_id`` again with fresh settings.

        Start failures are logged; the retried request reports them.
        """
        await cancel_token.guard(self._engines.stop_all())
        await cancel_token.sleep(self._restart_delay)
        self._set_loading(True)
        try:
            await cancel_token.guard(self._engines.start_model(provider, model_id))
        except TurnAborted:
            raise
        except Exception:
            LOGGER.exception("Restarting model %s on %s failed", model_id, provider.provider)
        finally:
            self._set_loading(False)
        await cancel_token.sleep(self._restart_delay)

    def _set_loading(self, loading: bool) -> None:
        if self._app_state is not None:
            self._app_state.set_loading_model(loading)
