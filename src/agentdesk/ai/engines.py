"""Local model execution engines (llama.cpp and friends)."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, AsyncIterator, Mapping, Protocol, Sequence, runtime_checkable

if TYPE_CHECKING:  # pragma: no cover - imports for type checking only
    from .orchestration.cancellation import CancelToken
    from .providers import ModelProvider, ProviderSetting

__all__ = ["ModelEngine", "ChatEngine", "EngineManager"]

LOGGER = logging.getLogger(__name__)


class ModelEngine(Protocol):
    """Loads and unloads models for one provider."""

    async def start_model(self, provider: ModelProvider, model_id: str) -> None:
        ...

    async def stop_model(self, model_id: str) -> None:
        ...

    async def stop_all(self) -> None:
        ...

    async def is_model_running(self, model_id: str) -> bool:
        ...

    async def update_settings(self, settings: Sequence[ProviderSetting]) -> None:
        ...


@runtime_checkable
class ChatEngine(Protocol):
    """Engine that also serves completions itself."""

    async def chat(self, request: Mapping[str, Any], cancel_token: CancelToken) -> AsyncIterator[Any]:
        ...


class EngineManager:
    """Maps provider names to their local engines."""

    def __init__(self, engines: Mapping[str, ModelEngine] | None = None) -> None:
        self._engines: dict[str, ModelEngine] = dict(engines or {})

    def register(self, provider: str, engine: ModelEngine) -> None:
        self._engines[provider] = engine

    def get(self, provider: str | None) -> ModelEngine | None:
        if not provider:
            return None
        return self._engines.get(provider)

    def chat_engine(self, provider: str) -> ChatEngine | None:
        engine = self.get(provider)
        return engine if isinstance(engine, ChatEngine) else None

    async def start_model(self, provider: ModelProvider, model_id: str) -> bool:
        """Start ``model_id`` unless it is already running.

        Returns:
            ``True`` when a start was issued.
        """
        engine = self.get(provider.provider)
        if engine is None:
            return False
        if await engine.is_model_running(model_id):
            return False
        LOGGER.info("Starting model %s on %s", model_id, provider.provider)
        await engine.start_model(provider, model_id)
        return True

    async def stop_model(self, provider: str, model_id: str) -> None:
        engine = self.get(provider)
        if engine is not None:
            LOGGER.info("Stopping model %s on %s", model_id, provider)
            await engine.stop_model(model_id)

    async def stop_all(self) -> None:
        for name, engine in self._engines.items():
            LOGGER.debug("Stopping all models on %s", name)
            await engine.stop_all()

    async def update_settings(self, provider: str, settings: Sequence[ProviderSetting]) -> None:
        engine = self.get(provider)
        if engine is not None:
            await engine.update_settings(settings)
