"""Model providers, per-provider transport policies and the model catalog."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Iterable, Mapping

from .orchestration.types import ModelSelection

__all__ = [
    "ProviderSetting",
    "Model",
    "ModelProvider",
    "ProviderRegistry",
    "ProviderPolicy",
    "PROVIDER_POLICIES",
    "OPENAI_COMPATIBLE",
    "policy_for",
    "ModelCatalog",
    "DEFAULT_CAPABILITIES",
    "model_settings_params",
]

LOGGER = logging.getLogger(__name__)

OPENAI_COMPATIBLE = "openai-compatible"

# Settings consumed by the engine at load time, never sent with a request.
_LOAD_TIME_SETTINGS = frozenset({"ctx_len", "ngl"})


# -----------------------------------------------------------------------------
# Provider records
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ProviderSetting:
    """A single configurable value of a provider or model."""

    key: str
    title: str = ""
    controller_type: str = "input"
    value: Any = None
    description: str = ""

    def with_value(self, value: Any) -> ProviderSetting:
        return replace(self, value=value)


@dataclass(slots=True, frozen=True)
class Model:
    """A model offered by a provider."""

    id: str
    name: str = ""
    capabilities: tuple[str, ...] = ()
    settings: Mapping[str, ProviderSetting] = field(default_factory=dict)

    def supports(self, capability: str) -> bool:
        return capability in self.capabilities

    def setting_value(self, key: str, default: Any = None) -> Any:
        setting = self.settings.get(key)
        return default if setting is None or setting.value is None else setting.value

    def with_setting(self, key: str, value: Any) -> Model:
        settings = dict(self.settings)
        current = settings.get(key) or ProviderSetting(key=key, title=key)
        settings[key] = current.with_value(value)
        return replace(self, settings=settings)


@dataclass(slots=True, frozen=True)
class ModelProvider:
    """A configured completion backend."""

    provider: str
    base_url: str = ""
    api_key: str | None = None
    models: tuple[Model, ...] = ()
    settings: tuple[ProviderSetting, ...] = ()
    active: bool = True

    def get_model(self, model_id: str) -> Model | None:
        for model in self.models:
            if model.id == model_id:
                return model
        return None

    def setting(self, key: str) -> ProviderSetting | None:
        for setting in self.settings:
            if setting.key == key:
                return setting
        return None

    def with_model(self, model: Model) -> ModelProvider:
        """Return a copy with ``model`` replacing the model of the same id."""
        models = tuple(model if existing.id == model.id else existing for existing in self.models)
        return replace(self, models=models)

    def with_setting(self, key: str, value: Any) -> ModelProvider:
        """Return a copy with ``key`` set to ``value`` (added when missing)."""
        found = False
        settings: list[ProviderSetting] = []
        for setting in self.settings:
            if setting.key == key:
                settings.append(setting.with_value(value))
                found = True
            else:
                settings.append(setting)
        if not found:
            settings.append(ProviderSetting(key=key, title=key, controller_type="checkbox", value=value))
        return replace(self, settings=tuple(settings))


class ProviderRegistry:
    """Process-wide provider list and the current model selection.

    Providers are immutable records; :meth:`update_provider` swaps the stored
    record for a modified copy so callers holding the old one are unaffected.
    """

    def __init__(self, providers: Iterable[ModelProvider] = ()) -> None:
        self._providers: dict[str, ModelProvider] = {}
        for provider in providers:
            self._providers[provider.provider] = provider
        self._selected_provider: str | None = None
        self._selected_model: str | None = None

    def add_provider(self, provider: ModelProvider) -> None:
        self._providers[provider.provider] = provider

    def providers(self) -> list[ModelProvider]:
        return list(self._providers.values())

    def get_provider_by_name(self, name: str | None) -> ModelProvider | None:
        if not name:
            return None
        return self._providers.get(name)

    def update_provider(self, name: str, **changes: Any) -> ModelProvider:
        """Replace fields of provider ``name`` and return the stored copy.

        Raises:
            KeyError: If no provider named ``name`` is registered.
        """
        current = self._providers.get(name)
        if current is None:
            raise KeyError(f"Unknown provider: {name}")
        updated = replace(current, **changes)
        self._providers[name] = updated
        return updated

    def select(self, provider: str, model_id: str | None) -> None:
        self._selected_provider = provider
        self._selected_model = model_id

    @property
    def selected_provider_name(self) -> str | None:
        return self._selected_provider

    @property
    def selected_provider(self) -> ModelProvider | None:
        return self.get_provider_by_name(self._selected_provider)

    @property
    def selected_model_id(self) -> str | None:
        return self._selected_model

    @property
    def selected_model(self) -> Model | None:
        provider = self.selected_provider
        if provider is None or not self._selected_model:
            return None
        return provider.get_model(self._selected_model)

    @property
    def selection(self) -> ModelSelection | None:
        if not self._selected_provider or not self._selected_model:
            return None
        return ModelSelection(id=self._selected_model, provider=self._selected_provider)


def model_settings_params(model: Model | None) -> dict[str, Any]:
    """Request parameters derived from model settings.

    Load-time settings (``ctx_len``, ``ngl``) and empty values are skipped.
    """
    if model is None:
        return {}
    params: dict[str, Any] = {}
    for key, setting in model.settings.items():
        if key in _LOAD_TIME_SETTINGS:
            continue
        if setting.value is None or setting.value == "":
            continue
        params[key] = setting.value
    return params


# -----------------------------------------------------------------------------
# Transport policies
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ProviderPolicy:
    """Transport and protocol quirks of one provider.

    Attributes:
        name: Provider name the policy applies to.
        native_transport: Send requests through a dedicated HTTP transport.
        session_auth: Authenticate with the session bearer token and ask for
            an event stream. The default transport must be kept.
        extra_headers: Headers added to every request.
        fixed_model_set: Models are pre-registered; skip catalog extension.
        fatal_empty_turn: A turn with neither text nor tool calls is an error.
    """

    name: str
    native_transport: bool = False
    session_auth: bool = False
    extra_headers: Mapping[str, str] = field(default_factory=dict)
    fixed_model_set: bool = False
    fatal_empty_turn: bool = False


PROVIDER_POLICIES: dict[str, ProviderPolicy] = {
    "salesbox": ProviderPolicy(name="salesbox", session_auth=True, fixed_model_set=True),
    "openrouter": ProviderPolicy(
        name="openrouter",
        extra_headers={"HTTP-Referer": "https://salesbox.ai", "X-Title": "Salesbox.AI Agent"},
    ),
    "llamacpp": ProviderPolicy(name="llamacpp", fixed_model_set=True, fatal_empty_turn=True),
    OPENAI_COMPATIBLE: ProviderPolicy(name=OPENAI_COMPATIBLE, native_transport=True),
}


def policy_for(provider: str, catalog: ModelCatalog | None = None) -> ProviderPolicy:
    """Return the policy for ``provider``.

    Providers without an entry that the catalog does not know are treated as
    generic OpenAI-compatible endpoints.
    """
    policy = PROVIDER_POLICIES.get(provider)
    if policy is not None:
        return policy
    catalog_name = (catalog or ModelCatalog()).catalog_name(provider)
    if catalog_name == OPENAI_COMPATIBLE:
        return replace(PROVIDER_POLICIES[OPENAI_COMPATIBLE], name=provider)
    return ProviderPolicy(name=provider)


# -----------------------------------------------------------------------------
# Model catalog
# -----------------------------------------------------------------------------


DEFAULT_CAPABILITIES: tuple[str, ...] = ("streaming", "json", "tools", "images")

_KNOWN_MODELS: dict[str, dict[str, tuple[str, ...]]] = {
    "openai": {
        "gpt-4o": ("streaming", "json", "tools", "images"),
        "gpt-4o-mini": ("streaming", "json", "tools", "images"),
        "gpt-4.1": ("streaming", "json", "tools", "images"),
        "o3-mini": ("streaming", "json", "tools"),
    },
    "anthropic": {
        "claude-3-5-sonnet-latest": ("streaming", "json", "tools", "images"),
        "claude-3-5-haiku-latest": ("streaming", "json", "tools"),
    },
    "gemini": {
        "gemini-1.5-pro": ("streaming", "json", "tools", "images"),
        "gemini-1.5-flash": ("streaming", "json", "tools", "images"),
    },
    "mistral": {
        "mistral-large-latest": ("streaming", "json", "tools"),
    },
    "groq": {
        "llama-3.3-70b-versatile": ("streaming", "json", "tools"),
    },
    "openrouter": {},
    OPENAI_COMPATIBLE: {},
}


class ModelCatalog:
    """Capabilities of known provider models.

    Lookups of unknown model ids register :data:`DEFAULT_CAPABILITIES` for that
    id in this instance only; the static table is never modified.
    """

    def __init__(self, known: Mapping[str, Mapping[str, tuple[str, ...]]] | None = None) -> None:
        source = _KNOWN_MODELS if known is None else known
        self._known = {name: dict(models) for name, models in source.items()}
        self._extended: dict[tuple[str, str], tuple[str, ...]] = {}

    def catalog_name(self, provider: str) -> str:
        """Catalog key for ``provider``; unknown names map to ``openai-compatible``."""
        return provider if provider in self._known else OPENAI_COMPATIBLE

    def is_known(self, provider: str, model_id: str) -> bool:
        name = self.catalog_name(provider)
        return model_id in self._known.get(name, {}) or (name, model_id) in self._extended

    def resolve(self, provider: str, model_id: str) -> tuple[str, ...]:
        """Return capabilities, registering the default profile on a miss."""
        name = self.catalog_name(provider)
        known = self._known.get(name, {})
        if model_id in known:
            return known[model_id]
        key = (name, model_id)
        if key not in self._extended:
            LOGGER.info("Registering %s/%s with the default capability profile", name, model_id)
            self._extended[key] = DEFAULT_CAPABILITIES
        return self._extended[key]
