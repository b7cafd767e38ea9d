"""Tests for providers, policies, the model catalog and engines."""

from __future__ import annotations

import pytest

from agentdesk.ai.engines import EngineManager
from agentdesk.ai.providers import (
    DEFAULT_CAPABILITIES,
    Model,
    ModelCatalog,
    ModelProvider,
    ProviderRegistry,
    ProviderSetting,
    model_settings_params,
    policy_for,
)

from tests.helpers import FakeEngine


class TestProviderRegistry:
    def test_update_provider_replaces_record(self) -> None:
        original = ModelProvider(provider="openai", api_key="a")
        registry = ProviderRegistry([original])

        updated = registry.update_provider("openai", api_key="b")

        assert registry.get_provider_by_name("openai") is updated
        assert original.api_key == "a"

    def test_update_unknown_provider_raises(self) -> None:
        with pytest.raises(KeyError):
            ProviderRegistry().update_provider("missing", api_key="x")

    def test_selection(self) -> None:
        registry = ProviderRegistry([ModelProvider(provider="openai", models=(Model(id="gpt-4o"),))])
        assert registry.selection is None

        registry.select("openai", "gpt-4o")

        assert registry.selection.id == "gpt-4o"
        assert registry.selected_model.id == "gpt-4o"
        assert registry.selected_provider.provider == "openai"


class TestModelSettings:
    def test_load_time_and_empty_settings_are_not_sent(self) -> None:
        model = Model(
            id="m",
            settings={
                "ctx_len": ProviderSetting(key="ctx_len", value=8192),
                "ngl": ProviderSetting(key="ngl", value=99),
                "temperature": ProviderSetting(key="temperature", value=0.7),
                "top_p": ProviderSetting(key="top_p", value=""),
            },
        )

        assert model_settings_params(model) == {"temperature": 0.7}
        assert model_settings_params(None) == {}

    def test_with_setting_adds_missing_provider_setting(self) -> None:
        provider = ModelProvider(provider="llamacpp").with_setting("ctx_shift", True)

        assert provider.setting("ctx_shift").value is True
        assert provider.setting("ctx_shift").controller_type == "checkbox"


class TestPolicies:
    def test_known_policies(self) -> None:
        assert policy_for("salesbox").session_auth
        assert policy_for("llamacpp").fatal_empty_turn
        assert policy_for("llamacpp").fixed_model_set
        assert "HTTP-Referer" in policy_for("openrouter").extra_headers

    def test_catalogued_provider_gets_default_policy(self) -> None:
        policy = policy_for("openai")

        assert not policy.native_transport
        assert not policy.fatal_empty_turn

    def test_unknown_provider_is_openai_compatible(self) -> None:
        policy = policy_for("my-server")

        assert policy.native_transport
        assert policy.name == "my-server"


class TestModelCatalog:
    def test_known_models_resolve_from_table(self) -> None:
        catalog = ModelCatalog()

        assert catalog.is_known("openai", "gpt-4o")
        assert catalog.resolve("openai", "o3-mini") == ("streaming", "json", "tools")

    def test_unknown_model_registers_default_profile_per_instance(self) -> None:
        catalog = ModelCatalog()

        assert catalog.resolve("openai", "brand-new") == DEFAULT_CAPABILITIES
        assert catalog.is_known("openai", "brand-new")
        assert not ModelCatalog().is_known("openai", "brand-new")

    def test_unknown_provider_maps_to_openai_compatible(self) -> None:
        assert ModelCatalog().catalog_name("my-server") == "openai-compatible"


class TestEngineManager:
    @pytest.mark.asyncio
    async def test_start_is_skipped_when_running_or_unregistered(self) -> None:
        engine = FakeEngine()
        manager = EngineManager({"llamacpp": engine})
        provider = ModelProvider(provider="llamacpp")

        assert await manager.start_model(provider, "m") is True
        assert await manager.start_model(provider, "m") is False
        assert await manager.start_model(ModelProvider(provider="openai"), "m") is False
        assert engine.starts == ["m"]

    @pytest.mark.asyncio
    async def test_stop_and_settings_are_routed_to_engine(self) -> None:
        engine = FakeEngine()
        manager = EngineManager()
        manager.register("llamacpp", engine)

        await manager.stop_model("llamacpp", "m")
        await manager.stop_all()
        await manager.update_settings("llamacpp", [ProviderSetting(key="ctx_shift", value=True)])

        assert engine.stops == ["m"]
        assert engine.stop_all_calls == 1
        assert engine.settings_updates[0][0].key == "ctx_shift"
        assert manager.chat_engine("llamacpp") is None
