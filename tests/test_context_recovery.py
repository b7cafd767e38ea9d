"""Tests for context-window recovery."""

from __future__ import annotations

import pytest

from agentdesk.ai.engines import EngineManager
from agentdesk.ai.orchestration import CancelToken, TurnAborted, is_capacity_error
from agentdesk.ai.orchestration.context_recovery import ContextRecovery
from agentdesk.ai.providers import Model, ModelProvider, ProviderRegistry
from agentdesk.events import ModelLoadingChanged

from tests.helpers import CapacityError, EventRecorder, FakeEngine


def _setup(ctx_len=None, *, fail_start: bool = False, app_state=None):
    model = Model(id="m", name="m")
    if ctx_len is not None:
        model = model.with_setting("ctx_len", ctx_len)
    provider = ModelProvider(provider="llamacpp", models=(model,))
    registry = ProviderRegistry([provider])
    engine = FakeEngine(fail_start=fail_start)
    recovery = ContextRecovery(registry, EngineManager({"llamacpp": engine}), app_state, restart_delay=0)
    return recovery, registry, provider, engine


class TestCapacityDetection:
    def test_message_marker_is_matched_case_insensitively(self) -> None:
        assert is_capacity_error(RuntimeError("The request exceeds the available context size, try again"))

    def test_error_code_is_matched(self) -> None:
        assert is_capacity_error(CapacityError("anything"))

    def test_nested_body_code_is_matched(self) -> None:
        exc = RuntimeError("bad request")
        exc.body = {"error": {"code": "context_length_exceeded"}}
        assert is_capacity_error(exc)

    def test_other_errors_are_not_capacity(self) -> None:
        assert not is_capacity_error(RuntimeError("rate limited"))


class TestContextRecovery:
    @pytest.mark.asyncio
    async def test_ctx_len_is_doubled_from_current_value(self) -> None:
        recovery, registry, provider, engine = _setup(20000)

        updated = await recovery.apply("ctx_len", "m", provider, CancelToken())

        assert updated.get_model("m").setting_value("ctx_len") == 40000
        assert registry.get_provider_by_name("llamacpp") is updated
        assert engine.stop_all_calls == 1
        assert engine.starts == ["m"]

    @pytest.mark.asyncio
    async def test_ctx_len_is_floored_at_minimum(self) -> None:
        recovery, _registry, provider, _engine = _setup("4096")

        updated = await recovery.apply("ctx_len", "m", provider, CancelToken())

        assert updated.get_model("m").setting_value("ctx_len") == 32768

    @pytest.mark.asyncio
    async def test_original_provider_record_is_not_mutated(self) -> None:
        recovery, _registry, provider, _engine = _setup(20000)

        await recovery.apply("ctx_len", "m", provider, CancelToken())

        assert provider.get_model("m").setting_value("ctx_len") == 20000

    @pytest.mark.asyncio
    async def test_context_shift_enables_setting_and_restarts(self) -> None:
        recovery, registry, provider, engine = _setup()

        updated = await recovery.apply("context_shift", "m", provider, CancelToken())

        assert updated.setting("ctx_shift").value is True
        assert registry.get_provider_by_name("llamacpp").setting("ctx_shift").value is True
        assert engine.settings_updates[0][0].key == "ctx_shift"
        assert engine.starts == ["m"]

    @pytest.mark.asyncio
    async def test_other_decisions_give_up(self) -> None:
        recovery, _registry, provider, engine = _setup()

        assert await recovery.apply(None, "m", provider, CancelToken()) is None
        assert await recovery.apply("cancel", "m", provider, CancelToken()) is None
        assert engine.stop_all_calls == 0

    @pytest.mark.asyncio
    async def test_restart_failure_is_logged_and_loading_cleared(self, app_state, bus) -> None:
        recorder = EventRecorder(bus, ModelLoadingChanged)
        recovery, _registry, provider, engine = _setup(fail_start=True, app_state=app_state)

        await recovery.restart_model(provider, "m", CancelToken())

        assert engine.starts == ["m"]
        assert [event.loading for event in recorder.events] == [True, False]
        assert app_state.loading_model is False

    @pytest.mark.asyncio
    async def test_cancelled_restart_aborts(self) -> None:
        recovery, _registry, provider, engine = _setup()
        token = CancelToken()
        token.cancel()

        with pytest.raises(TurnAborted):
            await recovery.restart_model(provider, "m", token)
        assert engine.stop_all_calls == 0
