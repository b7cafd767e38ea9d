"""Application bootstrap helpers for the agentdesk core."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence, TextIO

from .ai.client import ProviderAdapter
from .ai.engines import EngineManager
from .ai.orchestration import (
    ApprovalCallback,
    ApprovalMode,
    CompletionOrchestrator,
    ContextRecovery,
    ContextResolver,
    DEFAULT_ASSISTANT,
    ToolExecutionGate,
    ToolPermissions,
    TurnStatus,
)
from .ai.providers import Model, ModelCatalog, ModelProvider, ProviderRegistry
from .ai.tools import ToolBackend, ToolCatalog
from .events import EventBus
from .services.settings import Settings, SettingsStore, redact_secret
from .state import AppState, JsonlMessagePersistence, MessageStore, ThreadRegistry
from .utils import logging as logging_utils

_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class AgentDesk:
    """Wired-up core returned by :func:`build_agent_desk`."""

    settings: Settings
    bus: EventBus
    app_state: AppState
    threads: ThreadRegistry
    messages: MessageStore
    providers: ProviderRegistry
    orchestrator: CompletionOrchestrator
    tool_catalog: ToolCatalog | None = None

    async def aclose(self) -> None:
        await self.orchestrator.aclose()
        await self.messages.flush()


def configure_logging(debug: bool = False, *, force: bool = False) -> None:
    """Configure structured logging for the application."""

    level = logging.DEBUG if debug else logging.INFO
    logging_utils.setup_logging(level, force=force)
    _LOGGER.debug("Logging configured (level=%s)", logging.getLevelName(level))


def load_settings(
    path: Optional[Path] = None,
    *,
    store: SettingsStore | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Settings:
    """Load persisted settings or fall back to defaults."""

    active_store = store or SettingsStore(path)
    try:
        return active_store.load(overrides=overrides)
    except (OSError, ValueError) as exc:
        _LOGGER.warning("Failed to load settings from %s: %s", active_store.path, exc)
        return Settings()


def build_agent_desk(
    settings: Settings,
    *,
    tool_backend: ToolBackend | None = None,
    engines: EngineManager | None = None,
    approval_callback: ApprovalCallback | None = None,
    context_resolver: ContextResolver | None = None,
    session_token: Any = None,
    user_context: Any = None,
    bus: EventBus | None = None,
    persist_messages: bool = True,
    adapter: ProviderAdapter | None = None,
) -> AgentDesk:
    """Construct every collaborator of the orchestrator from ``settings``."""

    bus = bus or EventBus()
    engines = engines or EngineManager()
    catalog = ModelCatalog()
    app_state = AppState(bus)
    threads = ThreadRegistry(bus)
    persistence = JsonlMessagePersistence(settings.data_dir) if persist_messages else None
    messages = MessageStore(bus, persistence)

    provider = ModelProvider(
        provider=settings.provider,
        base_url=settings.base_url,
        api_key=settings.api_key or None,
        models=(
            Model(
                id=settings.model,
                name=settings.model,
                capabilities=catalog.resolve(settings.provider, settings.model),
            ),
        ),
    )
    providers = ProviderRegistry([provider])
    providers.select(provider.provider, settings.model)

    permissions = ToolPermissions(
        allow_all=settings.allow_all_tool_permissions,
        mode=ApprovalMode(settings.approval_mode),
        approval_callback=approval_callback,
    )
    tool_gate = ToolExecutionGate(tool_backend, permissions, app_state) if tool_backend is not None else None
    tool_catalog = ToolCatalog(tool_backend, app_state) if tool_backend is not None else None

    adapter = adapter or ProviderAdapter(
        catalog=catalog,
        engines=engines,
        session_token=session_token,
        request_timeout=settings.request_timeout,
        default_headers=settings.default_headers,
    )
    orchestrator = CompletionOrchestrator(
        adapter,
        providers=providers,
        threads=threads,
        messages=messages,
        app_state=app_state,
        tool_gate=tool_gate,
        engines=engines,
        context_recovery=ContextRecovery(
            providers,
            engines,
            app_state,
            restart_delay=settings.model_restart_delay,
        ),
        context_resolver=context_resolver,
        assistant=replace(DEFAULT_ASSISTANT, tool_steps=max(1, settings.tool_steps)),
        user_context=user_context,
        frame_interval=settings.frame_interval,
    )
    return AgentDesk(
        settings=settings,
        bus=bus,
        app_state=app_state,
        threads=threads,
        messages=messages,
        providers=providers,
        orchestrator=orchestrator,
        tool_catalog=tool_catalog,
    )


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point invoked by the ``agentdesk`` console script."""

    args = _parse_cli_args(argv)
    debug = _env_flag("AGENTDESK_DEBUG", default=False)
    configure_logging(debug)

    settings_path = args.settings_path or os.environ.get("AGENTDESK_SETTINGS_PATH")
    resolved_path = Path(settings_path).expanduser() if settings_path else None
    store = SettingsStore(resolved_path)
    try:
        overrides = _coerce_cli_overrides(args.overrides or [])
    except ValueError as exc:
        print(f"Invalid --set override: {exc}", file=sys.stderr)
        return 2

    settings = load_settings(resolved_path, store=store, overrides=overrides or None)
    if args.dump_settings:
        _dump_settings(settings, store, overrides=overrides)
        return 0

    if settings.debug_logging and not debug:
        configure_logging(True, force=True)

    if not args.prompt:
        print("Nothing to do: pass a prompt or --dump-settings.", file=sys.stderr)
        return 2
    return asyncio.run(_run_prompt(settings, " ".join(args.prompt)))


async def _run_prompt(settings: Settings, prompt: str) -> int:
    desk = build_agent_desk(settings)
    try:
        outcome = await desk.orchestrator.send_message(prompt)
    finally:
        await desk.aclose()
    if outcome.status is TurnStatus.ERRORED:
        print(f"Error: {outcome.error}", file=sys.stderr)
        return 1
    final = outcome.final_message
    if final is not None:
        print(final.text)
    return 0


def _env_flag(name: str, *, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _parse_cli_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="agentdesk",
        description="Send a prompt through the agentdesk completion core or inspect its configuration.",
    )
    parser.add_argument("prompt", nargs="*", help="Prompt to send; the final answer is printed.")
    parser.add_argument(
        "--dump-settings",
        action="store_true",
        help="Print the effective settings payload (with secrets redacted) and exit.",
    )
    parser.add_argument(
        "--settings-path",
        metavar="PATH",
        help="Override the default ~/.agentdesk/settings.json path.",
    )
    parser.add_argument(
        "--set",
        dest="overrides",
        metavar="KEY=VALUE",
        action="append",
        default=[],
        help="Override persisted settings (repeatable).",
    )
    return parser.parse_args(argv)


def _coerce_cli_overrides(items: Sequence[str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    defaults = Settings()
    for entry in items:
        if "=" not in entry:
            raise ValueError(f"Override '{entry}' must use KEY=VALUE syntax.")
        key, raw_value = (part.strip() for part in entry.split("=", 1))
        if not key:
            raise ValueError("Override is missing a field name.")
        if not hasattr(defaults, key):
            raise ValueError(f"Unknown setting '{key}'.")
        overrides[key] = _coerce_value(getattr(defaults, key), raw_value)
    return overrides


def _coerce_value(default: Any, raw_value: str) -> Any:
    if isinstance(default, bool):
        lowered = raw_value.lower()
        if lowered in _TRUE_VALUES:
            return True
        if lowered in {"0", "false", "no", "off", "disabled"}:
            return False
        raise ValueError(f"Cannot coerce '{raw_value}' to a boolean.")
    if isinstance(default, int):
        return int(raw_value, 10)
    if isinstance(default, float):
        return float(raw_value)
    if isinstance(default, dict):
        try:
            payload = json.loads(raw_value or "{}")
        except json.JSONDecodeError as exc:
            raise ValueError("Dict overrides must be valid JSON objects") from exc
        if not isinstance(payload, dict):
            raise ValueError("Dict overrides must be valid JSON objects")
        return payload
    return raw_value


def _dump_settings(
    settings: Settings,
    store: SettingsStore,
    *,
    overrides: Mapping[str, Any],
    stream: TextIO | None = None,
) -> None:
    destination = stream or sys.stdout
    payload = asdict(settings)
    payload["api_key"] = redact_secret(settings.api_key)
    output = {
        "settings": payload,
        "meta": {
            "path": str(store.path),
            "secret_backend": store.vault.strategy,
            "cli_overrides": sorted(overrides),
            "environment_variables": sorted(name for name in os.environ if name.startswith("AGENTDESK_")),
        },
    }
    json.dump(output, destination, indent=2)
    destination.write("\n")
