"""Settings for the agentdesk core and their encrypted JSON file.

The API key never touches disk in clear text: it is stored as
``api_key_ciphertext`` in ``<backend>:<payload>`` form. Files written by older
versions with a plaintext ``api_key`` are rewritten on first load.
"""

from __future__ import annotations

import json
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Callable, Dict, Mapping

from cryptography.fernet import Fernet, InvalidToken

__all__ = [
    "Settings",
    "SettingsStore",
    "SecretVault",
    "SecretProvider",
    "FernetSecretProvider",
    "APPROVAL_MODES",
    "redact_secret",
]

LOGGER = logging.getLogger(__name__)

_SETTINGS_DIR = Path.home() / ".agentdesk"
_DEFAULT_SETTINGS_PATH = _SETTINGS_DIR / "settings.json"
_SETTINGS_VERSION = 1
_CIPHERTEXT_FIELD = "api_key_ciphertext"
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
APPROVAL_MODES: tuple[str, ...] = ("permissive", "strict")


def _parse_bool(raw: str) -> bool:
    return raw.strip().lower() in _TRUE_VALUES


# Environment variable -> (settings field, converter). Converters raising
# ``ValueError`` make the variable be ignored with a warning.
_ENV_OVERRIDES: Mapping[str, tuple[str, Callable[[str], Any]]] = {
    "AGENTDESK_API_KEY": ("api_key", str),
    "AGENTDESK_BASE_URL": ("base_url", str),
    "AGENTDESK_MODEL": ("model", str),
    "AGENTDESK_PROVIDER": ("provider", str),
    "AGENTDESK_DEBUG_LOGGING": ("debug_logging", _parse_bool),
    "AGENTDESK_REQUEST_TIMEOUT": ("request_timeout", float),
    "AGENTDESK_TOOL_STEPS": ("tool_steps", lambda raw: int(raw, 10)),
}


@dataclass(slots=True)
class Settings:
    """Everything needed to wire a provider, the tool loop and persistence.

    Attributes:
        base_url: OpenAI-compatible endpoint of the default provider.
        api_key: Provider API key (encrypted at rest).
        provider: Provider name; selects the transport policy.
        model: Model id sent with every request.
        request_timeout: Per-request timeout in seconds.
        tool_steps: Maximum request round-trips that may offer tools.
        frame_interval: Seconds between streaming preview flushes.
        model_restart_delay: Pause around local model restarts, in seconds.
        approval_mode: ``permissive`` or ``strict`` when no approval prompt
            is wired.
        allow_all_tool_permissions: Skip approval entirely.
        default_headers: Headers sent to every provider.
        metadata: Free-form values for embedding applications.
        debug_logging: Log at DEBUG level.
        data_dir: Directory holding one JSONL file per thread.
    """

    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    provider: str = "openai"
    model: str = "gpt-4o-mini"
    request_timeout: float = 90.0
    tool_steps: int = 20
    frame_interval: float = 1 / 60
    model_restart_delay: float = 1.0
    approval_mode: str = "permissive"
    allow_all_tool_permissions: bool = False
    default_headers: dict[str, str] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    debug_logging: bool = False
    data_dir: str = str(_SETTINGS_DIR / "threads")


_FIELD_NAMES = frozenset(f.name for f in fields(Settings))


# -----------------------------------------------------------------------------
# Secrets
# -----------------------------------------------------------------------------


class SecretProvider(ABC):
    """Encrypts and decrypts single strings."""

    name: str = "unknown"

    @abstractmethod
    def encrypt(self, secret: str) -> str:
        ...

    @abstractmethod
    def decrypt(self, token: str) -> str:
        ...


class FernetSecretProvider(SecretProvider):
    """Fernet encryption with a key file created on first use (mode 0600)."""

    name = "fernet"

    def __init__(self, key_path: Path | None = None) -> None:
        self._key_path = key_path or (_SETTINGS_DIR / "settings.key")
        self._fernet: Fernet | None = None

    @property
    def fernet(self) -> Fernet:
        if self._fernet is None:
            self._fernet = Fernet(self._read_or_create_key())
        return self._fernet

    def encrypt(self, secret: str) -> str:
        return self.fernet.encrypt(secret.encode("utf-8")).decode("ascii")

    def decrypt(self, token: str) -> str:
        return self.fernet.decrypt(token.encode("ascii")).decode("utf-8")

    def _read_or_create_key(self) -> bytes:
        if self._key_path.exists():
            return self._key_path.read_bytes().strip()
        self._key_path.parent.mkdir(parents=True, exist_ok=True)
        key = Fernet.generate_key()
        staging = self._key_path.with_suffix(".tmp")
        staging.write_bytes(key)
        if os.name != "nt":  # pragma: no cover - depends on OS
            os.chmod(staging, 0o600)
        staging.replace(self._key_path)
        LOGGER.info("Created settings key at %s", self._key_path)
        return key


class SecretVault:
    """Prefixes ciphertext with the backend name so backends can be swapped."""

    def __init__(self, *, key_path: Path | None = None, provider: SecretProvider | None = None) -> None:
        self._provider = provider or FernetSecretProvider(key_path)

    @property
    def strategy(self) -> str:
        return self._provider.name

    def encrypt(self, secret: str) -> str:
        return f"{self.strategy}:{self._provider.encrypt(secret)}" if secret else ""

    def decrypt(self, token: str | None) -> str:
        """Return the plaintext of ``token``.

        Raises:
            ValueError: If ``token`` belongs to another backend or fails
                authentication.
        """
        if not token:
            return ""
        backend, sep, payload = token.partition(":")
        if not sep:
            backend, payload = "", token
        if backend and backend != self.strategy:
            raise ValueError(f"Secret was encrypted with unknown backend {backend!r}")
        try:
            return self._provider.decrypt(payload)
        except InvalidToken as exc:
            raise ValueError("Invalid Fernet token") from exc


# -----------------------------------------------------------------------------
# Store
# -----------------------------------------------------------------------------


class SettingsStore:
    """Reads and writes :class:`Settings` at ``path``.

    Precedence on load: file, then ``overrides`` (command line), then
    ``AGENTDESK_*`` environment variables.
    """

    def __init__(self, path: Path | None = None, *, vault: SecretVault | None = None) -> None:
        self._path = path or _DEFAULT_SETTINGS_PATH
        self._vault = vault or SecretVault(key_path=self._path.with_suffix(".key"))

    @property
    def path(self) -> Path:
        return self._path

    @property
    def vault(self) -> SecretVault:
        return self._vault

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> Settings:
        payload = self._read_payload()
        settings, needs_rewrite = self._from_payload(payload) if payload else (Settings(), False)
        if needs_rewrite:
            try:
                self.save(settings)
            except OSError as exc:
                LOGGER.warning("Failed to migrate settings file %s: %s", self._path, exc)

        if overrides:
            settings = _merge(settings, overrides, source="CLI")
        env = _environment_overrides()
        if env:
            settings = _merge(settings, env, source="environment")
        return _normalize_approval_mode(settings)

    def save(self, settings: Settings) -> Path:
        """Write ``settings`` atomically and return the file path."""
        data = asdict(settings)
        api_key = data.pop("api_key", "")
        if api_key:
            data[_CIPHERTEXT_FIELD] = self._vault.encrypt(api_key)
        data["version"] = _SETTINGS_VERSION
        data["secret_backend"] = self._vault.strategy

        self._path.parent.mkdir(parents=True, exist_ok=True)
        staging = self._path.with_suffix(".tmp")
        staging.write_text(json.dumps(data, indent=2, sort_keys=True), encoding="utf-8")
        staging.replace(self._path)
        LOGGER.debug("Saved settings to %s (%s/%s)", self._path, settings.provider, settings.model)
        return self._path

    def _read_payload(self) -> Dict[str, Any]:
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            LOGGER.warning("Ignoring settings file %s: invalid JSON (%s)", self._path, exc)
            return {}
        if not isinstance(payload, dict):
            LOGGER.warning("Ignoring settings file %s: not a JSON object", self._path)
            return {}
        return payload

    def _from_payload(self, payload: Dict[str, Any]) -> tuple[Settings, bool]:
        """Build settings from a file payload; the flag asks for a rewrite."""
        ciphertext = payload.pop(_CIPHERTEXT_FIELD, None)
        legacy_key = payload.pop("api_key", None)
        known = {key: value for key, value in payload.items() if key in _FIELD_NAMES}
        try:
            settings = Settings(**known)
        except TypeError as exc:
            LOGGER.warning("Settings file %s holds unexpected data: %s", self._path, exc)
            settings = Settings()

        api_key = ""
        if ciphertext:
            try:
                api_key = self._vault.decrypt(ciphertext)
            except ValueError as exc:
                LOGGER.warning("Unable to decrypt API key: %s", exc)
        elif legacy_key:
            LOGGER.info("Migrating plaintext API key in %s to encrypted storage", self._path)
            api_key = legacy_key
        if api_key:
            settings = replace(settings, api_key=api_key)

        outdated = payload.get("version") != _SETTINGS_VERSION
        return _normalize_approval_mode(settings), bool(legacy_key and not ciphertext) or outdated


def _environment_overrides() -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    for env_name, (field_name, convert) in _ENV_OVERRIDES.items():
        raw = os.environ.get(env_name)
        if raw is None:
            continue
        try:
            overrides[field_name] = convert(raw)
        except ValueError:
            LOGGER.warning("Ignoring %s=%r: cannot convert to %s", env_name, raw, field_name)
    return overrides


def _merge(settings: Settings, overrides: Mapping[str, Any], *, source: str) -> Settings:
    changes = {key: value for key, value in overrides.items() if key in _FIELD_NAMES and value is not None}
    if isinstance(changes.get("metadata"), Mapping):
        changes["metadata"] = {**settings.metadata, **changes["metadata"]}
    if not changes:
        return settings
    LOGGER.debug("Applying %s overrides: %s", source, sorted(changes))
    return replace(settings, **changes)


def _normalize_approval_mode(settings: Settings) -> Settings:
    mode = str(settings.approval_mode or "").strip().lower()
    if mode not in APPROVAL_MODES:
        LOGGER.warning("Unknown approval_mode %r; using permissive", settings.approval_mode)
        mode = "permissive"
    return settings if mode == settings.approval_mode else replace(settings, approval_mode=mode)


def redact_secret(value: str) -> str:
    """Mask all but the first and last two characters (short values fully)."""
    stripped = (value or "").strip()
    if len(stripped) <= 4:
        return "*" * len(stripped)
    return f"{stripped[:2]}{'*' * (len(stripped) - 4)}{stripped[-2:]}"
