"""Logging setup for the agentdesk core.

Records carry a ``thread_id`` attribute filled from :func:`thread_context`, so
interleaved sends on different threads stay distinguishable in one log file.
"""

from __future__ import annotations

import contextvars
import logging
import logging.handlers
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

__all__ = ["setup_logging", "get_log_path", "thread_context"]

_DEFAULT_LOG_DIR = Path.home() / ".agentdesk" / "logs"
_LOG_FILE_NAME = "agentdesk.log"
_LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | [%(thread_id)s] %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
# Per-chunk debug output from the HTTP stack drowns the stream logs.
_CHATTY_LOGGERS: tuple[str, ...] = ("asyncio", "httpx", "httpcore", "openai")

_thread_id: contextvars.ContextVar[str] = contextvars.ContextVar("agentdesk_thread_id", default="-")
_log_path: Path | None = None


class _ThreadIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "thread_id"):
            record.thread_id = _thread_id.get()
        return True


@contextmanager
def thread_context(thread_id: str | None) -> Iterator[None]:
    """Tag log records emitted inside the block with ``thread_id``."""
    token = _thread_id.set(thread_id or "-")
    try:
        yield
    finally:
        _thread_id.reset(token)


def setup_logging(
    level: int = logging.INFO,
    *,
    log_dir: Path | str | None = None,
    console: bool = True,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    force: bool = False,
) -> Path:
    """Install the rotating file handler (and a console handler) on the root logger.

    Repeated calls are no-ops unless ``force`` is set. ``AGENTDESK_LOG_DIR``
    overrides the default directory when ``log_dir`` is not given.

    Returns:
        Path of the active log file.
    """
    global _log_path
    if _log_path is not None and not force:
        return _log_path

    directory = Path(log_dir or os.environ.get("AGENTDESK_LOG_DIR") or _DEFAULT_LOG_DIR).expanduser()
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / _LOG_FILE_NAME

    formatter = logging.Formatter(fmt=_LOG_FORMAT, datefmt=_DATE_FORMAT)
    thread_filter = _ThreadIdFilter()
    handlers: list[logging.Handler] = [
        logging.handlers.RotatingFileHandler(path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8")
    ]
    if console:
        handlers.append(logging.StreamHandler())
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        handler.addFilter(thread_filter)

    logging.basicConfig(level=level, handlers=handlers, force=True)
    logging.captureWarnings(True)
    chatty_level = max(level, logging.WARNING)
    for name in _CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(chatty_level)

    _log_path = path
    return path


def get_log_path() -> Path | None:
    """Return the active log file, or ``None`` before :func:`setup_logging`."""
    return _log_path
