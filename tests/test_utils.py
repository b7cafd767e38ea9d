"""Tests covering the logging helpers."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterator

import pytest

from agentdesk.utils import logging as logging_utils


@pytest.fixture
def _restore_root_logger() -> Iterator[None]:
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.mark.usefixtures("_restore_root_logger")
def test_setup_logging_writes_to_file(tmp_path: Path) -> None:
    log_dir = tmp_path / "logs"

    log_path = logging_utils.setup_logging(level=logging.INFO, log_dir=log_dir, console=False, force=True)

    logger = logging.getLogger("agentdesk.tests")
    logger.info("Logging smoke test")
    for handler in logging.getLogger().handlers:
        handler.flush()

    assert log_path == log_dir / "agentdesk.log"
    assert "Logging smoke test" in log_path.read_text(encoding="utf-8")
    assert logging_utils.get_log_path() == log_path


@pytest.mark.usefixtures("_restore_root_logger")
def test_log_dir_env_override_and_noisy_loggers(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AGENTDESK_LOG_DIR", str(tmp_path / "env-logs"))

    log_path = logging_utils.setup_logging(level=logging.DEBUG, console=False, force=True)

    assert log_path.parent == tmp_path / "env-logs"
    assert logging.getLogger("httpx").level == logging.WARNING
    assert logging.getLogger("openai").level == logging.WARNING


@pytest.mark.usefixtures("_restore_root_logger")
def test_records_carry_thread_id(tmp_path: Path) -> None:
    log_path = logging_utils.setup_logging(log_dir=tmp_path, console=False, force=True)
    logger = logging.getLogger("agentdesk.tests")

    with logging_utils.thread_context("t-42"):
        logger.info("inside")
    logger.info("outside")
    for handler in logging.getLogger().handlers:
        handler.flush()

    contents = log_path.read_text(encoding="utf-8")
    assert "[t-42] inside" in contents
    assert "[-] outside" in contents
