# tests/core/test_logging.py
"""Tests for structured logging configuration."""

import json
import logging
from collections.abc import Iterator
from typing import Any

import pytest
import structlog

from crashguard.core.config import LoggingSettings
from crashguard.core.logging import configure_logging, configure_logging_from_settings, get_logger


@pytest.fixture(autouse=True)
def _restore_logging() -> Iterator[None]:
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers = handlers
    root.setLevel(level)
    structlog.reset_defaults()


def _json_lines(output: str) -> list[dict[str, Any]]:
    return [json.loads(line) for line in output.splitlines() if line.strip()]


class TestConfigureLogging:
    def test_structlog_json_output(self, capsys: pytest.CaptureFixture[str]) -> None:
        configure_logging(json_output=True, level="INFO")

        get_logger("crashguard.test").info("Checkpoint saved", checkpoint_id="cp-1", total_bytes=512)

        lines = _json_lines(capsys.readouterr().out)
        assert len(lines) == 1
        assert lines[0]["event"] == "Checkpoint saved"
        assert lines[0]["checkpoint_id"] == "cp-1"
        assert lines[0]["total_bytes"] == 512
        assert lines[0]["level"] == "info"
        assert "timestamp" in lines[0]
        assert "_record" not in lines[0]

    def test_stdlib_records_share_format(self, capsys: pytest.CaptureFixture[str]) -> None:
        configure_logging(json_output=True, level="INFO")

        logging.getLogger("crashguard.host").warning("disk %s", "nearly full")

        lines = _json_lines(capsys.readouterr().out)
        assert lines[0]["event"] == "disk nearly full"
        assert lines[0]["level"] == "warning"

    def test_level_filters(self, capsys: pytest.CaptureFixture[str]) -> None:
        configure_logging(json_output=True, level="WARNING")

        log = get_logger("crashguard.test")
        log.info("hidden")
        log.warning("shown")

        assert [line["event"] for line in _json_lines(capsys.readouterr().out)] == ["shown"]

    def test_sqlalchemy_kept_quiet_at_debug(self) -> None:
        configure_logging(level="DEBUG")

        assert logging.getLogger("sqlalchemy").level == logging.WARNING
        assert logging.getLogger("sqlalchemy.engine").getEffectiveLevel() == logging.WARNING

    def test_from_settings(self, capsys: pytest.CaptureFixture[str]) -> None:
        configure_logging_from_settings(LoggingSettings(level="ERROR", json_output=True))

        get_logger("crashguard.test").warning("suppressed")

        assert capsys.readouterr().out == ""
        assert logging.getLogger().level == logging.ERROR
