"""日志工具测试。Tests for the logging helpers."""

from __future__ import annotations

import logging
from pathlib import Path

import pytest

from portrelay.logging_utils import (
    REDACTED,
    ContextFormatter,
    SecretRedactingFilter,
    get_logger,
    setup_logging,
)


def _record(msg: str, *args, **extra) -> logging.LogRecord:
    record = logging.LogRecord("portrelay.test", logging.INFO, __file__, 1, msg, args, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


@pytest.fixture
def clean_portrelay_logger():
    """测试后移除处理器。Detach handlers added to the package logger."""
    logger = logging.getLogger("portrelay")
    before = list(logger.handlers)
    level = logger.level
    yield logger
    for handler in logger.handlers:
        if handler not in before:
            logger.removeHandler(handler)
            handler.close()
    logger.setLevel(level)


class TestGetLogger:
    """命名空间测试。Logger naming tests."""

    def test_child_of_package(self):
        assert get_logger("cli").name == "portrelay.cli"
        assert get_logger().name == "portrelay"

    def test_module_names_are_kept(self):
        assert get_logger("portrelay.tools.reconciler").name == "portrelay.tools.reconciler"


class TestFormatting:
    """格式化与脱敏测试。Formatting and redaction tests."""

    def test_context_is_appended(self):
        formatter = ContextFormatter("%(message)s")
        text = formatter.format(_record("Reconciliation state", state="applying", gateway="root@vps:9001"))
        assert text == "Reconciliation state | gateway=root@vps:9001 state=applying"

    def test_plain_message(self):
        assert ContextFormatter("%(message)s").format(_record("hello %s", "world")) == "hello world"

    def test_secret_is_masked(self):
        redactor = SecretRedactingFilter()
        redactor.add("hunter2")
        redactor.add(None)
        record = _record("login with %s", "hunter2", error="auth hunter2 rejected")

        assert redactor.filter(record)
        assert record.getMessage() == f"login with {REDACTED}"
        assert record.error == f"auth {REDACTED} rejected"

    def test_setup_logging_is_idempotent(self, temp_dir: Path, clean_portrelay_logger):
        setup_logging(temp_dir, log_name="run")
        count = len(clean_portrelay_logger.handlers)
        setup_logging(temp_dir, log_name="run")

        assert len(clean_portrelay_logger.handlers) == count
        get_logger("test").info("written", extra={"port": 8080})
        for handler in clean_portrelay_logger.handlers:
            handler.flush()
        assert "written | port=8080" in (temp_dir / "run.log").read_text(encoding="utf-8")
