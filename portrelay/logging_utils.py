"""Logging helpers for PortRelay."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, Optional

_RESERVED_ATTRS = frozenset(
    logging.LogRecord("", logging.INFO, "", 0, "", None, None).__dict__
) | {"message", "asctime"}

REDACTED = "***"


class ContextFormatter(logging.Formatter):
    """Append the ``extra={...}`` context of a record as ``key=value`` pairs."""

    def format(self, record: logging.LogRecord) -> str:
        text = super().format(record)
        context = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RESERVED_ATTRS and not key.startswith("_")
        }
        if not context:
            return text
        pairs = " ".join(f"{key}={value}" for key, value in sorted(context.items()))
        return f"{text} | {pairs}"


class SecretRedactingFilter(logging.Filter):
    """Mask registered secrets (the SSH password) in messages and context."""

    def __init__(self) -> None:
        super().__init__()
        self._secrets: set[str] = set()

    def add(self, secret: Optional[str]) -> None:
        if secret:
            self._secrets.add(secret)

    def _mask(self, text: str) -> str:
        for secret in self._secrets:
            text = text.replace(secret, REDACTED)
        return text

    def filter(self, record: logging.LogRecord) -> bool:
        if not self._secrets:
            return True
        record.msg = self._mask(record.getMessage())
        record.args = None
        for key, value in list(record.__dict__.items()):
            if key not in _RESERVED_ATTRS and isinstance(value, str):
                setattr(record, key, self._mask(value))
        return True


_REDACTOR = SecretRedactingFilter()


def register_secrets(secrets: Iterable[Optional[str]]) -> None:
    """Make sure none of ``secrets`` ever reaches a log handler."""

    for secret in secrets:
        _REDACTOR.add(secret)


def setup_logging(
    log_dir: str | Path,
    log_name: str = "portrelay",
    level: int = logging.INFO,
) -> logging.Logger:
    """Initialize console and file logging.

    Parameters
    ----------
    log_dir:
        Directory where log files will be stored.
    log_name:
        Base name of the log file without extension.
    level:
        Level applied to the ``portrelay`` logger.

    Returns
    -------
    logging.Logger
        Configured package logger instance.
    """

    log_directory = Path(log_dir)
    log_directory.mkdir(parents=True, exist_ok=True)
    log_file = log_directory / f"{log_name}.log"

    logger = logging.getLogger("portrelay")
    logger.setLevel(level)

    # Repeated initialization must not attach duplicate handlers.
    existing_handlers = {type(handler) for handler in logger.handlers}
    formatter = ContextFormatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    if logging.StreamHandler not in existing_handlers:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(logging.WARNING if level > logging.DEBUG else level)
        console_handler.setFormatter(formatter)
        console_handler.addFilter(_REDACTOR)
        logger.addHandler(console_handler)

    if logging.FileHandler not in existing_handlers:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        file_handler.addFilter(_REDACTOR)
        logger.addHandler(file_handler)

    logger.debug("Logging initialized", extra={"log_file": str(log_file)})
    return logger


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Return a namespaced logger under the ``portrelay`` hierarchy."""

    base = logging.getLogger("portrelay")
    if not name:
        return base
    if name == "portrelay" or name.startswith("portrelay."):
        return logging.getLogger(name)
    return base.getChild(name)
