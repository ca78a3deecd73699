"""Logging setup for the pairlink daemon.

Every handler installed here carries a ``RedactingFilter``: mobile and
session ids are cut to their first 8 characters and PIN values are masked,
so modules log ids as they are and the rule lives in one place.
"""

import logging
import re
from pathlib import Path

from pairlink.config import Config

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# 32-hex mobile ids and uuid4 session ids
_LONG_ID = re.compile(
    r"\b([0-9a-f]{8})(?:[0-9a-f]{24}|-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12})\b"
)
# pin=123456, "pin": "123456", 'pin': 123456
_PIN_VALUE = re.compile(r"""(?<![A-Za-z_])(['"]?pin['"]?\s*[:=]\s*['"]?)(\d+)""", re.IGNORECASE)

_logger: logging.Logger | None = None


def redact(text: str) -> str:
    """Shorten long ids and mask PIN values in text."""
    text = _LONG_ID.sub(lambda m: f"{m.group(1)}...", text)
    return _PIN_VALUE.sub(lambda m: m.group(1) + "*" * len(m.group(2)), text)


class RedactingFilter(logging.Filter):
    """Rewrite each record's message through ``redact``."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = redact(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def _build_handlers(config: Config) -> list[logging.Handler]:
    handlers: list[logging.Handler] = []
    if config.log_file:
        log_path = Path(config.log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path))
    handlers.append(logging.StreamHandler())
    return handlers


def setup_logging(config: Config) -> logging.Logger:
    """Configure the ``pairlink`` logger once.

    Later calls return the logger configured by the first one.
    """
    global _logger

    if _logger is not None:
        return _logger

    logger = logging.getLogger("pairlink")
    logger.setLevel(getattr(logging, config.log_level.upper(), logging.INFO))
    logger.handlers.clear()

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
    redacting = RedactingFilter()
    for handler in _build_handlers(config):
        handler.setFormatter(formatter)
        handler.addFilter(redacting)
        logger.addHandler(handler)

    logger.propagate = False

    _logger = logger
    return logger


def reset_logging() -> None:
    """Reset logging state. Used for testing."""
    global _logger
    if _logger is not None:
        _logger.handlers.clear()
        _logger.propagate = True
        _logger = None
