# services/api/logging_config.py
"""
Logging setup shared by the API, the coordinator and the CLI.
"""
from __future__ import annotations

import logging
import re
import sys
from typing import Optional

from services.config import LOG_LEVEL

LOG_FORMAT = "%(asctime)s %(levelname)-7s [%(name)s] %(message)s"

# 64+ hex chars: field elements, keys and signatures. Only a short prefix is kept.
_LONG_HEX = re.compile(r"\b[0-9a-fA-F]{64,}\b")


def _mask(match: "re.Match") -> str:
    return match.group(0)[:8] + "...(redacted)"


class RedactingFilter(logging.Filter):
    """Masks long hex runs in the rendered message before any handler sees it."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = _LONG_HEX.sub(_mask, message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


_configured = False


def setup_logging(level: Optional[str] = None) -> None:
    global _configured
    root = logging.getLogger()
    root.setLevel((level or LOG_LEVEL).upper())
    if _configured:
        return
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(RedactingFilter())
    root.addHandler(handler)
    _configured = True


def get_logger(name: str) -> logging.Logger:
    logger = logging.getLogger(name)
    if not any(isinstance(f, RedactingFilter) for f in logger.filters):
        logger.addFilter(RedactingFilter())
    return logger


__all__ = ["LOG_FORMAT", "RedactingFilter", "setup_logging", "get_logger"]
