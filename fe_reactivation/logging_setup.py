"""Logging configuration for the reactivation commands."""
from __future__ import annotations

import logging
import re
from typing import List, Optional

from .config import LoggingConfig


LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"
CONSOLE_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

SENSITIVE_KEYWORDS = ("password", "client_secret", "secret", "access_token", "token")
_ASSIGNMENT = re.compile(
    rf"(({'|'.join(SENSITIVE_KEYWORDS)})[\"']?\s*[:=]\s*[\"']?)[^\s,\"'}}\]]+",
    re.IGNORECASE,
)
_BEARER = re.compile(r"(Bearer\s+)[^\s,]+", re.IGNORECASE)


class SensitiveDataFilter(logging.Filter):
    """Mask credential values before they reach any handler."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        masked = _BEARER.sub(r"\1****", _ASSIGNMENT.sub(r"\1****", message))
        if masked != message:
            record.msg = masked
            record.args = None
        return True


_installed: List[logging.Handler] = []


def configure_logging(config: Optional[LoggingConfig] = None, verbose: bool = False) -> None:
    """Attach console and file handlers to the root logger.

    Calling this again replaces the handlers it installed previously.
    """

    config = config or LoggingConfig()
    level = logging.DEBUG if verbose else getattr(logging, config.level.upper(), logging.INFO)

    root = logging.getLogger()
    for handler in _installed:
        root.removeHandler(handler)
        handler.close()
    _installed.clear()

    sensitive = SensitiveDataFilter()
    console = logging.StreamHandler()
    console.setFormatter(logging.Formatter(CONSOLE_FORMAT, datefmt="%H:%M:%S"))
    console.addFilter(sensitive)
    _installed.append(console)

    if config.file:
        config.file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(config.file, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
        file_handler.addFilter(sensitive)
        _installed.append(file_handler)

    for handler in _installed:
        handler.setLevel(level)
        root.addHandler(handler)
    root.setLevel(level)

    # Keep HTTP client chatter out of the run log unless debugging.
    for noisy in ("urllib3", "msal"):
        logging.getLogger(noisy).setLevel(logging.DEBUG if verbose else logging.WARNING)


__all__ = ["SensitiveDataFilter", "configure_logging"]
