"""Centralized logging configuration for the ``ibkr_ledger`` package.

``configure_logging`` attaches a single ``StreamHandler`` to the package logger and is called
once by entrypoints. ``get_logger`` hands out module loggers and makes sure library use without
configuration stays silent.
"""

import logging
import os
import sys
from typing import IO

_PKG_LOGGER_NAME = "ibkr_ledger"
_LEVEL_ENV_VAR_NAME = "IBKR_LEDGER_LOG_LEVEL"
_DEFAULT_FORMAT = "%(asctime)s %(name)s %(levelname)s %(message)s"
_CONFIGURED = False


def _parse_level(level: int | str | None, default: int = logging.INFO) -> int:
    """Resolve explicit, environment or default logging level."""
    if isinstance(level, int):
        return level
    if isinstance(level, str):
        text = level.strip().upper()
        if text.isdigit():
            return int(text)
        if isinstance(numeric := getattr(logging, text, None), int):
            return numeric
    if env_value := os.environ.get(_LEVEL_ENV_VAR_NAME):
        return _parse_level(env_value, default)
    return default


def configure_logging(
    level: int | str | None = None,
    *,
    fmt: str | None = None,
    stream: IO[str] = sys.stderr,
    default_level: int = logging.INFO,
) -> None:
    """Configure the package logger exactly once."""
    global _CONFIGURED
    if _CONFIGURED:
        return
    logger = logging.getLogger(_PKG_LOGGER_NAME)
    for handler in list(logger.handlers):
        if isinstance(handler, logging.NullHandler):
            logger.removeHandler(handler)
    resolved = _parse_level(level, default_level)
    handler = logging.StreamHandler(stream)
    handler.setLevel(resolved)
    handler.setFormatter(logging.Formatter(fmt or _DEFAULT_FORMAT))
    logger.addHandler(handler)
    logger.setLevel(resolved)
    logger.propagate = False
    _CONFIGURED = True


def get_logger(name: str) -> logging.Logger:
    """Return named logger, adding a NullHandler to the package logger when unconfigured."""
    package_logger = logging.getLogger(_PKG_LOGGER_NAME)
    if not _CONFIGURED and not package_logger.handlers:
        package_logger.addHandler(logging.NullHandler())
    return logging.getLogger(name)
