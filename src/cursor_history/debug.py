"""Debug logging capability passed into the storage and backup engines.

Engines never read the environment themselves. They receive an object with a
single ``log(message)`` method; the default discards everything. The CLI and
server build one from the environment with ``debug_log_from_env``.
"""

import logging
import os
import sys
from typing import Protocol

LOGGER_NAME = "cursor_history"
PREFIX = "[cursor-history]"


class DebugLog(Protocol):
    def log(self, message: str) -> None: ...


class NullDebugLog:
    """Discards all diagnostics."""

    def log(self, message: str) -> None:
        pass


class LoggingDebugLog:
    """Forwards diagnostics to the ``cursor_history`` stdlib logger at DEBUG."""

    def __init__(self, logger: logging.Logger | None = None):
        self.logger = logger or logging.getLogger(LOGGER_NAME)

    def log(self, message: str) -> None:
        self.logger.debug("%s %s", PREFIX, message)


NULL_LOG = NullDebugLog()


def is_debug_enabled(environ=None) -> bool:
    """Return True if either debug variable asks for diagnostics.

    ``DEBUG`` follows the node-style namespace convention (``cursor-history:*``
    or ``*``); ``CURSOR_HISTORY_DEBUG`` is a plain on switch.
    """
    env = os.environ if environ is None else environ
    debug = env.get("DEBUG", "")
    if debug and ("cursor-history" in debug or debug.strip() == "*"):
        return True
    return bool(env.get("CURSOR_HISTORY_DEBUG", ""))


def debug_log_from_env(environ=None) -> DebugLog:
    """Return a stderr-backed debug log if enabled, otherwise the null log."""
    if not is_debug_enabled(environ):
        return NULL_LOG

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG)
    if not any(getattr(h, "_cursor_history", False) for h in logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter("%(message)s"))
        handler._cursor_history = True
        logger.addHandler(handler)
    return LoggingDebugLog(logger)
