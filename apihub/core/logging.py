from __future__ import annotations

import logging
import sys
import threading

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"
VALID_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class LogLevelHandle:
    """Process-wide log level knob shared by the lifespan and the admin endpoint."""

    def __init__(self) -> None:
        self._lock = threading.Lock()

    def get(self) -> str:
        with self._lock:
            return logging.getLevelName(logging.getLogger().level)

    def set(self, level: str) -> str:
        normalized = level.strip().upper()
        if normalized not in VALID_LEVELS:
            raise ValueError(f"Unknown log level: {level}")
        with self._lock:
            logging.getLogger().setLevel(normalized)
        return normalized


_LEVEL_HANDLE = LogLevelHandle()


def get_log_level_handle() -> LogLevelHandle:
    return _LEVEL_HANDLE


def configure_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    if not any(getattr(handler, "_apihub_handler", False) for handler in root.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
        handler._apihub_handler = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    _LEVEL_HANDLE.set(level)
