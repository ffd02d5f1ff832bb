from __future__ import annotations

import threading


class Readiness:
    """One-shot readiness signal for the health gate."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def mark_ready(self) -> None:
        self._event.set()

    def is_ready(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)

    def reset(self) -> None:
        self._event.clear()


_READINESS = Readiness()


def get_readiness() -> Readiness:
    return _READINESS
