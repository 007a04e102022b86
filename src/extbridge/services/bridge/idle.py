from __future__ import annotations

import asyncio
import logging
from typing import Callable

__all__ = ["IdleSupervisor"]

_log = logging.getLogger("extbridge.bridge.idle")


class IdleSupervisor:
    """Single re-armable timer; ``timeout_seconds <= 0`` disables it."""

    def __init__(self, timeout_seconds: float, on_expire: Callable[[], None]) -> None:
        self.timeout_seconds = float(timeout_seconds or 0)
        self._on_expire = on_expire
        self._handle: asyncio.TimerHandle | None = None
        self._running = False

    @property
    def enabled(self) -> bool:
        return self.timeout_seconds > 0

    def start(self) -> None:
        self._running = True
        self.touch()

    def touch(self) -> None:
        if not self._running or not self.enabled:
            return
        if self._handle is not None:
            self._handle.cancel()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self.timeout_seconds, self._fire)

    def _fire(self) -> None:
        self._handle = None
        if not self._running:
            return
        self._running = False
        _log.warning("no activity for %.1fs, stopping bridge", self.timeout_seconds)
        self._on_expire()

    def stop(self) -> None:
        self._running = False
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
