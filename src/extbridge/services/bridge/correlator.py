"""Registry of outstanding calls waiting for a correlated reply."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Generic, Hashable, TypeVar

__all__ = ["OutstandingCalls"]

_log = logging.getLogger("extbridge.bridge.correlator")

K = TypeVar("K", bound=Hashable)


@dataclass(slots=True)
class _Entry:
    future: asyncio.Future
    timer: asyncio.TimerHandle | None


class OutstandingCalls(Generic[K]):
    """Maps keys to waiting futures, each with its own deadline timer.

    ``on_timeout`` builds the exception set on the future when the timer
    fires first. Late ``resolve``/``reject`` calls for a key that is no longer
    registered return ``False`` and are otherwise ignored.
    """

    def __init__(self) -> None:
        self._entries: dict[K, _Entry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def open(
        self,
        key: K,
        timeout: float | None,
        on_timeout: Callable[[K], BaseException],
    ) -> asyncio.Future:
        if key in self._entries:
            raise KeyError(f"call {key!r} is already outstanding")
        loop = asyncio.get_running_loop()
        future = loop.create_future()
        timer = None
        if timeout is not None:
            timer = loop.call_later(timeout, self._expire, key, on_timeout)
        self._entries[key] = _Entry(future=future, timer=timer)
        return future

    def _expire(self, key: K, on_timeout: Callable[[K], BaseException]) -> None:
        entry = self._entries.pop(key, None)
        if entry is None or entry.future.done():
            return
        entry.future.set_exception(on_timeout(key))

    def _take(self, key: K) -> _Entry | None:
        entry = self._entries.pop(key, None)
        if entry is not None and entry.timer is not None:
            entry.timer.cancel()
        return entry

    def resolve(self, key: K, value: Any) -> bool:
        entry = self._take(key)
        if entry is None or entry.future.done():
            return False
        entry.future.set_result(value)
        return True

    def reject(self, key: K, exc: BaseException) -> bool:
        entry = self._take(key)
        if entry is None or entry.future.done():
            return False
        entry.future.set_exception(exc)
        return True

    def discard(self, key: K) -> None:
        entry = self._take(key)
        if entry is not None and not entry.future.done():
            entry.future.cancel()

    def reject_all(self, factory: Callable[[K], BaseException]) -> int:
        keys = list(self._entries)
        for key in keys:
            self.reject(key, factory(key))
        if keys:
            _log.info("rejected %d outstanding call(s)", len(keys))
        return len(keys)
