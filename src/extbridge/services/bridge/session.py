"""Ownership of the single authoritative extension socket."""
from __future__ import annotations

import asyncio
import logging
from typing import Callable

from extbridge.config import const

from .enums import ConnectionState
from .transport import BridgeSocket
from .trust_store import PairedDevice

__all__ = ["SessionManager", "StateListener"]

_log = logging.getLogger("extbridge.bridge.session")

StateListener = Callable[[ConnectionState, "PairedDevice | None"], None]


class SessionManager:
    def __init__(self) -> None:
        self._socket: BridgeSocket | None = None
        self._device: PairedDevice | None = None
        self._state = ConnectionState.DISCONNECTED
        self._ready = asyncio.Event()
        self._listeners: list[StateListener] = []

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def socket(self) -> BridgeSocket | None:
        return self._socket

    @property
    def device(self) -> PairedDevice | None:
        return self._device

    def add_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def is_authoritative(self, socket: BridgeSocket) -> bool:
        return self._socket is not None and self._socket is socket

    def set_state(self, state: ConnectionState) -> None:
        if state == self._state:
            return
        previous, self._state = self._state, state
        _log.info("connection state %s -> %s", previous, state)
        for listener in list(self._listeners):
            try:
                listener(state, self._device)
            except Exception:
                _log.exception("state listener failed")

    async def promote(self, socket: BridgeSocket, device: PairedDevice) -> None:
        previous = self._socket
        self._socket = socket
        self._device = device
        self._ready.set()
        if previous is not None and previous is not socket:
            _log.info("closing superseded session from %s", previous.remote_address)
            try:
                await previous.close(const.CLOSE_NORMAL, "superseded by a newer session")
            except Exception:
                _log.debug("closing superseded socket failed", exc_info=True)
        self.set_state(ConnectionState.CONNECTED)

    def release(self, socket: BridgeSocket, *, pairing_pending: bool = False) -> bool:
        if self._socket is not socket:
            return False
        self._socket = None
        self._device = None
        self._ready.clear()
        self.set_state(ConnectionState.PAIRING if pairing_pending else ConnectionState.DISCONNECTED)
        return True

    async def wait_until_ready(self, timeout: float) -> BridgeSocket | None:
        """Wait up to ``timeout`` seconds for an authoritative socket to appear."""

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            socket = self._socket
            if socket is not None and socket.is_open:
                return socket
            if socket is not None:
                # dead but not released yet; wait for a replacement
                self._ready.clear()
            remaining = deadline - loop.time()
            if remaining <= 0:
                return None
            try:
                await asyncio.wait_for(self._ready.wait(), remaining)
            except asyncio.TimeoutError:
                return None

    async def close(self, code: int, reason: str) -> None:
        socket = self._socket
        self._socket = None
        self._device = None
        self._ready.clear()
        if socket is not None:
            try:
                await socket.close(code, reason)
            except Exception:
                _log.debug("closing session socket failed", exc_info=True)
        self.set_state(ConnectionState.DISCONNECTED)
