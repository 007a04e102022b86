"""Extension-side connection state machine.

``ClientConnection.run()`` probes the candidate URLs, opens one socket,
detects which wire protocol the server speaks and then serves action requests
until the socket closes. A failed probe cycle is retried once after a fixed
backoff; after that the connection gives up and reports ``disconnected``.
"""
from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import Any, Awaitable, Callable, Optional, Protocol, Union

from websockets.asyncio.client import ClientConnection as _WsConnection
from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed
from websockets.protocol import State

from extbridge.config import const
from extbridge.services.bridge.enums import ClientState, WireProtocol
from extbridge.services.bridge.errors import AuthRejectedError, ProtocolViolationError

from .candidates import build_candidates
from .identity import DeviceIdentity, DeviceIdentityStore
from .protocols import BridgeProtocol, GatewayProtocol, is_connect_challenge

__all__ = [
    "ClientConnection",
    "ClientTransport",
    "TransportClosed",
    "WebSocketTransport",
    "websocket_connector",
]

_log = logging.getLogger("extbridge.client")

ActionHandler = Callable[[str, dict[str, Any]], Awaitable[Any]]
Connector = Callable[[str, float], Awaitable["ClientTransport"]]
StateListener = Callable[[ClientState, Optional[str]], None]
ReplyBuilder = Callable[[bool, Any], dict[str, Any]]
Adapter = Union[BridgeProtocol, GatewayProtocol]


class TransportClosed(Exception):
    """The peer closed the socket or the socket failed."""


class ClientTransport(Protocol):
    @property
    def is_open(self) -> bool: ...

    async def send_json(self, payload: dict[str, Any]) -> None: ...

    async def recv(self) -> str | bytes: ...

    async def close(self) -> None: ...


class WebSocketTransport:
    def __init__(self, ws: _WsConnection) -> None:
        self._ws = ws

    @property
    def is_open(self) -> bool:
        return self._ws.state is State.OPEN

    async def send_json(self, payload: dict[str, Any]) -> None:
        try:
            await self._ws.send(json.dumps(payload, ensure_ascii=False))
        except ConnectionClosed as exc:
            raise TransportClosed(str(exc)) from exc

    async def recv(self) -> str | bytes:
        try:
            return await self._ws.recv()
        except ConnectionClosed as exc:
            raise TransportClosed(str(exc)) from exc

    async def close(self) -> None:
        await self._ws.close()


async def websocket_connector(url: str, timeout: float) -> ClientTransport:
    ws = await ws_connect(url, open_timeout=timeout, ping_interval=None, max_size=None)
    return WebSocketTransport(ws)


class ClientConnection:
    def __init__(
        self,
        target: str,
        identity: DeviceIdentity,
        handler: ActionHandler,
        *,
        identity_store: DeviceIdentityStore | None = None,
        connector: Connector = websocket_connector,
        candidate_timeout: float = const.CANDIDATE_TIMEOUT_SECONDS,
        retry_backoff: float = const.RECONNECT_BACKOFF_SECONDS,
        protocol_grace: float = const.PROTOCOL_GRACE_SECONDS,
        keepalive_interval: float = const.KEEPALIVE_INTERVAL_SECONDS,
    ) -> None:
        self.candidates = build_candidates(target)
        self.identity = identity
        self._handler = handler
        self._identity_store = identity_store
        self._connector = connector
        self.candidate_timeout = candidate_timeout
        self.retry_backoff = retry_backoff
        self.protocol_grace = protocol_grace
        self.keepalive_interval = keepalive_interval

        self.state = ClientState.DISCONNECTED
        self.connected_url: str | None = None
        self.protocol: WireProtocol | None = None
        self.pairing_code: str | None = None
        self.last_error: str | None = None

        self._transport: ClientTransport | None = None
        self._adapter: Adapter | None = None
        self._tasks: set[asyncio.Task] = set()
        self._listeners: list[StateListener] = []
        self._stopping = False

    # ------------------------------------------------------------------
    # state
    # ------------------------------------------------------------------
    def add_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def set_state(self, state: ClientState) -> None:
        if state == self.state:
            return
        _log.info("client state %s -> %s (%s)", self.state, state, self.connected_url or "-")
        self.state = state
        for listener in list(self._listeners):
            try:
                listener(state, self.connected_url)
            except Exception:
                _log.exception("client state listener failed")

    def save_identity(self) -> None:
        if self._identity_store is not None:
            self._identity_store.save(self.identity)

    async def send_json(self, payload: dict[str, Any]) -> None:
        transport = self._transport
        if transport is None or not transport.is_open:
            raise TransportClosed("socket is not open")
        await transport.send_json(payload)

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------
    async def run(self) -> None:
        """Connect, serve until the socket closes, back off, repeat.

        Returns once a probe cycle and its single retry both failed, or after
        :meth:`stop`.
        """

        self._stopping = False
        retried = False
        while not self._stopping:
            transport = await self._open_any()
            if transport is None:
                if retried or self._stopping:
                    self.set_state(ClientState.DISCONNECTED)
                    _log.warning("giving up on %s: %s", ", ".join(self.candidates), self.last_error)
                    return
                retried = True
                _log.info("no server reachable, retrying in %.1fs", self.retry_backoff)
                await asyncio.sleep(self.retry_backoff)
                continue
            retried = False
            await self.serve(transport)
            if self._stopping:
                break
            await asyncio.sleep(self.retry_backoff)
        self.set_state(ClientState.DISCONNECTED)

    async def stop(self) -> None:
        self._stopping = True
        transport = self._transport
        if transport is not None:
            with contextlib.suppress(Exception):
                await transport.close()

    async def _open_any(self) -> ClientTransport | None:
        self.set_state(ClientState.CONNECTING)
        for url in self.candidates:
            if self._stopping:
                return None
            try:
                transport = await asyncio.wait_for(
                    self._connector(url, self.candidate_timeout),
                    self.candidate_timeout,
                )
            except (asyncio.TimeoutError, OSError, TransportClosed, ConnectionClosed) as exc:
                self.last_error = f"{url}: {exc or type(exc).__name__}"
                _log.debug("candidate %s failed: %s", url, exc)
                continue
            except Exception as exc:
                # invalid handshake, bad status code and similar library errors
                self.last_error = f"{url}: {exc}"
                _log.debug("candidate %s failed", url, exc_info=True)
                continue
            self.connected_url = url
            _log.info("connected to %s", url)
            return transport
        self.connected_url = None
        return None

    async def _recv_json(self, transport: ClientTransport) -> dict[str, Any] | None:
        raw = await transport.recv()
        try:
            payload = json.loads(raw)
        except (TypeError, ValueError):
            _log.warning("ignoring malformed frame from server")
            return None
        if not isinstance(payload, dict):
            _log.warning("ignoring non-object frame from server")
            return None
        return payload

    async def serve(self, transport: ClientTransport) -> None:
        """Run one socket from protocol detection to close."""

        self._transport = transport
        self.protocol = None
        self.set_state(ClientState.HANDSHAKING)
        keepalive: asyncio.Task | None = None
        try:
            first: dict[str, Any] | None = None
            try:
                first = await asyncio.wait_for(self._recv_json(transport), self.protocol_grace)
            except asyncio.TimeoutError:
                first = None

            adapter: Adapter
            if is_connect_challenge(first):
                adapter = GatewayProtocol(self)
                self._pin(adapter)
                await adapter.start(first)  # type: ignore[arg-type]
            else:
                adapter = BridgeProtocol(self)
                self._pin(adapter)
                await adapter.start()
                if first is not None:
                    await adapter.handle(first)

            if adapter.uses_keepalive:
                keepalive = asyncio.create_task(self._keepalive(transport, adapter))

            while True:
                frame = await self._recv_json(transport)
                if frame is not None:
                    await adapter.handle(frame)
        except TransportClosed as exc:
            _log.info("connection to %s closed: %s", self.connected_url, exc or "peer closed")
        except AuthRejectedError as exc:
            self.last_error = f"{exc} {exc.hint}" if exc.hint else str(exc)
            _log.error("%s", self.last_error)
        except ProtocolViolationError as exc:
            self.last_error = str(exc)
            _log.warning("protocol error from %s: %s", self.connected_url, exc)
        finally:
            if keepalive is not None:
                keepalive.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await keepalive
            for task in list(self._tasks):
                task.cancel()
            self._tasks.clear()
            with contextlib.suppress(Exception):
                await transport.close()
            self._transport = None
            self._adapter = None
            self.pairing_code = None
            self.set_state(ClientState.DISCONNECTED)

    def _pin(self, adapter: Adapter) -> None:
        self._adapter = adapter
        self.protocol = adapter.kind
        _log.info("using %s protocol on %s", adapter.kind, self.connected_url)

    async def _keepalive(self, transport: ClientTransport, adapter: Adapter) -> None:
        while True:
            await asyncio.sleep(self.keepalive_interval)
            if not transport.is_open or self._adapter is not adapter or adapter.kind is not WireProtocol.BRIDGE:
                return
            if self.state is not ClientState.CONNECTED:
                continue
            try:
                await transport.send_json({"type": "ping"})
            except TransportClosed:
                return

    # ------------------------------------------------------------------
    # actions
    # ------------------------------------------------------------------
    def dispatch(self, action: str, params: dict[str, Any], reply: ReplyBuilder) -> None:
        task = asyncio.get_running_loop().create_task(self._run_action(action, params, reply))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_action(self, action: str, params: dict[str, Any], reply: ReplyBuilder) -> None:
        try:
            result = await self._handler(action, params)
            frame = reply(True, result)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            _log.warning("action %s failed: %s", action, exc)
            frame = reply(False, str(exc) or type(exc).__name__)
        try:
            await self.send_json(frame)
        except TransportClosed:
            _log.info("socket closed before the %s result could be sent", action)
