"""Extension bridge: one authenticated socket exposed as an RPC channel.

``ExtensionBridge`` is transport agnostic. The API layer hands it accepted
sockets (anything implementing :class:`BridgeSocket`) and raw text frames;
callers use :meth:`ExtensionBridge.send_action` to run actions in the
extension and await their results.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
import time
import uuid
from typing import Any, Awaitable, Callable, Optional

from extbridge.config import const
from extbridge.services.bridge_config import BridgeSettings

from .address_policy import is_address_allowed, normalize_address
from .correlator import OutstandingCalls
from .enums import ConnectionState, NetworkPolicy
from .errors import (
    ActionFailedError,
    BridgeShutdownError,
    NotConnectedError,
    ProtocolViolationError,
    RequestTimeoutError,
    UnknownActionError,
)
from .frames import IdentifyFrame, PingFrame, PongFrame, ResponseFrame, error_message, parse_inbound
from .idle import IdleSupervisor
from .pairing import ApprovedPairing, PairingManager
from .session import SessionManager, StateListener
from .transport import BridgeSocket
from .trust_store import TrustStore, utc_now_iso

__all__ = ["ExtensionBridge"]

_log = logging.getLogger("extbridge.bridge")

ShutdownCallback = Callable[[], Optional[Awaitable[None]]]


class ExtensionBridge:
    def __init__(
        self,
        settings: BridgeSettings | None = None,
        *,
        store: TrustStore | None = None,
        on_idle_shutdown: ShutdownCallback | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings or BridgeSettings()
        self.settings.ensure_defaults()
        self.policy = NetworkPolicy(self.settings.network_policy)
        self.store = store or TrustStore(self.settings.store_path())
        self.pairing = PairingManager(self.store, ttl_seconds=self.settings.pairing_code_ttl_seconds, clock=clock)
        self.session = SessionManager()
        self.calls: OutstandingCalls[str] = OutstandingCalls()
        self.idle = IdleSupervisor(self.settings.idle_timeout_seconds, self._on_idle_expired)
        self.allowed_actions = frozenset(self.settings.allowed_actions)
        self._sockets: set[BridgeSocket] = set()
        self._on_idle_shutdown = on_idle_shutdown
        self._listener_closer: ShutdownCallback | None = None
        self._running = False
        self._started_at: str | None = None
        self._stop_reason: str | None = None
        self._idle_task: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------
    @property
    def running(self) -> bool:
        return self._running

    @property
    def state(self) -> ConnectionState:
        return self.session.state

    @property
    def connected(self) -> bool:
        socket = self.session.socket
        return socket is not None and socket.is_open

    async def start(self) -> None:
        if self._running:
            return
        self.store.load()
        self._running = True
        self._stop_reason = None
        self._started_at = utc_now_iso()
        self.idle.start()
        _log.info(
            "extension bridge listening on %s (policy=%s, idle=%ss)",
            self.settings.endpoint_url(),
            self.policy,
            self.settings.idle_timeout_seconds,
        )

    def add_state_listener(self, listener: StateListener) -> None:
        """Get called with the new state and device on every connection state change."""

        self.session.add_listener(listener)

    def attach_listener(self, closer: ShutdownCallback) -> None:
        """Register how to close the listening socket when the bridge stops."""

        self._listener_closer = closer

    async def stop(self, reason: str = "stopped") -> None:
        if not self._running:
            return
        self._running = False
        self._stop_reason = reason
        self.idle.stop()
        self.calls.reject_all(lambda _key: BridgeShutdownError(f"Extension bridge shutting down ({reason})"))
        for socket in list(self._sockets):
            if socket is self.session.socket:
                continue
            await self._close_quietly(socket, const.CLOSE_GOING_AWAY, "bridge shutting down")
        self._sockets.clear()
        await self.session.close(const.CLOSE_GOING_AWAY, "bridge shutting down")
        closer, self._listener_closer = self._listener_closer, None
        if closer is not None:
            await _maybe_await(closer())
        _log.info("extension bridge stopped: %s", reason)

    def _on_idle_expired(self) -> None:
        self._idle_task = asyncio.get_running_loop().create_task(self._idle_shutdown())

    async def _idle_shutdown(self) -> None:
        await self.stop("idle timeout")
        if self._on_idle_shutdown is not None:
            try:
                await _maybe_await(self._on_idle_shutdown())
            except Exception:
                _log.exception("idle shutdown callback failed")

    # ------------------------------------------------------------------
    # inbound sockets
    # ------------------------------------------------------------------
    async def admit(self, socket: BridgeSocket) -> bool:
        """Apply the network policy before the handshake is accepted."""

        address = normalize_address(socket.remote_address)
        if not self._running:
            await self._close_quietly(socket, const.CLOSE_TRY_AGAIN_LATER, "bridge not running")
            return False
        if not is_address_allowed(address, self.policy):
            _log.warning("rejecting connection from %s: network policy %s", address, self.policy)
            await self._close_quietly(socket, const.CLOSE_POLICY_VIOLATION, "network policy denied")
            return False
        self._sockets.add(socket)
        _log.debug("accepted connection from %s", address)
        return True

    async def handle_message(self, socket: BridgeSocket, raw: str | bytes) -> None:
        try:
            frame = parse_inbound(raw)
        except ProtocolViolationError as exc:
            await self._protocol_violation(socket, str(exc))
            return

        if isinstance(frame, IdentifyFrame):
            await self._on_identify(socket, frame)
        elif isinstance(frame, PingFrame):
            self.idle.touch()
            await socket.send_json({"type": "pong"})
        elif isinstance(frame, PongFrame):
            return
        elif isinstance(frame, ResponseFrame):
            if not self.session.is_authoritative(socket):
                await self._protocol_violation(socket, "response from unauthenticated socket")
                return
            self._on_response(frame)

    async def handle_disconnect(self, socket: BridgeSocket) -> None:
        self._sockets.discard(socket)
        self.pairing.forget_socket(socket)
        pending = bool(self.pairing.pending_codes())
        if self.session.release(socket, pairing_pending=pending):
            _log.info("extension disconnected (%s)", socket.remote_address)
        elif self.session.socket is None:
            self.session.set_state(ConnectionState.PAIRING if pending else ConnectionState.DISCONNECTED)

    async def _on_identify(self, socket: BridgeSocket, frame: IdentifyFrame) -> None:
        self.idle.touch()
        result = await self.pairing.identify(frame.device_id, frame.device_name, socket, frame.auth_token)
        if result.authenticated and result.device is not None:
            await self.session.promote(socket, result.device)
            await socket.send_json(
                {
                    "type": "identified",
                    "deviceId": result.device.device_id,
                    "deviceName": result.device.device_name,
                }
            )
            _log.info("device %s (%s) authenticated", result.device.device_id, result.device.device_name)
            return
        if self.session.is_authoritative(socket):
            self.session.release(socket, pairing_pending=True)
        if result.pending is None:
            raise RuntimeError(f"identify for {frame.device_id} produced neither a session nor a pending pairing")
        await socket.send_json(result.pending.as_frame())
        if self.session.socket is None:
            self.session.set_state(ConnectionState.PAIRING)

    def _on_response(self, frame: ResponseFrame) -> None:
        self.idle.touch()
        if frame.success:
            delivered = self.calls.resolve(frame.id, frame.data)
        else:
            delivered = self.calls.reject(frame.id, ActionFailedError(error_message(frame.error)))
        if not delivered:
            _log.info("dropping response for unknown or expired request %s", frame.id)

    async def _protocol_violation(self, socket: BridgeSocket, reason: str) -> None:
        _log.warning("protocol violation from %s: %s", socket.remote_address, reason)
        await self._close_quietly(socket, const.CLOSE_PROTOCOL_ERROR, reason)
        await self.handle_disconnect(socket)

    @staticmethod
    async def _close_quietly(socket: BridgeSocket, code: int, reason: str) -> None:
        try:
            await socket.close(code, reason)
        except Exception:
            _log.debug("socket close failed", exc_info=True)

    # ------------------------------------------------------------------
    # pairing administration
    # ------------------------------------------------------------------
    async def approve_pairing(self, code: str) -> dict[str, Any]:
        approved = await self.pairing.approve(code)
        await self._deliver_approval(approved)
        return approved.device.public_view()

    async def _deliver_approval(self, approved: ApprovedPairing) -> None:
        socket = approved.socket
        try:
            await socket.send_json(approved.as_frame())
        except Exception:
            _log.warning("could not deliver pairing approval to %s", approved.device.device_id, exc_info=True)
            return
        await self.session.promote(socket, approved.device)

    def list_pending_pairings(self) -> list[dict[str, Any]]:
        return self.pairing.list_pending()

    def list_paired_devices(self) -> list[dict[str, Any]]:
        return self.pairing.list_paired()

    # ------------------------------------------------------------------
    # RPC
    # ------------------------------------------------------------------
    def _clamp_timeout(self, timeout_ms: int | float | None) -> int:
        if timeout_ms is None or timeout_ms <= 0:
            timeout_ms = self.settings.request_timeout_ms
        return int(min(timeout_ms, const.MAX_ACTION_TIMEOUT_MS))

    def _not_connected_message(self) -> str:
        message = (
            "Browser extension is not connected. Make sure the extension is installed, "
            f"its server URL is set to {self.settings.endpoint_url()} and the browser is running."
        )
        codes = self.pairing.pending_codes()
        if codes:
            message += " Pending pairing code(s): " + ", ".join(codes) + ". Approve one to finish pairing."
        return message

    async def send_action(
        self,
        action: str,
        params: dict[str, Any] | None = None,
        timeout_ms: int | float | None = None,
    ) -> Any:
        if not self._running:
            raise BridgeShutdownError("Extension bridge is not running")
        name = (action or "").strip()
        if not name or name not in self.allowed_actions:
            raise UnknownActionError(f"Unknown action: {action!r}")
        timeout = self._clamp_timeout(timeout_ms)

        socket = await self.session.wait_until_ready(self.settings.reconnect_wait_ms / 1000.0)
        if socket is None:
            raise NotConnectedError(self._not_connected_message())

        request_id = str(uuid.uuid4())
        future = self.calls.open(
            request_id,
            timeout / 1000.0,
            lambda _key: RequestTimeoutError(f"Request timed out after {timeout}ms for action: {name}", action=name),
        )
        try:
            await socket.send_json({"id": request_id, "action": name, "params": params or {}})
        except Exception as exc:
            self.calls.discard(request_id)
            raise NotConnectedError(f"Failed to send {name} to the extension: {exc}") from exc
        self.idle.touch()
        try:
            return await future
        except asyncio.CancelledError:
            self.calls.discard(request_id)
            raise

    # ------------------------------------------------------------------
    # status
    # ------------------------------------------------------------------
    def status(self) -> dict[str, Any]:
        device = self.session.device
        return {
            "running": self._running,
            "state": str(self.session.state),
            "connected": self.connected,
            "endpoint": self.settings.endpoint_url(),
            "networkPolicy": str(self.policy),
            "idleTimeoutSeconds": self.settings.idle_timeout_seconds,
            "device": device.public_view() if device is not None else None,
            "pendingPairings": self.pairing.list_pending(),
            "pairedDevices": len(self.store),
            "outstandingCalls": len(self.calls),
            "openSockets": len(self._sockets),
            "startedAt": self._started_at,
            "stopReason": self._stop_reason,
        }


async def _maybe_await(result: Any) -> None:
    if inspect.isawaitable(result):
        await result
