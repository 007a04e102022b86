"""Wire adapters used by the client once a socket is open.

Two servers speak to the extension: the local bridge (``identify`` / pairing
codes / ``{id, action, params}`` requests) and a challenge-response gateway
(``connect.challenge`` event, signed ``connect`` request, ``req``/``res``
frames). A connection pins exactly one adapter for its whole life.
"""
from __future__ import annotations

import logging
import platform as _platform
import time
import uuid
from typing import TYPE_CHECKING, Any, Literal, Sequence

from pydantic import BaseModel, Field, ValidationError

from extbridge.build_info import BUILD_INFO
from extbridge.config import const
from extbridge.services.bridge.enums import ClientState, WireProtocol
from extbridge.services.bridge.errors import AuthRejectedError, ProtocolViolationError
from extbridge.services.bridge.frames import (
    ActionRequestFrame,
    IdentifiedFrame,
    PairingApprovedFrame,
    PairingRequiredFrame,
    PingFrame,
    error_message,
    parse_server_frame,
)

if TYPE_CHECKING:
    from .connection import ClientConnection

__all__ = [
    "BridgeProtocol",
    "GatewayProtocol",
    "build_device_payload",
    "is_connect_challenge",
]

_log = logging.getLogger("extbridge.client.protocol")

_SIGNATURE_ERROR_CODES = frozenset({"INVALID_SIGNATURE", "DEVICE_SIGNATURE_INVALID", "SIGNATURE_INVALID"})


def build_device_payload(
    *,
    version: int,
    device_id: str,
    client_id: str,
    client_mode: str,
    role: str,
    scopes: Sequence[str],
    signed_at_ms: int,
    token: str | None,
    nonce: str,
    platform: str = "",
    device_family: str = "",
) -> str:
    """Pipe-joined string the device key signs during the gateway handshake."""

    if version not in (2, 3):
        raise ValueError(f"unsupported payload version: {version}")
    parts = [
        f"v{version}",
        device_id,
        client_id,
        client_mode,
        role,
        ",".join(scopes),
        str(signed_at_ms),
        token or "",
        nonce,
    ]
    if version == 3:
        parts.extend([(platform or "").strip().lower(), (device_family or "").strip().lower()])
    return "|".join(parts)


class GatewayEvent(BaseModel):
    type: Literal["event"]
    event: str
    payload: dict[str, Any] = Field(default_factory=dict)


class GatewayRequest(BaseModel):
    type: Literal["req"]
    id: str = Field(min_length=1)
    method: str = Field(min_length=1)
    params: dict[str, Any] = Field(default_factory=dict)


class GatewayResponse(BaseModel):
    type: Literal["res"]
    id: str
    ok: bool
    payload: Any = None
    error: Any = None


def is_connect_challenge(frame: dict[str, Any] | None) -> bool:
    return (
        isinstance(frame, dict)
        and frame.get("type") == "event"
        and frame.get("event") == "connect.challenge"
    )


class BridgeProtocol:
    kind = WireProtocol.BRIDGE
    uses_keepalive = True

    def __init__(self, connection: "ClientConnection") -> None:
        self._conn = connection

    async def start(self) -> None:
        identity = self._conn.identity
        frame: dict[str, Any] = {
            "type": "identify",
            "role": "extension",
            "deviceId": identity.device_id,
            "deviceName": identity.device_name,
        }
        if identity.auth_token:
            frame["authToken"] = identity.auth_token
        await self._conn.send_json(frame)

    async def handle(self, payload: dict[str, Any]) -> None:
        try:
            frame = parse_server_frame(payload)
        except ProtocolViolationError:
            _log.warning("ignoring unrecognized frame from bridge: %s", sorted(payload))
            return

        if isinstance(frame, PairingRequiredFrame):
            if self._conn.identity.auth_token:
                _log.warning("stored auth token was not accepted, pairing again")
                self._conn.identity.auth_token = None
                self._conn.save_identity()
            self._conn.pairing_code = frame.code
            _log.info("pairing required, approve code %s (expires %s)", frame.code, frame.expires_at)
            self._conn.set_state(ClientState.PAIRING)
        elif isinstance(frame, PairingApprovedFrame):
            self._conn.identity.auth_token = frame.auth_token
            self._conn.save_identity()
            self._conn.pairing_code = None
            self._conn.set_state(ClientState.CONNECTED)
        elif isinstance(frame, IdentifiedFrame):
            self._conn.pairing_code = None
            self._conn.set_state(ClientState.CONNECTED)
        elif isinstance(frame, PingFrame):
            await self._conn.send_json({"type": "pong"})
        elif isinstance(frame, ActionRequestFrame):
            self._conn.dispatch(frame.action, frame.params, self._reply_builder(frame.id))

    @staticmethod
    def _reply_builder(request_id: str):
        def build(ok: bool, result: Any) -> dict[str, Any]:
            if ok:
                return {"id": request_id, "success": True, "data": result}
            return {"id": request_id, "success": False, "error": result}

        return build


class GatewayProtocol:
    kind = WireProtocol.GATEWAY
    uses_keepalive = False

    def __init__(
        self,
        connection: "ClientConnection",
        *,
        scopes: Sequence[str] = const.GATEWAY_SCOPES,
        platform: str | None = None,
        device_family: str = const.GATEWAY_DEVICE_FAMILY,
        clock=time.time,
    ) -> None:
        self._conn = connection
        self._scopes = list(scopes)
        self._platform = platform if platform is not None else _platform.system()
        self._device_family = device_family
        self._clock = clock
        self._nonce: str | None = None
        self._connect_id: str | None = None
        self._version = const.DEVICE_PAYLOAD_VERSION
        self._fallback_tried = False

    async def start(self, challenge: dict[str, Any]) -> None:
        try:
            event = GatewayEvent.model_validate(challenge)
        except ValidationError as exc:
            raise ProtocolViolationError("malformed connect.challenge") from exc
        nonce = event.payload.get("nonce")
        if not isinstance(nonce, str) or not nonce:
            raise ProtocolViolationError("connect.challenge without nonce")
        self._nonce = nonce
        self._fallback_tried = False
        self._version = const.DEVICE_PAYLOAD_VERSION
        await self._send_connect()

    def _connect_frame(self) -> dict[str, Any]:
        identity = self._conn.identity
        signed_at = int(self._clock() * 1000)
        token = identity.gateway_token
        payload = build_device_payload(
            version=self._version,
            device_id=identity.device_id,
            client_id=const.GATEWAY_CLIENT_ID,
            client_mode=const.GATEWAY_CLIENT_MODE,
            role=const.GATEWAY_ROLE,
            scopes=self._scopes,
            signed_at_ms=signed_at,
            token=token,
            nonce=self._nonce or "",
            platform=self._platform,
            device_family=self._device_family,
        )
        self._connect_id = str(uuid.uuid4())
        return {
            "type": "req",
            "id": self._connect_id,
            "method": "connect",
            "params": {
                "minProtocol": const.GATEWAY_PROTOCOL_VERSION,
                "maxProtocol": const.GATEWAY_PROTOCOL_VERSION,
                "client": {
                    "id": const.GATEWAY_CLIENT_ID,
                    "displayName": identity.device_name,
                    "version": BUILD_INFO.version,
                    "platform": self._platform.lower(),
                    "deviceFamily": self._device_family.lower(),
                    "mode": const.GATEWAY_CLIENT_MODE,
                },
                "role": const.GATEWAY_ROLE,
                "scopes": self._scopes,
                "auth": {"token": token} if token else {},
                "device": {
                    "id": identity.device_id,
                    "publicKey": identity.public_key,
                    "signature": identity.sign(payload),
                    "signedAt": signed_at,
                    "nonce": self._nonce,
                },
            },
        }

    async def _send_connect(self) -> None:
        await self._conn.send_json(self._connect_frame())

    async def handle(self, payload: dict[str, Any]) -> None:
        kind = payload.get("type")
        try:
            if kind == "res":
                await self._on_response(GatewayResponse.model_validate(payload))
            elif kind == "req":
                self._on_request(GatewayRequest.model_validate(payload))
            elif kind == "event":
                event = GatewayEvent.model_validate(payload)
                if event.event == "connect.challenge":
                    # a fresh challenge restarts the handshake on the same adapter
                    await self.start(payload)
                else:
                    _log.debug("gateway event %s", event.event)
            else:
                _log.warning("ignoring unrecognized gateway frame type %r", kind)
        except ValidationError:
            _log.warning("ignoring malformed gateway frame of type %r", kind)

    async def _on_response(self, frame: GatewayResponse) -> None:
        if frame.id != self._connect_id:
            _log.debug("ignoring response for unknown request %s", frame.id)
            return
        if frame.ok:
            self._connect_id = None
            auth = frame.payload.get("auth") if isinstance(frame.payload, dict) else None
            device_token = auth.get("deviceToken") if isinstance(auth, dict) else None
            if isinstance(device_token, str) and device_token:
                self._conn.identity.gateway_token = device_token
                self._conn.save_identity()
            self._conn.set_state(ClientState.CONNECTED)
            return

        error = frame.error
        code = str(error.get("code") or "") if isinstance(error, dict) else ""
        message = error_message(error) if error else "connect rejected"
        if _is_signature_error(code, message) and not self._fallback_tried:
            self._fallback_tried = True
            self._version = 2 if self._version == 3 else 3
            _log.info("gateway rejected the signature, retrying with payload v%d", self._version)
            await self._send_connect()
            return
        self._connect_id = None
        raise AuthRejectedError(
            f"Gateway rejected the connection: {message}",
            hint="Approve this device on the gateway (pairing required) and reconnect.",
            error_code=code.lower() or None,
        )

    def _on_request(self, frame: GatewayRequest) -> None:
        if self._conn.state is not ClientState.CONNECTED:
            _log.warning("gateway request %s before connect completed", frame.method)
        self._conn.dispatch(frame.method, frame.params, self._reply_builder(frame.id))

    @staticmethod
    def _reply_builder(request_id: str):
        def build(ok: bool, result: Any) -> dict[str, Any]:
            if ok:
                return {"type": "res", "id": request_id, "ok": True, "payload": result}
            return {
                "type": "res",
                "id": request_id,
                "ok": False,
                "error": {"code": "ACTION_FAILED", "message": str(result)},
            }

        return build


def _is_signature_error(code: str, message: str) -> bool:
    if code.upper() in _SIGNATURE_ERROR_CODES:
        return True
    lowered = message.lower()
    return "signature" in lowered and "invalid" in lowered
