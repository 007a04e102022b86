"""Wire frames exchanged with the extension over the bridge protocol.

Frames are validated before any field is read. Anything that does not match
a known shape raises :class:`ProtocolViolationError`.
"""
from __future__ import annotations

import json
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from .errors import ProtocolViolationError

__all__ = [
    "IdentifyFrame",
    "PingFrame",
    "PongFrame",
    "ResponseFrame",
    "ActionRequestFrame",
    "PairingRequiredFrame",
    "PairingApprovedFrame",
    "IdentifiedFrame",
    "InboundFrame",
    "ServerFrame",
    "decode_json",
    "parse_inbound",
    "parse_server_frame",
    "error_message",
]


class _Frame(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class IdentifyFrame(_Frame):
    type: Literal["identify"]
    role: Literal["extension"] = "extension"
    device_id: str = Field(alias="deviceId", min_length=1, max_length=256)
    device_name: Optional[str] = Field(default=None, alias="deviceName")
    auth_token: Optional[str] = Field(default=None, alias="authToken")


class PingFrame(_Frame):
    type: Literal["ping"]


class PongFrame(_Frame):
    type: Literal["pong"]


class ResponseFrame(_Frame):
    id: str = Field(min_length=1)
    success: bool
    data: Any = None
    error: Any = None


class ActionRequestFrame(_Frame):
    id: str = Field(min_length=1)
    action: str = Field(min_length=1)
    params: dict[str, Any] = Field(default_factory=dict)


class PairingRequiredFrame(_Frame):
    type: Literal["pairing_required"]
    code: str
    device_id: str = Field(alias="deviceId")
    device_name: str = Field(alias="deviceName")
    requested_at: str = Field(alias="requestedAt")
    expires_at: str = Field(alias="expiresAt")


class PairingApprovedFrame(_Frame):
    type: Literal["pairing_approved"]
    device_id: str = Field(alias="deviceId")
    device_name: str = Field(alias="deviceName")
    auth_token: str = Field(alias="authToken", min_length=1)


class IdentifiedFrame(_Frame):
    type: Literal["identified"]
    device_id: str = Field(alias="deviceId")
    device_name: str = Field(alias="deviceName")


_TypedInbound = Annotated[Union[IdentifyFrame, PingFrame, PongFrame], Field(discriminator="type")]
_TypedServer = Annotated[
    Union[PairingRequiredFrame, PairingApprovedFrame, IdentifiedFrame, PingFrame, PongFrame],
    Field(discriminator="type"),
]
_inbound_adapter: TypeAdapter = TypeAdapter(_TypedInbound)
_server_adapter: TypeAdapter = TypeAdapter(_TypedServer)

InboundFrame = Union[IdentifyFrame, PingFrame, PongFrame, ResponseFrame]
ServerFrame = Union[PairingRequiredFrame, PairingApprovedFrame, IdentifiedFrame, PingFrame, PongFrame, ActionRequestFrame]


def decode_json(raw: str | bytes) -> dict[str, Any]:
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError, UnicodeDecodeError) as exc:
        raise ProtocolViolationError("malformed JSON") from exc
    if not isinstance(payload, dict):
        raise ProtocolViolationError("frame must be a JSON object")
    return payload


def parse_inbound(raw: str | bytes) -> InboundFrame:
    """Parse a frame sent by the extension to the bridge."""

    payload = decode_json(raw)
    try:
        if "type" in payload:
            return _inbound_adapter.validate_python(payload)
        if "action" in payload:
            raise ProtocolViolationError("unexpected action frame")
        if "id" in payload and "success" in payload:
            return ResponseFrame.model_validate(payload)
    except ValidationError as exc:
        raise ProtocolViolationError("unknown frame shape") from exc
    raise ProtocolViolationError("unknown frame shape")


def parse_server_frame(payload: dict[str, Any]) -> ServerFrame:
    """Parse a frame sent by the bridge to the extension."""

    try:
        if "type" in payload:
            return _server_adapter.validate_python(payload)
        if "action" in payload:
            return ActionRequestFrame.model_validate(payload)
    except ValidationError as exc:
        raise ProtocolViolationError("unknown frame shape") from exc
    raise ProtocolViolationError("unknown frame shape")


def error_message(error: Any) -> str:
    if isinstance(error, str) and error:
        return error
    if isinstance(error, dict):
        message = error.get("message")
        if isinstance(message, str) and message:
            return message
    if error is None:
        return "action failed"
    return json.dumps(error, ensure_ascii=False)
