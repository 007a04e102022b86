"""Enumerations describing bridge and client connection states."""
from __future__ import annotations

from enum import Enum

__all__ = ["ConnectionState", "NetworkPolicy", "ClientState", "WireProtocol"]


class _StrEnum(str, Enum):
    """Simple ``str``-backed enum compatible with Python 3.10."""

    def __str__(self) -> str:  # pragma: no cover - convenience for logging only
        return str(self.value)


class ConnectionState(_StrEnum):
    DISCONNECTED = "disconnected"
    PAIRING = "pairing"
    CONNECTED = "connected"


class NetworkPolicy(_StrEnum):
    LOOPBACK = "loopback"
    PRIVATE = "private"
    ANY = "any"


class ClientState(_StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    HANDSHAKING = "handshaking"
    PAIRING = "pairing"
    CONNECTED = "connected"


class WireProtocol(_StrEnum):
    BRIDGE = "bridge"
    GATEWAY = "gateway"
