from .candidates import build_candidates
from .connection import ClientConnection, TransportClosed, WebSocketTransport, websocket_connector
from .identity import DeviceIdentity, DeviceIdentityStore
from .protocols import BridgeProtocol, GatewayProtocol, build_device_payload

__all__ = [
    "build_candidates",
    "build_device_payload",
    "BridgeProtocol",
    "ClientConnection",
    "DeviceIdentity",
    "DeviceIdentityStore",
    "GatewayProtocol",
    "TransportClosed",
    "WebSocketTransport",
    "websocket_connector",
]
