from .enums import ConnectionState, NetworkPolicy
from .errors import (
    ActionFailedError,
    AuthRejectedError,
    BridgeError,
    BridgeShutdownError,
    NotConnectedError,
    PairingExpiredOrUnknownError,
    PolicyDeniedError,
    ProtocolViolationError,
    RequestTimeoutError,
    UnknownActionError,
)
from .gateway import ExtensionBridge
from .transport import BridgeSocket

__all__ = [
    "ExtensionBridge",
    "BridgeSocket",
    "ConnectionState",
    "NetworkPolicy",
    "BridgeError",
    "NotConnectedError",
    "AuthRejectedError",
    "PairingExpiredOrUnknownError",
    "RequestTimeoutError",
    "ProtocolViolationError",
    "PolicyDeniedError",
    "BridgeShutdownError",
    "ActionFailedError",
    "UnknownActionError",
]
