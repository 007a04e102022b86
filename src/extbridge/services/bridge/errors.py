"""Error taxonomy for the extension bridge."""

from __future__ import annotations

__all__ = [
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


class BridgeError(RuntimeError):
    """Base class for bridge failures surfaced to callers."""

    error_code = "bridge_error"

    def __init__(self, message: str, *, error_code: str | None = None) -> None:
        super().__init__(message)
        if error_code is not None:
            self.error_code = error_code

    def as_dict(self) -> dict[str, str]:
        return {"code": self.error_code, "message": str(self)}


class NotConnectedError(BridgeError):
    """No authoritative extension socket is available."""

    error_code = "not_connected"


class AuthRejectedError(BridgeError):
    """Bad or missing token/signature; the device has to pair again."""

    error_code = "auth_rejected"

    def __init__(self, message: str, *, hint: str | None = None, error_code: str | None = None) -> None:
        super().__init__(message, error_code=error_code)
        self.hint = hint


class PairingExpiredOrUnknownError(BridgeError):
    """Stale, unknown or garbled pairing code."""

    error_code = "pairing_unknown"


class RequestTimeoutError(BridgeError):
    """The extension did not answer before the call's deadline."""

    error_code = "timeout"

    def __init__(self, message: str, *, action: str | None = None) -> None:
        super().__init__(message)
        self.action = action


class ProtocolViolationError(BridgeError):
    """A peer sent a frame that does not match any accepted shape."""

    error_code = "protocol_violation"


class PolicyDeniedError(BridgeError):
    """The remote address is not allowed by the network policy."""

    error_code = "policy_denied"


class BridgeShutdownError(BridgeError):
    """The bridge stopped while the call was still outstanding."""

    error_code = "shutdown"


class ActionFailedError(BridgeError):
    """The extension executed the action and reported an error."""

    error_code = "action_failed"


class UnknownActionError(BridgeError):
    """The action name is empty or not in the allow-list."""

    error_code = "unknown_action"
