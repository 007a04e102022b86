# src/extbridge/config/const.py
from __future__ import annotations

# Hard defaults; runtime values come from BridgeSettings (yaml/env/CLI).
BRIDGE_PORT: int = 7071
BRIDGE_HOST: str = "0.0.0.0"
BRIDGE_PATH: str = "/ws"

# Well-known port of the challenge-response gateway variant.
GATEWAY_PORT: int = 18789

DEFAULT_PAIRING_CODE_TTL_SECONDS: int = 600
DEFAULT_NETWORK_POLICY: str = "private"
NETWORK_POLICIES: tuple[str, ...] = ("loopback", "private", "any")
DEFAULT_IDLE_TIMEOUT_SECONDS: float = 300.0

DEFAULT_REQUEST_TIMEOUT_MS: int = 60_000
MAX_ACTION_TIMEOUT_MS: int = 5 * 60_000
DEFAULT_RECONNECT_WAIT_MS: int = 2_000

DEFAULT_ALLOWED_ACTIONS: tuple[str, ...] = (
    "get_skill",
    "fetch_subreddit",
    "search_reddit",
    "fetch_user_posts",
    "fetch_post",
    "reply_to_comment",
)

# Unambiguous alphabet: no I, O, 0 or 1.
PAIRING_CODE_ALPHABET: str = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
PAIRING_CODE_LENGTH: int = 6

DEVICE_NAME_MAX_LENGTH: int = 64
DEFAULT_DEVICE_NAME: str = "Browser Extension"

TRUST_STORE_VERSION: int = 2

CLOSE_NORMAL: int = 1000
CLOSE_GOING_AWAY: int = 1001
CLOSE_PROTOCOL_ERROR: int = 1002
CLOSE_POLICY_VIOLATION: int = 1008
CLOSE_TRY_AGAIN_LATER: int = 1013

# Client side
CANDIDATE_TIMEOUT_SECONDS: float = 3.0
RECONNECT_BACKOFF_SECONDS: float = 5.0
PROTOCOL_GRACE_SECONDS: float = 0.75
KEEPALIVE_INTERVAL_SECONDS: float = 20.0

GATEWAY_PROTOCOL_VERSION: int = 3
DEVICE_PAYLOAD_VERSION: int = 3
GATEWAY_CLIENT_ID: str = "extbridge-extension"
GATEWAY_CLIENT_MODE: str = "node"
GATEWAY_ROLE: str = "node"
GATEWAY_SCOPES: tuple[str, ...] = ("node.invoke",)
GATEWAY_DEVICE_FAMILY: str = "browser"

ADMIN_TOKEN_HEADER: str = "X-ExtBridge-Token"
