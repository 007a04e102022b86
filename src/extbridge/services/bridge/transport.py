from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

__all__ = ["BridgeSocket"]


@runtime_checkable
class BridgeSocket(Protocol):
    """What the bridge needs from an accepted extension connection."""

    @property
    def remote_address(self) -> str: ...

    @property
    def is_open(self) -> bool: ...

    async def send_json(self, payload: dict[str, Any]) -> None: ...

    async def close(self, code: int = 1000, reason: str = "") -> None: ...
