from __future__ import annotations

from typing import Any

import pytest

from extbridge.services.bridge import ExtensionBridge
from extbridge.services.bridge_config import BridgeSettings


@pytest.fixture
def anyio_backend():
    return "asyncio"


class FakeSocket:
    """In-memory stand-in for an accepted extension WebSocket."""

    def __init__(self, remote_address: str = "127.0.0.1") -> None:
        self.remote_address = remote_address
        self.sent: list[dict[str, Any]] = []
        self.closed: tuple[int, str] | None = None

    @property
    def is_open(self) -> bool:
        return self.closed is None

    async def send_json(self, payload: dict[str, Any]) -> None:
        if self.closed is not None:
            raise ConnectionError("socket closed")
        self.sent.append(payload)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self.closed is None:
            self.closed = (code, reason)

    def frames(self, frame_type: str) -> list[dict[str, Any]]:
        return [frame for frame in self.sent if frame.get("type") == frame_type]

    def requests(self) -> list[dict[str, Any]]:
        return [frame for frame in self.sent if "action" in frame]


@pytest.fixture
def make_socket():
    return FakeSocket


@pytest.fixture
def bridge_settings(tmp_path):
    return BridgeSettings(
        pairing_store_path=str(tmp_path / "state" / "paired-devices.json"),
        idle_timeout_seconds=0,
        reconnect_wait_ms=200,
        network_policy="private",
    )


@pytest.fixture
async def bridge(bridge_settings):
    instance = ExtensionBridge(bridge_settings)
    await instance.start()
    try:
        yield instance
    finally:
        await instance.stop("test teardown")
