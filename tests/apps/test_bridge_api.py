from __future__ import annotations

from typing import Any, List

import pytest
from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient
from starlette.requests import Request
from starlette.websockets import WebSocketDisconnect

from extbridge.apps.api import bridge_api
from extbridge.apps.api.auth import require_local_admin
from extbridge.apps.api.server import create_app
from extbridge.services.bridge import (
    ActionFailedError,
    NotConnectedError,
    PairingExpiredOrUnknownError,
    RequestTimeoutError,
    UnknownActionError,
)
from extbridge.services.bridge_config import BridgeSettings


class _FakeBridge:
    def __init__(self) -> None:
        self.calls: List[str] = []
        self.raise_on_call: Exception | None = None
        self.raise_on_approve: Exception | None = None

    def status(self) -> dict[str, Any]:
        return {"state": "disconnected", "connected": False}

    def list_pending_pairings(self) -> list[dict[str, Any]]:
        return [{"code": "ABCDEF", "deviceId": "dev-1"}]

    def list_paired_devices(self) -> list[dict[str, Any]]:
        return [{"deviceId": "dev-1", "deviceName": "Chrome"}]

    async def approve_pairing(self, code: str) -> dict[str, Any]:
        self.calls.append(f"approve:{code}")
        if self.raise_on_approve is not None:
            raise self.raise_on_approve
        return {"deviceId": "dev-1", "deviceName": "Chrome"}

    async def send_action(self, action: str, params: dict[str, Any], timeout_ms: int | None = None) -> Any:
        self.calls.append(f"call:{action}:{timeout_ms}")
        if self.raise_on_call is not None:
            raise self.raise_on_call
        return {"action": action, "params": params}


def _make_client(bridge: _FakeBridge) -> TestClient:
    app = FastAPI()
    app.include_router(bridge_api.router, prefix="/api")
    app.dependency_overrides[require_local_admin] = lambda: None
    app.dependency_overrides[bridge_api.get_bridge] = lambda: bridge
    return TestClient(app)


def test_admin_routes_expose_bridge_state() -> None:
    bridge = _FakeBridge()
    client = _make_client(bridge)

    resp = client.get("/api/status")
    assert resp.status_code == 200
    assert resp.json()["state"] == "disconnected"
    assert "version" in resp.json()

    assert client.get("/api/pairings").json()["items"][0]["code"] == "ABCDEF"
    assert client.get("/api/devices").json()["items"][0]["deviceId"] == "dev-1"

    resp = client.post("/api/pairings/approve", json={"code": "abc-def"})
    assert resp.status_code == 200
    assert resp.json() == {"ok": True, "device": {"deviceId": "dev-1", "deviceName": "Chrome"}}
    assert "approve:abc-def" in bridge.calls


def test_action_call_passes_timeout() -> None:
    bridge = _FakeBridge()
    client = _make_client(bridge)

    resp = client.post("/api/actions/call", json={"action": "fetch_post", "params": {"url": "u"}, "timeoutMs": 1500})
    assert resp.status_code == 200
    assert resp.json()["result"] == {"action": "fetch_post", "params": {"url": "u"}}
    assert "call:fetch_post:1500" in bridge.calls

    resp = client.get("/api/actions/schema")
    assert resp.status_code == 200
    assert resp.json()["result"]["action"] == "get_skill"


@pytest.mark.parametrize(
    "error, status_code, code",
    [
        (NotConnectedError("Browser extension is not connected."), 503, "not_connected"),
        (RequestTimeoutError("Request timed out after 10ms for action: fetch_post"), 504, "timeout"),
        (UnknownActionError("unknown action"), 400, "unknown_action"),
        (ActionFailedError("boom"), 502, "action_failed"),
    ],
)
def test_bridge_errors_map_to_http_status(error, status_code, code) -> None:
    bridge = _FakeBridge()
    bridge.raise_on_call = error
    client = _make_client(bridge)

    resp = client.post("/api/actions/call", json={"action": "fetch_post"})
    assert resp.status_code == status_code
    assert resp.json()["detail"] == {"code": code, "message": str(error)}


def test_unknown_pairing_code_is_404() -> None:
    bridge = _FakeBridge()
    bridge.raise_on_approve = PairingExpiredOrUnknownError("Pairing code is unknown or expired")
    client = _make_client(bridge)

    resp = client.post("/api/pairings/approve", json={"code": "ZZZZZZ"})
    assert resp.status_code == 404
    assert resp.json()["detail"]["code"] == "pairing_unknown"


def test_invalid_call_body_is_rejected() -> None:
    client = _make_client(_FakeBridge())
    assert client.post("/api/actions/call", json={"action": ""}).status_code == 422
    assert client.post("/api/actions/call", json={"action": "x", "timeoutMs": 0}).status_code == 422


def _request(host: str, app: FastAPI) -> Request:
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/api/status",
        "headers": [],
        "client": (host, 50000),
        "app": app,
    }
    return Request(scope)


@pytest.mark.anyio
async def test_admin_auth_requires_loopback_and_token() -> None:
    app = FastAPI()
    app.state.settings = BridgeSettings(admin_token="secret")

    with pytest.raises(HTTPException) as excinfo:
        await require_local_admin(_request("192.168.1.20", app), x_extbridge_token="secret")
    assert excinfo.value.status_code == 403

    with pytest.raises(HTTPException) as excinfo:
        await require_local_admin(_request("127.0.0.1", app), x_extbridge_token="wrong")
    assert excinfo.value.status_code == 401

    with pytest.raises(HTTPException):
        await require_local_admin(_request("127.0.0.1", app), x_extbridge_token=None)

    assert await require_local_admin(_request("::1", app), x_extbridge_token="secret") is None

    app.state.settings = BridgeSettings()
    assert await require_local_admin(_request("127.0.0.1", app), x_extbridge_token=None) is None


@pytest.fixture
def app_settings(tmp_path) -> BridgeSettings:
    # TestClient connects from the host name "testclient"
    return BridgeSettings(
        pairing_store_path=str(tmp_path / "paired-devices.json"),
        idle_timeout_seconds=0,
        network_policy="any",
        reconnect_wait_ms=0,
    )


def test_health_endpoint(app_settings) -> None:
    with TestClient(create_app(app_settings)) as client:
        resp = client.get("/health/live")
        assert resp.status_code == 200
        body = resp.json()
        assert body["ok"] is True
        assert body["running"] is True
        assert "version" in body["extbridge"]


def test_admin_api_refuses_non_loopback_clients(app_settings) -> None:
    with TestClient(create_app(app_settings)) as client:
        resp = client.get("/api/status")
        assert resp.status_code == 403
        assert resp.json()["detail"]["code"] == "policy_denied"


def test_websocket_pairing_over_http(app_settings) -> None:
    app = create_app(app_settings)
    app.dependency_overrides[require_local_admin] = lambda: None

    with TestClient(app) as client:
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "identify", "role": "extension", "deviceId": "dev-9", "deviceName": "Firefox"})
            required = ws.receive_json()
            assert required["type"] == "pairing_required"
            assert required["deviceId"] == "dev-9"

            pending = client.get("/api/pairings").json()["items"]
            assert [item["code"] for item in pending] == [required["code"]]

            resp = client.post("/api/pairings/approve", json={"code": required["code"]})
            assert resp.status_code == 200
            assert resp.json()["device"]["deviceId"] == "dev-9"

            approved = ws.receive_json()
            assert approved["type"] == "pairing_approved"
            assert approved["authToken"]

            status = client.get("/api/status").json()
            assert status["state"] == "connected"
            assert status["device"]["deviceName"] == "Firefox"

            ws.send_json({"type": "ping"})
            assert ws.receive_json() == {"type": "pong"}

        devices = client.get("/api/devices").json()["items"]
        assert devices[0]["deviceId"] == "dev-9"
        assert "authTokenHash" not in devices[0]


def test_root_path_also_accepts_extension(app_settings) -> None:
    with TestClient(create_app(app_settings)) as client:
        with client.websocket_connect("/") as ws:
            ws.send_json({"type": "ping"})
            assert ws.receive_json() == {"type": "pong"}


def test_network_policy_rejects_before_accept(app_settings) -> None:
    app_settings.network_policy = "private"
    with TestClient(create_app(app_settings)) as client:
        with pytest.raises(WebSocketDisconnect) as excinfo:
            with client.websocket_connect("/ws"):
                pass
        assert excinfo.value.code == 1008


def test_malformed_frame_closes_with_protocol_error(app_settings) -> None:
    with TestClient(create_app(app_settings)) as client:
        with client.websocket_connect("/ws") as ws:
            ws.send_text("{not json")
            with pytest.raises(WebSocketDisconnect) as excinfo:
                ws.receive_json()
            assert excinfo.value.code == 1002
