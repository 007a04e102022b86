from __future__ import annotations

import json

import httpx
import pytest

from extbridge.services.bridge.admin_client import BridgeAdminClient, BridgeAdminError
from extbridge.services.bridge_config import BridgeSettings


def _client(handler, **kwargs) -> BridgeAdminClient:
    return BridgeAdminClient(base_url="http://bridge.test", transport=httpx.MockTransport(handler), **kwargs)


def test_status_and_token_header() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["token"] = request.headers.get("X-ExtBridge-Token")
        return httpx.Response(200, json={"state": "connected"})

    assert _client(handler, token="secret").status() == {"state": "connected"}
    assert seen == {"path": "/api/status", "token": "secret"}


def test_lists_unwrap_items() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/pairings":
            return httpx.Response(200, json={"items": [{"code": "ABCDEF"}]})
        return httpx.Response(200, json={"items": [{"deviceId": "d"}]})

    client = _client(handler)
    assert client.pairings() == [{"code": "ABCDEF"}]
    assert client.devices() == [{"deviceId": "d"}]


def test_call_sends_body_and_returns_result() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        assert request.url.path == "/api/actions/call"
        assert body == {"action": "fetch_post", "params": {"url": "u"}, "timeoutMs": 1000}
        return httpx.Response(200, json={"result": {"title": "hello"}})

    assert _client(handler).call("fetch_post", {"url": "u"}, timeout_ms=1000) == {"title": "hello"}


def test_error_detail_is_parsed() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, json={"detail": {"code": "not_connected", "message": "Browser extension is not connected."}})

    with pytest.raises(BridgeAdminError) as excinfo:
        _client(handler).call("get_skill")
    assert excinfo.value.status_code == 503
    assert excinfo.value.error_code == "not_connected"
    assert str(excinfo.value) == "Browser extension is not connected."


def test_unreachable_bridge() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(BridgeAdminError) as excinfo:
        _client(handler).status()
    assert excinfo.value.status_code == 0
    assert excinfo.value.error_code == "unreachable"


def test_from_settings_uses_loopback_for_wildcard_host() -> None:
    client = BridgeAdminClient.from_settings(BridgeSettings(port=7555, admin_token="x"))
    assert client.base_url == "http://127.0.0.1:7555"
    assert client.token == "x"
