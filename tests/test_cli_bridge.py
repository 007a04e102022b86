from __future__ import annotations

import json
from typing import Any

from typer.testing import CliRunner

from extbridge.apps.cli.commands import bridge as bridge_cmd
from extbridge.apps.cli.main import app
from extbridge.services.bridge import ConnectionState
from extbridge.services.bridge.admin_client import BridgeAdminError
from extbridge.services.bridge.trust_store import PairedDevice

runner = CliRunner()


class _FakeClient:
    def __init__(self) -> None:
        self.calls: list[Any] = []

    def status(self) -> dict[str, Any]:
        return {
            "state": "pairing",
            "endpoint": "ws://localhost:7071/ws",
            "networkPolicy": "private",
            "device": None,
            "pairedDevices": 0,
            "pendingPairings": [{"code": "ABCDEF", "deviceName": "Chrome", "expiresAt": "later"}],
        }

    def pairings(self) -> list[dict[str, Any]]:
        return []

    def approve(self, code: str) -> dict[str, Any]:
        self.calls.append(("approve", code))
        return {"ok": True, "device": {"deviceId": "dev-1", "deviceName": "Chrome"}}

    def call(self, action: str, params: dict[str, Any], *, timeout_ms: int | None = None) -> Any:
        self.calls.append(("call", action, params, timeout_ms))
        if action == "get_skill":
            raise BridgeAdminError("Browser extension is not connected.", status_code=503, error_code="not_connected")
        return {"ok": 1}


def _patch(monkeypatch, client: _FakeClient) -> None:
    monkeypatch.setattr(bridge_cmd, "_client", lambda config, url, token: client)


def test_status_lists_pending_codes(monkeypatch) -> None:
    _patch(monkeypatch, _FakeClient())
    result = runner.invoke(app, ["status"])
    assert result.exit_code == 0
    assert "State: pairing" in result.output
    assert "ABCDEF" in result.output


def test_approve_and_call(monkeypatch) -> None:
    client = _FakeClient()
    _patch(monkeypatch, client)

    result = runner.invoke(app, ["approve", "abcdef"])
    assert result.exit_code == 0
    assert "Paired Chrome" in result.output

    result = runner.invoke(app, ["call", "fetch_post", "--params", '{"url": "u"}', "--timeout-ms", "500"])
    assert result.exit_code == 0
    assert json.loads(result.output) == {"ok": 1}
    assert ("call", "fetch_post", {"url": "u"}, 500) in client.calls


def test_call_errors_exit_nonzero(monkeypatch) -> None:
    _patch(monkeypatch, _FakeClient())
    assert runner.invoke(app, ["call", "get_skill"]).exit_code == 1
    assert runner.invoke(app, ["call", "fetch_post", "--params", "[1, 2]"]).exit_code == 2
    assert runner.invoke(app, ["call", "fetch_post", "--params", "{bad"]).exit_code == 2


def test_empty_pairings(monkeypatch) -> None:
    _patch(monkeypatch, _FakeClient())
    result = runner.invoke(app, ["pairings"])
    assert result.exit_code == 0
    assert "No pending pairings." in result.output


def test_serve_rejects_unknown_policy() -> None:
    assert runner.invoke(app, ["serve", "--policy", "public"]).exit_code == 2


def test_version_flag() -> None:
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert result.output.startswith("extbridge ")


def test_serve_echoes_state_changes(capsys) -> None:
    device = PairedDevice(
        device_id="dev-1",
        device_name="Chrome",
        auth_token_hash="x",
        approved_at="a",
        last_seen_at="a",
    )
    bridge_cmd._echo_state(ConnectionState.CONNECTED, device)
    bridge_cmd._echo_state(ConnectionState.DISCONNECTED, None)
    assert capsys.readouterr().out.splitlines() == [
        "Bridge state: connected (Chrome)",
        "Bridge state: disconnected",
    ]
