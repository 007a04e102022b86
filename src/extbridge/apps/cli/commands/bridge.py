"""Bridge CLI commands: run the service and talk to a running instance."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer
import uvicorn

from extbridge.apps.api.server import create_app
from extbridge.config import const
from extbridge.services.bridge import ConnectionState, ExtensionBridge
from extbridge.services.bridge.trust_store import PairedDevice
from extbridge.services.bridge.admin_client import BridgeAdminClient, BridgeAdminError
from extbridge.services.bridge_config import BridgeSettings, load_settings
from extbridge.services.logging import setup_logging

app = typer.Typer(help="Local WebSocket bridge between an orchestration caller and the browser extension.")

_log = logging.getLogger("extbridge.cli")


def _print_error(message: str) -> None:
    typer.secho(message, fg=typer.colors.RED, err=True)


def _settings(config: Optional[Path]) -> BridgeSettings:
    return load_settings(config)


def _client(config: Optional[Path], url: Optional[str], token: Optional[str]) -> BridgeAdminClient:
    client = BridgeAdminClient.from_settings(_settings(config))
    if url:
        client.base_url = url.rstrip("/")
    if token:
        client.token = token
    return client


def _echo_table(headers: List[str], rows: List[List[Any]]) -> None:
    widths = [max(len(str(row[i])) for row in [headers] + rows) for i in range(len(headers))]
    typer.echo("  ".join(headers[i].ljust(widths[i]) for i in range(len(headers))))
    typer.echo("  ".join("-" * widths[i] for i in range(len(headers))))
    for row in rows:
        typer.echo("  ".join(str(row[i]).ljust(widths[i]) for i in range(len(headers))))


def _echo_json(payload: Any) -> None:
    typer.echo(json.dumps(payload, ensure_ascii=False, indent=2))


_CONFIG_OPTION = typer.Option(None, "--config", help="Path to bridge.yaml (default: ~/.extbridge/bridge.yaml).")
_URL_OPTION = typer.Option(None, "--url", help="Admin base URL of the running bridge, e.g. http://127.0.0.1:7071.")
_TOKEN_OPTION = typer.Option(None, "--token", help="X-ExtBridge-Token; falls back to admin_token from the config.")


def _echo_state(state: ConnectionState, device: Optional[PairedDevice]) -> None:
    suffix = f" ({device.device_name})" if device is not None else ""
    typer.echo(f"Bridge state: {state}{suffix}")


async def _serve(settings: BridgeSettings) -> None:
    bridge = ExtensionBridge(settings, on_idle_shutdown=lambda: _log.info("idle shutdown complete, exiting"))
    bridge.add_state_listener(_echo_state)
    application = create_app(settings, bridge)
    config = uvicorn.Config(
        application,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )
    server = uvicorn.Server(config)

    def _close_listener() -> None:
        server.should_exit = True

    bridge.attach_listener(_close_listener)
    await server.serve()


@app.command("serve")
def serve(
    host: Optional[str] = typer.Option(None, "--host"),
    port: Optional[int] = typer.Option(None, "--port"),
    path: Optional[str] = typer.Option(None, "--path", help="WebSocket path for the extension."),
    policy: Optional[str] = typer.Option(None, "--policy", help="Network policy: loopback, private or any."),
    pairing_ttl: Optional[int] = typer.Option(None, "--pairing-ttl", help="Pairing code lifetime in seconds."),
    store: Optional[Path] = typer.Option(None, "--store", help="Paired devices file."),
    idle_timeout: Optional[float] = typer.Option(None, "--idle-timeout", help="Stop after N idle seconds; 0 disables."),
    log_level: Optional[str] = typer.Option(None, "--log-level"),
    log_file: Optional[Path] = typer.Option(None, "--log-file"),
    config: Optional[Path] = _CONFIG_OPTION,
):
    """Run the bridge (extension WebSocket plus loopback admin API)."""
    if policy is not None and policy not in const.NETWORK_POLICIES:
        raise typer.BadParameter(f"policy must be one of: {', '.join(const.NETWORK_POLICIES)}", param_hint="--policy")
    settings = _settings(config).with_overrides(
        host=host,
        port=port,
        path=path,
        network_policy=policy,
        pairing_code_ttl_seconds=pairing_ttl,
        pairing_store_path=str(store) if store else None,
        idle_timeout_seconds=idle_timeout,
        log_level=log_level,
        log_file=str(log_file) if log_file else None,
    )
    setup_logging(settings.log_level, log_file=settings.log_file)
    typer.echo(f"Extension endpoint: {settings.endpoint_url()}")
    typer.echo(f"Admin API: {settings.admin_base_url()}/api (loopback only)")
    try:
        asyncio.run(_serve(settings))
    except KeyboardInterrupt:
        pass


@app.command("status")
def status(
    json_output: bool = typer.Option(False, "--json"),
    url: Optional[str] = _URL_OPTION,
    token: Optional[str] = _TOKEN_OPTION,
    config: Optional[Path] = _CONFIG_OPTION,
):
    """Show connection state of a running bridge."""
    try:
        payload = _client(config, url, token).status()
    except BridgeAdminError as exc:
        _print_error(str(exc))
        raise typer.Exit(1)
    if json_output:
        _echo_json(payload)
        return
    device = payload.get("device") or {}
    typer.echo(f"State: {payload.get('state')}")
    typer.echo(f"Endpoint: {payload.get('endpoint')}")
    typer.echo(f"Network policy: {payload.get('networkPolicy')}")
    if device:
        typer.echo(f"Device: {device.get('deviceName')} ({device.get('deviceId')})")
    typer.echo(f"Paired devices: {payload.get('pairedDevices', 0)}")
    pending = payload.get("pendingPairings") or []
    if pending:
        typer.secho("Pending pairing codes:", fg=typer.colors.YELLOW)
        for item in pending:
            typer.echo(f"  {item.get('code')}  {item.get('deviceName')}  expires {item.get('expiresAt')}")


@app.command("pairings")
def pairings(
    json_output: bool = typer.Option(False, "--json"),
    url: Optional[str] = _URL_OPTION,
    token: Optional[str] = _TOKEN_OPTION,
    config: Optional[Path] = _CONFIG_OPTION,
):
    """List pending pairing requests."""
    try:
        items = _client(config, url, token).pairings()
    except BridgeAdminError as exc:
        _print_error(str(exc))
        raise typer.Exit(1)
    if json_output:
        _echo_json(items)
        return
    if not items:
        typer.echo("No pending pairings.")
        return
    _echo_table(
        ["Code", "Device", "Address", "Expires"],
        [[i.get("code"), i.get("deviceName"), i.get("remoteAddress") or "-", i.get("expiresAt")] for i in items],
    )


@app.command("approve")
def approve(
    code: str = typer.Argument(..., help="Pairing code shown by the extension."),
    url: Optional[str] = _URL_OPTION,
    token: Optional[str] = _TOKEN_OPTION,
    config: Optional[Path] = _CONFIG_OPTION,
):
    """Approve a pending pairing code."""
    try:
        result = _client(config, url, token).approve(code)
    except BridgeAdminError as exc:
        _print_error(str(exc))
        raise typer.Exit(1)
    device = result.get("device") or {}
    typer.secho(f"Paired {device.get('deviceName')} ({device.get('deviceId')}).", fg=typer.colors.GREEN)


@app.command("devices")
def devices(
    json_output: bool = typer.Option(False, "--json"),
    url: Optional[str] = _URL_OPTION,
    token: Optional[str] = _TOKEN_OPTION,
    config: Optional[Path] = _CONFIG_OPTION,
):
    """List paired devices."""
    try:
        items = _client(config, url, token).devices()
    except BridgeAdminError as exc:
        _print_error(str(exc))
        raise typer.Exit(1)
    if json_output:
        _echo_json(items)
        return
    if not items:
        typer.echo("No paired devices.")
        return
    _echo_table(
        ["Device", "Name", "Approved", "Last seen"],
        [[i.get("deviceId"), i.get("deviceName"), i.get("approvedAt"), i.get("lastSeenAt")] for i in items],
    )


def _parse_params(raw: Optional[str]) -> Dict[str, Any]:
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except ValueError as exc:
        raise typer.BadParameter(f"invalid JSON: {exc}", param_hint="--params")
    if not isinstance(value, dict):
        raise typer.BadParameter("params must be a JSON object", param_hint="--params")
    return value


@app.command("call")
def call(
    action: str = typer.Argument(..., help="Action name, e.g. fetch_subreddit."),
    params: Optional[str] = typer.Option(None, "--params", help="Action parameters as a JSON object."),
    timeout_ms: Optional[int] = typer.Option(None, "--timeout-ms", min=1),
    url: Optional[str] = _URL_OPTION,
    token: Optional[str] = _TOKEN_OPTION,
    config: Optional[Path] = _CONFIG_OPTION,
):
    """Run an action in the connected extension and print its result."""
    payload = _parse_params(params)
    try:
        result = _client(config, url, token).call(action, payload, timeout_ms=timeout_ms)
    except BridgeAdminError as exc:
        _print_error(str(exc))
        raise typer.Exit(1)
    if isinstance(result, str):
        typer.echo(result)
    else:
        _echo_json(result)
