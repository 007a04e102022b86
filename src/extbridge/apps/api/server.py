# src/extbridge/apps/api/server.py
from contextlib import asynccontextmanager

from fastapi import FastAPI

from extbridge.apps.api import bridge_api
from extbridge.apps.api.extension_ws import extension_socket
from extbridge.build_info import BUILD_INFO
from extbridge.services.bridge import ExtensionBridge
from extbridge.services.bridge_config import BridgeSettings


def create_app(settings: BridgeSettings | None = None, bridge: ExtensionBridge | None = None) -> FastAPI:
    """
    Build the bridge application: the extension WebSocket plus the loopback admin API.

    The bridge starts with the app lifespan and stops when the server shuts down.
    """
    settings = settings or (bridge.settings if bridge is not None else BridgeSettings())
    bridge = bridge or ExtensionBridge(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await bridge.start()
        try:
            yield
        finally:
            await bridge.stop("server shutdown")

    app = FastAPI(title="extbridge", lifespan=lifespan, version=BUILD_INFO.version)
    app.state.settings = settings
    app.state.bridge = bridge

    app.add_api_websocket_route(settings.path, extension_socket)
    if settings.path != "/":
        # bare host:port candidates connect to the root path
        app.add_api_websocket_route("/", extension_socket)
    app.include_router(bridge_api.router, prefix="/api")

    # --- health endpoints (no auth; for probes) ---
    @app.get("/health/live")
    async def health_live():
        return {
            "ok": True,
            "running": bridge.running,
            "extbridge": {"version": BUILD_INFO.version, "build_date": BUILD_INFO.build_date},
        }

    return app
