# src/extbridge/apps/api/extension_ws.py
from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from extbridge.services.bridge import ExtensionBridge

_log = logging.getLogger("extbridge.api.ws")


class FastAPIBridgeSocket:
    """
    Adapt FastAPI's WebSocket to the BridgeSocket protocol used by ExtensionBridge.
    """

    def __init__(self, ws: WebSocket):
        self._ws = ws
        self._closed = False

    @property
    def remote_address(self) -> str:
        client = self._ws.client
        return client.host if client else ""

    @property
    def is_open(self) -> bool:
        if self._closed:
            return False
        return (
            self._ws.application_state == WebSocketState.CONNECTED
            and self._ws.client_state == WebSocketState.CONNECTED
        )

    async def send_json(self, payload: dict[str, Any]) -> None:
        if not self.is_open:
            raise ConnectionError("extension socket is closed")
        try:
            await self._ws.send_text(json.dumps(payload, ensure_ascii=False))
        except (WebSocketDisconnect, RuntimeError) as exc:
            self._closed = True
            raise ConnectionError("extension socket is closed") from exc

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._ws.close(code=code, reason=reason)
        except (WebSocketDisconnect, RuntimeError):
            # already gone
            return


async def extension_socket(websocket: WebSocket) -> None:
    """Single WebSocket endpoint the browser extension connects to."""

    bridge: ExtensionBridge = websocket.app.state.bridge
    socket = FastAPIBridgeSocket(websocket)
    if not await bridge.admit(socket):
        return
    await websocket.accept()

    try:
        while socket.is_open:
            message = await websocket.receive()
            if message.get("type") == "websocket.disconnect":
                break
            raw = message.get("text")
            if raw is None:
                raw = message.get("bytes")
            if raw is None:
                continue
            try:
                await bridge.handle_message(socket, raw)
            except ConnectionError:
                break
    except (WebSocketDisconnect, RuntimeError):
        _log.debug("extension socket from %s went away", socket.remote_address)
    finally:
        await bridge.handle_disconnect(socket)
