from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field

from extbridge.apps.api.auth import require_local_admin
from extbridge.build_info import BUILD_INFO
from extbridge.services.bridge import (
    ActionFailedError,
    BridgeError,
    BridgeShutdownError,
    ExtensionBridge,
    NotConnectedError,
    PairingExpiredOrUnknownError,
    RequestTimeoutError,
    UnknownActionError,
)

router = APIRouter(dependencies=[Depends(require_local_admin)])

_STATUS_BY_ERROR: list[tuple[type[BridgeError], int]] = [
    (NotConnectedError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (BridgeShutdownError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (RequestTimeoutError, status.HTTP_504_GATEWAY_TIMEOUT),
    (PairingExpiredOrUnknownError, status.HTTP_404_NOT_FOUND),
    (UnknownActionError, status.HTTP_400_BAD_REQUEST),
    (ActionFailedError, status.HTTP_502_BAD_GATEWAY),
]


def get_bridge(request: Request) -> ExtensionBridge:
    bridge = getattr(request.app.state, "bridge", None)
    if bridge is None:
        raise HTTPException(status_code=503, detail={"code": "not_running", "message": "bridge is not running"})
    return bridge


def _http_error(exc: BridgeError) -> HTTPException:
    code = status.HTTP_500_INTERNAL_SERVER_ERROR
    for kind, mapped in _STATUS_BY_ERROR:
        if isinstance(exc, kind):
            code = mapped
            break
    return HTTPException(status_code=code, detail=exc.as_dict())


class ApproveRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=32)


class ActionCall(BaseModel):
    action: str = Field(..., min_length=1)
    params: Dict[str, Any] | None = None
    timeout_ms: int | None = Field(default=None, alias="timeoutMs", gt=0)
    model_config = {"extra": "ignore", "populate_by_name": True}


@router.get("/status")
async def bridge_status(bridge: ExtensionBridge = Depends(get_bridge)):
    payload = bridge.status()
    payload["version"] = BUILD_INFO.version
    return payload


@router.get("/pairings")
async def list_pairings(bridge: ExtensionBridge = Depends(get_bridge)):
    return {"items": bridge.list_pending_pairings()}


@router.post("/pairings/approve")
async def approve_pairing(body: ApproveRequest, bridge: ExtensionBridge = Depends(get_bridge)):
    try:
        device = await bridge.approve_pairing(body.code)
    except BridgeError as exc:
        raise _http_error(exc) from exc
    return {"ok": True, "device": device}


@router.get("/devices")
async def list_devices(bridge: ExtensionBridge = Depends(get_bridge)):
    return {"items": bridge.list_paired_devices()}


@router.get("/actions/schema")
async def action_schema(bridge: ExtensionBridge = Depends(get_bridge)):
    try:
        result = await bridge.send_action("get_skill", {})
    except BridgeError as exc:
        raise _http_error(exc) from exc
    return {"result": result}


@router.post("/actions/call")
async def call_action(body: ActionCall, bridge: ExtensionBridge = Depends(get_bridge)):
    try:
        result = await bridge.send_action(body.action, body.params or {}, body.timeout_ms)
    except BridgeError as exc:
        raise _http_error(exc) from exc
    return {"result": result}
