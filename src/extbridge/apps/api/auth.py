import hmac

from fastapi import Header, HTTPException, Request, status

from extbridge.services.bridge.address_policy import is_loopback
from extbridge.services.bridge.errors import AuthRejectedError, PolicyDeniedError


async def require_local_admin(
    request: Request,
    x_extbridge_token: str | None = Header(default=None),
) -> None:
    """
    Admin routes answer loopback clients only. When ``admin_token`` is set the
    X-ExtBridge-Token header has to match it as well.
    """
    client_host = request.client.host if request.client else ""
    if not is_loopback(client_host):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=PolicyDeniedError("admin API is only reachable from loopback").as_dict(),
        )

    settings = getattr(request.app.state, "settings", None)
    expected = getattr(settings, "admin_token", None)
    if expected and not (x_extbridge_token and hmac.compare_digest(x_extbridge_token, expected)):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=AuthRejectedError("Invalid or missing X-ExtBridge-Token").as_dict(),
        )
