"""HTTP client for the admin API of a running bridge."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping

import httpx

from extbridge.config import const
from extbridge.services.bridge_config import BridgeSettings

__all__ = ["BridgeAdminClient", "BridgeAdminError"]


class BridgeAdminError(RuntimeError):
    """Raised when the admin API is unreachable or returns an error."""

    def __init__(self, message: str, *, status_code: int, error_code: str | None = None, payload: Any | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code
        self.payload = payload


@dataclass(slots=True)
class BridgeAdminClient:
    base_url: str = f"http://127.0.0.1:{const.BRIDGE_PORT}"
    timeout: float = 10.0
    token: str | None = None
    default_headers: dict[str, str] = field(default_factory=dict)
    transport: httpx.BaseTransport | None = None

    @classmethod
    def from_settings(cls, settings: BridgeSettings, *, timeout: float = 10.0) -> "BridgeAdminClient":
        return cls(base_url=settings.admin_base_url(), timeout=timeout, token=settings.admin_token)

    def _headers(self) -> dict[str, str]:
        headers = dict(self.default_headers)
        if self.token:
            headers[const.ADMIN_TOKEN_HEADER] = self.token
        return headers

    def _request(
        self,
        method: str,
        path: str,
        *,
        json: Mapping[str, Any] | None = None,
        timeout: float | None = None,
    ) -> Any:
        try:
            with httpx.Client(
                base_url=self.base_url,
                timeout=timeout or self.timeout,
                transport=self.transport,
            ) as client:
                response = client.request(method, path, json=json, headers=self._headers())
        except httpx.RequestError as exc:
            raise BridgeAdminError(
                f"bridge at {self.base_url} is not reachable: {exc}",
                status_code=0,
                error_code="unreachable",
            ) from exc

        content: Any | None = None
        if response.content:
            try:
                content = response.json()
            except ValueError:
                content = response.text

        if response.status_code >= 400:
            message = response.text or f"HTTP {response.status_code}"
            error_code: str | None = None
            if isinstance(content, Mapping):
                detail = content.get("detail")
                if isinstance(detail, Mapping):
                    message = str(detail.get("message") or message)
                    code = detail.get("code")
                    error_code = code if isinstance(code, str) else None
                elif isinstance(detail, str):
                    message = detail
            raise BridgeAdminError(message, status_code=response.status_code, error_code=error_code, payload=content)

        return content if content is not None else {}

    def status(self) -> dict[str, Any]:
        return dict(self._request("GET", "/api/status"))

    def pairings(self) -> list[dict[str, Any]]:
        result = self._request("GET", "/api/pairings")
        return list(result.get("items", [])) if isinstance(result, Mapping) else []

    def approve(self, code: str) -> dict[str, Any]:
        return dict(self._request("POST", "/api/pairings/approve", json={"code": code}))

    def devices(self) -> list[dict[str, Any]]:
        result = self._request("GET", "/api/devices")
        return list(result.get("items", [])) if isinstance(result, Mapping) else []

    def call(self, action: str, params: Mapping[str, Any] | None = None, *, timeout_ms: int | None = None) -> Any:
        body: dict[str, Any] = {"action": action, "params": dict(params or {})}
        if timeout_ms is not None:
            body["timeoutMs"] = timeout_ms
        # the HTTP timeout must outlive the action timeout
        wait = (timeout_ms or const.DEFAULT_REQUEST_TIMEOUT_MS) / 1000.0 + 5.0
        result = self._request("POST", "/api/actions/call", json=body, timeout=wait)
        return result.get("result") if isinstance(result, Mapping) else result
