"""Pairing codes for devices the trust store does not know yet."""
from __future__ import annotations

import logging
import re
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

from extbridge.config import const

from .errors import PairingExpiredOrUnknownError
from .transport import BridgeSocket
from .trust_store import PairedDevice, TrustStore, hash_token, utc_now_iso

__all__ = [
    "PendingPairing",
    "IdentifyResult",
    "ApprovedPairing",
    "PairingManager",
    "normalize_code",
    "sanitize_device_name",
]

_log = logging.getLogger("extbridge.bridge.pairing")

_CONTROL_RE = re.compile(r"[\x00-\x1f\x7f]")
_SPACE_RE = re.compile(r"\s+")
_CODE_STRIP_RE = re.compile(r"[^A-Z0-9]")


def sanitize_device_name(raw: Any) -> str:
    if not isinstance(raw, str):
        return const.DEFAULT_DEVICE_NAME
    text = _SPACE_RE.sub(" ", _CONTROL_RE.sub(" ", raw)).strip()
    text = text[: const.DEVICE_NAME_MAX_LENGTH].rstrip()
    return text or const.DEFAULT_DEVICE_NAME


def normalize_code(raw: str | None) -> str:
    return _CODE_STRIP_RE.sub("", (raw or "").strip().upper())


def _iso(epoch: float) -> str:
    stamp = datetime.fromtimestamp(epoch, tz=timezone.utc)
    return stamp.isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(slots=True)
class PendingPairing:
    code: str
    device_id: str
    device_name: str
    requested_at: float
    expires_at: float
    socket: BridgeSocket

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def as_frame(self) -> dict[str, Any]:
        return {
            "type": "pairing_required",
            "code": self.code,
            "deviceId": self.device_id,
            "deviceName": self.device_name,
            "requestedAt": _iso(self.requested_at),
            "expiresAt": _iso(self.expires_at),
        }

    def public_view(self) -> dict[str, Any]:
        payload = self.as_frame()
        payload.pop("type")
        payload["remoteAddress"] = self.socket.remote_address
        return payload


@dataclass(slots=True)
class IdentifyResult:
    authenticated: bool
    device: PairedDevice | None = None
    pending: PendingPairing | None = None


@dataclass(slots=True)
class ApprovedPairing:
    device: PairedDevice
    auth_token: str
    socket: BridgeSocket

    def as_frame(self) -> dict[str, Any]:
        return {
            "type": "pairing_approved",
            "deviceId": self.device.device_id,
            "deviceName": self.device.device_name,
            "authToken": self.auth_token,
        }


class PairingManager:
    """Tracks at most one pending pairing per device.

    Codes come from an alphabet without 0/O/1/I and never collide with a code
    that is still pending. Expired entries and entries whose socket went away
    are pruned lazily on every read and approval.
    """

    def __init__(
        self,
        store: TrustStore,
        *,
        ttl_seconds: int = const.DEFAULT_PAIRING_CODE_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._ttl = float(ttl_seconds)
        self._clock = clock
        self._by_code: dict[str, PendingPairing] = {}

    def _new_code(self) -> str:
        while True:
            code = "".join(secrets.choice(const.PAIRING_CODE_ALPHABET) for _ in range(const.PAIRING_CODE_LENGTH))
            if code not in self._by_code:
                return code

    def _find_by_device(self, device_id: str) -> PendingPairing | None:
        for pending in self._by_code.values():
            if pending.device_id == device_id:
                return pending
        return None

    def prune_expired(self) -> list[PendingPairing]:
        now = self._clock()
        dropped = [p for p in self._by_code.values() if p.is_expired(now) or not p.socket.is_open]
        for pending in dropped:
            self._by_code.pop(pending.code, None)
            _log.info("pairing %s for %s dropped", pending.code, pending.device_id)
        return dropped

    async def identify(
        self,
        device_id: str,
        device_name: Any,
        socket: BridgeSocket,
        provided_token: str | None,
    ) -> IdentifyResult:
        name = sanitize_device_name(device_name)
        record = self._store.get(device_id)
        if record is not None and record.matches(provided_token):
            device = self._store.touch(device_id, name) or record
            await self._store.persist_async()
            stale = self._find_by_device(device_id)
            if stale is not None:
                self._by_code.pop(stale.code, None)
            return IdentifyResult(authenticated=True, device=device)
        if record is not None:
            _log.warning("device %s presented an invalid or missing token", device_id)

        self.prune_expired()
        now = self._clock()
        pending = self._find_by_device(device_id)
        if pending is not None:
            pending.socket = socket
            pending.device_name = name
            pending.requested_at = now
            pending.expires_at = now + self._ttl
            _log.info("pairing %s for %s refreshed", pending.code, device_id)
        else:
            pending = PendingPairing(
                code=self._new_code(),
                device_id=device_id,
                device_name=name,
                requested_at=now,
                expires_at=now + self._ttl,
                socket=socket,
            )
            self._by_code[pending.code] = pending
            _log.info("pairing %s issued for %s (%s)", pending.code, device_id, name)
        return IdentifyResult(authenticated=False, pending=pending)

    async def approve(self, code: str) -> ApprovedPairing:
        normalized = normalize_code(code)
        self.prune_expired()
        pending = self._by_code.get(normalized) if normalized else None
        if pending is None:
            raise PairingExpiredOrUnknownError(f"Pairing code {code!r} is unknown or expired")
        del self._by_code[normalized]

        token = secrets.token_urlsafe(32)
        stamp = utc_now_iso()
        device = PairedDevice(
            device_id=pending.device_id,
            device_name=pending.device_name,
            auth_token_hash=hash_token(token),
            approved_at=stamp,
            last_seen_at=stamp,
        )
        self._store.upsert(device)
        await self._store.persist_async()
        _log.info("pairing %s approved for %s", normalized, device.device_id)
        return ApprovedPairing(device=device, auth_token=token, socket=pending.socket)

    def forget_socket(self, socket: BridgeSocket) -> None:
        for code in [c for c, p in self._by_code.items() if p.socket is socket]:
            self._by_code.pop(code, None)

    def pending_codes(self) -> list[str]:
        self.prune_expired()
        return sorted(self._by_code)

    def list_pending(self) -> list[dict[str, Any]]:
        self.prune_expired()
        items = sorted(self._by_code.values(), key=lambda p: p.requested_at)
        return [pending.public_view() for pending in items]

    def list_paired(self) -> list[dict[str, Any]]:
        return [device.public_view() for device in self._store.devices()]
