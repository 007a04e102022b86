"""File-backed registry of paired devices.

Only SHA-256 digests of auth tokens are written to disk. The file is rewritten
atomically (temp file in the same directory, fsync, ``os.replace``) with mode
0600 inside a 0700 directory.
"""
from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import logging
import os
import tempfile
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from extbridge.config import const

__all__ = ["PairedDevice", "TrustStore", "hash_token", "utc_now_iso"]

_log = logging.getLogger("extbridge.bridge.trust")


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


@dataclass(slots=True)
class PairedDevice:
    device_id: str
    device_name: str
    auth_token_hash: str
    approved_at: str
    last_seen_at: str

    def matches(self, token: str | None) -> bool:
        if not token:
            return False
        return hmac.compare_digest(self.auth_token_hash, hash_token(token))

    def as_json(self) -> dict[str, Any]:
        return {
            "deviceId": self.device_id,
            "deviceName": self.device_name,
            "authTokenHash": self.auth_token_hash,
            "approvedAt": self.approved_at,
            "lastSeenAt": self.last_seen_at,
        }

    def public_view(self) -> dict[str, Any]:
        payload = self.as_json()
        payload.pop("authTokenHash", None)
        return payload

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> "PairedDevice":
        return cls(
            device_id=str(data.get("deviceId", "")),
            device_name=str(data.get("deviceName") or const.DEFAULT_DEVICE_NAME),
            auth_token_hash=str(data.get("authTokenHash", "")),
            approved_at=str(data.get("approvedAt") or ""),
            last_seen_at=str(data.get("lastSeenAt") or data.get("approvedAt") or ""),
        )


def _migrate(raw: Any) -> tuple[list[dict[str, Any]], bool]:
    """Bring any known on-disk shape up to the current schema.

    Returns the device entries and whether anything had to change. Version 1
    files stored the plaintext ``authToken``; those are hashed here once.
    """

    if isinstance(raw, list):
        entries, version = raw, 1
    elif isinstance(raw, dict):
        entries = raw.get("devices") or []
        version = int(raw.get("version") or 1)
    else:
        raise ValueError("trust store root must be an object")
    if not isinstance(entries, list):
        raise ValueError("trust store devices must be a list")

    migrated: list[dict[str, Any]] = []
    changed = version != const.TRUST_STORE_VERSION
    for entry in entries:
        if not isinstance(entry, dict):
            changed = True
            continue
        item = dict(entry)
        legacy = item.pop("authToken", None)
        if legacy and not item.get("authTokenHash"):
            item["authTokenHash"] = hash_token(str(legacy))
            changed = True
        elif legacy:
            changed = True
        if not item.get("deviceId") or not item.get("authTokenHash"):
            changed = True
            continue
        migrated.append(item)
    return migrated, changed


class TrustStore:
    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._devices: dict[str, PairedDevice] = {}
        self._write_lock: asyncio.Lock | None = None

    def __len__(self) -> int:
        return len(self._devices)

    def __contains__(self, device_id: object) -> bool:
        return device_id in self._devices

    def get(self, device_id: str) -> PairedDevice | None:
        return self._devices.get(device_id)

    def devices(self) -> list[PairedDevice]:
        return sorted(self._devices.values(), key=lambda d: d.approved_at)

    def load(self) -> None:
        self._devices = {}
        if not self.path.exists():
            return
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            entries, changed = _migrate(raw)
        except (OSError, TypeError, ValueError) as exc:
            _log.error("failed to read trust store %s: %s", self.path, exc)
            return
        for entry in entries:
            device = PairedDevice.from_mapping(entry)
            self._devices[device.device_id] = device
        _log.info("loaded %d paired device(s) from %s", len(self._devices), self.path)
        if changed:
            _log.info("migrated trust store %s to version %d", self.path, const.TRUST_STORE_VERSION)
            self.persist()

    def upsert(self, device: PairedDevice) -> None:
        self._devices[device.device_id] = device

    def touch(self, device_id: str, device_name: str | None = None) -> PairedDevice | None:
        device = self._devices.get(device_id)
        if device is None:
            return None
        updated = replace(
            device,
            device_name=device_name or device.device_name,
            last_seen_at=utc_now_iso(),
        )
        self._devices[device_id] = updated
        return updated

    def snapshot(self) -> dict[str, Any]:
        return {
            "version": const.TRUST_STORE_VERSION,
            "devices": [device.as_json() for device in self.devices()],
        }

    def persist(self) -> bool:
        return self._write(self.snapshot())

    async def persist_async(self) -> bool:
        if self._write_lock is None:
            self._write_lock = asyncio.Lock()
        async with self._write_lock:
            payload = self.snapshot()
            return await asyncio.to_thread(self._write, payload)

    def _write(self, payload: dict[str, Any]) -> bool:
        directory = self.path.parent
        tmp_name: str | None = None
        try:
            directory.mkdir(parents=True, exist_ok=True)
            _chmod(directory, 0o700)
            fd, tmp_name = tempfile.mkstemp(prefix=".paired-", suffix=".tmp", dir=str(directory))
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, ensure_ascii=False, indent=2)
                handle.flush()
                os.fsync(handle.fileno())
            _chmod(Path(tmp_name), 0o600)
            os.replace(tmp_name, self.path)
            tmp_name = None
            return True
        except OSError as exc:
            _log.error("failed to persist trust store %s: %s", self.path, exc)
            return False
        finally:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    pass


def _chmod(path: Path, mode: int) -> None:
    try:
        os.chmod(path, mode)
    except (PermissionError, NotImplementedError):
        pass

