"""Persistent device identity for the extension side of the link.

The identity is an Ed25519 keypair generated on first use. The device id is
the SHA-256 hex digest of the raw public key so it survives restarts without
any server-side state. Tokens handed out by the bridge (after pairing) and by
the gateway are stored next to the key.
"""
from __future__ import annotations

import base64
import contextlib
import hashlib
import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from extbridge.config import const

__all__ = ["DeviceIdentity", "DeviceIdentityStore", "b64url", "derive_device_id"]

_log = logging.getLogger("extbridge.client.identity")


def b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def derive_device_id(public_key_raw: bytes) -> str:
    return hashlib.sha256(public_key_raw).hexdigest()


@dataclass
class DeviceIdentity:
    private_key: Ed25519PrivateKey
    device_name: str = const.DEFAULT_DEVICE_NAME
    auth_token: str | None = None
    gateway_token: str | None = None
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @classmethod
    def generate(cls, device_name: str = const.DEFAULT_DEVICE_NAME) -> "DeviceIdentity":
        return cls(private_key=Ed25519PrivateKey.generate(), device_name=device_name)

    @property
    def public_key_raw(self) -> bytes:
        return self.private_key.public_key().public_bytes(
            serialization.Encoding.Raw, serialization.PublicFormat.Raw
        )

    @property
    def public_key(self) -> str:
        return b64url(self.public_key_raw)

    @property
    def device_id(self) -> str:
        return derive_device_id(self.public_key_raw)

    def sign(self, payload: str) -> str:
        return b64url(self.private_key.sign(payload.encode("utf-8")))

    def as_json(self) -> dict[str, Any]:
        pem = self.private_key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        ).decode("ascii")
        return {
            "version": 1,
            "deviceId": self.device_id,
            "deviceName": self.device_name,
            "privateKeyPem": pem,
            "authToken": self.auth_token,
            "gatewayToken": self.gateway_token,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> "DeviceIdentity":
        key = serialization.load_pem_private_key(str(data["privateKeyPem"]).encode("ascii"), password=None)
        if not isinstance(key, Ed25519PrivateKey):
            raise ValueError("device key is not an Ed25519 key")
        return cls(
            private_key=key,
            device_name=str(data.get("deviceName") or const.DEFAULT_DEVICE_NAME),
            auth_token=data.get("authToken") or None,
            gateway_token=data.get("gatewayToken") or None,
            created_at=str(data.get("createdAt") or ""),
        )


class DeviceIdentityStore:
    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def load_or_create(self, device_name: str = const.DEFAULT_DEVICE_NAME) -> DeviceIdentity:
        if self.path.exists():
            try:
                data = json.loads(self.path.read_text(encoding="utf-8"))
                return DeviceIdentity.from_mapping(data)
            except (OSError, KeyError, TypeError, ValueError) as exc:
                _log.error("device identity %s is unreadable, generating a new one: %s", self.path, exc)
        identity = DeviceIdentity.generate(device_name)
        self.save(identity)
        _log.info("generated device identity %s", identity.device_id)
        return identity

    def save(self, identity: DeviceIdentity) -> Path:
        """Atomically rewrite the identity file; it holds the private key, so it is 0600 from creation."""
        directory = self.path.parent
        directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=".identity-", suffix=".tmp", dir=str(directory))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(identity.as_json(), handle, ensure_ascii=False, indent=2)
                handle.flush()
                os.fsync(handle.fileno())
            try:
                os.chmod(tmp_name, 0o600)
            except (PermissionError, NotImplementedError):
                pass
            os.replace(tmp_name, self.path)
        except BaseException:
            with contextlib.suppress(OSError):
                os.unlink(tmp_name)
            raise
        return self.path
