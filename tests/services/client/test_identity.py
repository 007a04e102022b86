import base64
import hashlib
import json
import os
import stat
import sys

import pytest
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

from extbridge.services.client.identity import DeviceIdentityStore


def _unb64url(text: str) -> bytes:
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


def test_identity_is_created_once_and_reloaded(tmp_path):
    store = DeviceIdentityStore(tmp_path / "client" / "identity.json")
    first = store.load_or_create("Work Browser")
    second = store.load_or_create("ignored")

    assert first.device_id == second.device_id
    assert second.device_name == "Work Browser"
    assert first.device_id == hashlib.sha256(_unb64url(first.public_key)).hexdigest()


def test_tokens_survive_reload(tmp_path):
    store = DeviceIdentityStore(tmp_path / "identity.json")
    identity = store.load_or_create()
    identity.auth_token = "bridge-token"
    identity.gateway_token = "gw-token"
    store.save(identity)

    reloaded = store.load_or_create()
    assert reloaded.auth_token == "bridge-token"
    assert reloaded.gateway_token == "gw-token"


def test_signature_verifies_with_public_key(tmp_path):
    identity = DeviceIdentityStore(tmp_path / "identity.json").load_or_create()
    signature = identity.sign("v2|a|b")
    Ed25519PublicKey.from_public_bytes(_unb64url(identity.public_key)).verify(_unb64url(signature), b"v2|a|b")


def test_unreadable_identity_is_regenerated(tmp_path):
    path = tmp_path / "identity.json"
    path.write_text(json.dumps({"privateKeyPem": "garbage"}), encoding="utf-8")
    identity = DeviceIdentityStore(path).load_or_create()
    assert len(identity.device_id) == 64
    assert json.loads(path.read_text(encoding="utf-8"))["deviceId"] == identity.device_id


@pytest.mark.skipif(sys.platform.startswith("win"), reason="POSIX permissions")
def test_identity_file_is_private(tmp_path):
    store = DeviceIdentityStore(tmp_path / "identity.json")
    store.load_or_create()
    assert stat.S_IMODE(os.stat(store.path).st_mode) == 0o600


@pytest.mark.skipif(sys.platform.startswith("win"), reason="POSIX permissions")
def test_save_replaces_loose_file_atomically(tmp_path):
    path = tmp_path / "identity.json"
    store = DeviceIdentityStore(path)
    identity = store.load_or_create()
    os.chmod(path, 0o644)

    identity.auth_token = "fresh"
    store.save(identity)

    assert stat.S_IMODE(os.stat(path).st_mode) == 0o600
    assert sorted(p.name for p in tmp_path.iterdir()) == ["identity.json"]
    assert json.loads(path.read_text(encoding="utf-8"))["authToken"] == "fresh"


def test_failed_save_keeps_previous_file(tmp_path, monkeypatch):
    path = tmp_path / "identity.json"
    store = DeviceIdentityStore(path)
    identity = store.load_or_create()
    before = path.read_text(encoding="utf-8")

    def fail_replace(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr(os, "replace", fail_replace)
    identity.auth_token = "lost"
    with pytest.raises(OSError):
        store.save(identity)
    assert path.read_text(encoding="utf-8") == before
    assert sorted(p.name for p in tmp_path.iterdir()) == ["identity.json"]
