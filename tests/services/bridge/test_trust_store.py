import json
import os
import stat
import sys

import pytest

from extbridge.services.bridge.trust_store import PairedDevice, TrustStore, hash_token


def _device(device_id="dev-1", token="secret-token"):
    return PairedDevice(
        device_id=device_id,
        device_name="Laptop",
        auth_token_hash=hash_token(token),
        approved_at="2026-01-01T00:00:00.000Z",
        last_seen_at="2026-01-01T00:00:00.000Z",
    )


def test_missing_file_loads_empty(tmp_path):
    store = TrustStore(tmp_path / "paired.json")
    store.load()
    assert len(store) == 0


def test_corrupt_file_loads_empty(tmp_path):
    path = tmp_path / "paired.json"
    path.write_text("{not json", encoding="utf-8")
    store = TrustStore(path)
    store.load()
    assert len(store) == 0


def test_persist_round_trip_keeps_only_hashes(tmp_path):
    path = tmp_path / "state" / "paired.json"
    store = TrustStore(path)
    store.upsert(_device())
    assert store.persist()

    data = json.loads(path.read_text(encoding="utf-8"))
    assert data["version"] == 2
    assert data["devices"][0]["authTokenHash"] == hash_token("secret-token")
    assert "secret-token" not in path.read_text(encoding="utf-8")

    reloaded = TrustStore(path)
    reloaded.load()
    assert reloaded.get("dev-1").matches("secret-token")
    assert not reloaded.get("dev-1").matches("wrong")
    assert not reloaded.get("dev-1").matches(None)


@pytest.mark.skipif(sys.platform.startswith("win"), reason="POSIX permissions")
def test_persist_sets_restrictive_modes(tmp_path):
    path = tmp_path / "state" / "paired.json"
    store = TrustStore(path)
    store.upsert(_device())
    store.persist()
    assert stat.S_IMODE(os.stat(path).st_mode) == 0o600
    assert stat.S_IMODE(os.stat(path.parent).st_mode) == 0o700
    assert [p.name for p in path.parent.iterdir()] == ["paired.json"]


def test_legacy_plaintext_tokens_are_migrated(tmp_path):
    path = tmp_path / "paired.json"
    path.write_text(
        json.dumps(
            {
                "version": 1,
                "devices": [
                    {
                        "deviceId": "dev-legacy",
                        "deviceName": "Old",
                        "authToken": "plain-token",
                        "approvedAt": "2025-01-01T00:00:00.000Z",
                    }
                ],
            }
        ),
        encoding="utf-8",
    )
    store = TrustStore(path)
    store.load()

    device = store.get("dev-legacy")
    assert device is not None
    assert device.matches("plain-token")
    assert device.last_seen_at == "2025-01-01T00:00:00.000Z"

    raw = path.read_text(encoding="utf-8")
    assert "plain-token" not in raw
    data = json.loads(raw)
    assert data["version"] == 2
    assert "authToken" not in data["devices"][0]


def test_touch_updates_name_and_last_seen(tmp_path):
    store = TrustStore(tmp_path / "paired.json")
    store.upsert(_device())
    updated = store.touch("dev-1", "Desktop")
    assert updated.device_name == "Desktop"
    assert updated.last_seen_at != "2026-01-01T00:00:00.000Z"
    assert store.touch("missing") is None


def test_persist_failure_is_logged_not_raised(tmp_path, caplog):
    blocker = tmp_path / "blocker"
    blocker.write_text("file, not a directory", encoding="utf-8")
    store = TrustStore(blocker / "paired.json")
    store.upsert(_device())
    assert store.persist() is False
    assert "failed to persist trust store" in caplog.text


@pytest.mark.anyio
async def test_persist_async_writes_snapshot(tmp_path):
    path = tmp_path / "paired.json"
    store = TrustStore(path)
    store.upsert(_device("a"))
    store.upsert(_device("b"))
    assert await store.persist_async()
    data = json.loads(path.read_text(encoding="utf-8"))
    assert sorted(d["deviceId"] for d in data["devices"]) == ["a", "b"]


def test_public_view_hides_hash():
    assert "authTokenHash" not in _device().public_view()
