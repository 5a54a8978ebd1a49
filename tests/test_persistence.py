from __future__ import annotations

import json
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest
from cryptography.fernet import Fernet

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from ttc_core.persistence import ModelStore, ModelStoreError, _derive_fernet_key


SNAPSHOT = {
    "version": 1,
    "history": [],
    "command_baselines": {"deorbit": {"command": "deorbit", "count": 1}},
    "role_baselines": {},
    "saved_at": datetime(2025, 1, 6, 8, 0, tzinfo=timezone.utc),
}


def test_missing_file_loads_as_none(tmp_path: Path) -> None:
    assert ModelStore(tmp_path / "absent.json").load() is None


def test_plain_round_trip_is_readable_json(tmp_path: Path) -> None:
    path = tmp_path / "nested" / "model.json"
    store = ModelStore(path)
    store.save(SNAPSHOT)

    on_disk = json.loads(path.read_text(encoding="utf-8"))
    assert on_disk["saved_at"] == "2025-01-06T08:00:00+00:00"
    assert store.load()["command_baselines"]["deorbit"]["count"] == 1
    assert not store.encrypted
    assert not path.with_suffix(".json.tmp").exists()


def test_encrypted_store_requires_matching_secret(tmp_path: Path) -> None:
    path = tmp_path / "model.json.enc"
    ModelStore(path, secret="ground-segment-secret").save(SNAPSHOT)

    with pytest.raises(json.JSONDecodeError):
        json.loads(path.read_bytes())
    assert ModelStore(path, secret="ground-segment-secret").load()["version"] == 1
    with pytest.raises(ModelStoreError):
        ModelStore(path, secret="another-secret").load()


@pytest.mark.parametrize("content", [b"not json", b"[1, 2, 3]", b"\xff\xfe"])
def test_corrupt_model_raises(tmp_path: Path, content: bytes) -> None:
    path = tmp_path / "model.json"
    path.write_bytes(content)
    with pytest.raises(ModelStoreError):
        ModelStore(path).load()


def test_unserializable_snapshot_raises_store_error(tmp_path: Path) -> None:
    path = tmp_path / "model.json"
    with pytest.raises(ModelStoreError, match="not serializable"):
        ModelStore(path).save({"ids": {1, 2}})
    assert not path.exists()


def test_derive_key_accepts_existing_fernet_keys() -> None:
    key = Fernet.generate_key()
    assert _derive_fernet_key(key.decode()) == key
    derived = _derive_fernet_key("passphrase")
    Fernet(derived)
    with pytest.raises(ValueError):
        _derive_fernet_key("")
