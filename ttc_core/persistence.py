"""On-disk storage for the baseline scorer model."""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
from datetime import datetime
from pathlib import Path
from threading import RLock
from typing import Mapping, Optional

from cryptography.fernet import Fernet, InvalidToken


class ModelStoreError(Exception):
    """Raised when the stored model cannot be read or written."""


def _derive_fernet_key(secret: str) -> bytes:
    """Return a valid Fernet key from an arbitrary secret string."""

    if not secret:
        raise ValueError("model encryption secret must not be empty")

    try:
        decoded = base64.urlsafe_b64decode(secret)
        if len(decoded) == 32:
            return base64.urlsafe_b64encode(decoded)
    except (binascii.Error, ValueError):
        pass

    digest = hashlib.sha256(secret.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest)


class ModelStore:
    """Persist scorer snapshots as JSON, optionally Fernet-encrypted."""

    def __init__(self, path: Path, *, secret: Optional[str] = None) -> None:
        self._path = Path(path)
        self._fernet = Fernet(_derive_fernet_key(secret)) if secret else None
        self._lock = RLock()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def encrypted(self) -> bool:
        return self._fernet is not None

    def load(self) -> Optional[Mapping[str, object]]:
        """Return the stored snapshot, or ``None`` when nothing was saved yet."""

        with self._lock:
            try:
                payload = self._path.read_bytes()
            except FileNotFoundError:
                return None
            except OSError as exc:
                raise ModelStoreError(f"unable to read model file {self._path}: {exc}") from exc

        if self._fernet is not None:
            try:
                payload = self._fernet.decrypt(payload)
            except InvalidToken as exc:
                raise ModelStoreError(
                    "Unable to decrypt model file. Ensure the encryption key matches the original value."
                ) from exc

        try:
            data = json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ModelStoreError(f"model file {self._path} is not valid JSON: {exc}") from exc
        if not isinstance(data, Mapping):
            raise ModelStoreError(f"model file {self._path} does not contain an object")
        return data

    def save(self, snapshot: Mapping[str, object]) -> None:
        try:
            payload = json.dumps(snapshot, default=self._json_default, indent=2).encode("utf-8")
        except (TypeError, ValueError) as exc:
            raise ModelStoreError(f"model snapshot is not serializable: {exc}") from exc
        if self._fernet is not None:
            payload = self._fernet.encrypt(payload)

        with self._lock:
            tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                tmp_path.write_bytes(payload)
                tmp_path.replace(self._path)
            except OSError as exc:
                raise ModelStoreError(f"unable to write model file {self._path}: {exc}") from exc

    @staticmethod
    def _json_default(obj):
        if isinstance(obj, datetime):
            return obj.isoformat()
        raise TypeError(f"Object of type {type(obj)!r} is not JSON serializable")


__all__ = ["ModelStore", "ModelStoreError"]
