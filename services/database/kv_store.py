# services/database/kv_store.py
from __future__ import annotations

import logging
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional, Protocol, Union

from services.crypto_core.messages import STORAGE_INFO, derive_key, secretbox_decrypt, secretbox_encrypt

LOG = logging.getLogger("kv_store")
LOG.addHandler(logging.NullHandler())


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[bytes]: ...

    def set(self, key: str, value: bytes) -> None: ...

    def delete(self, key: str) -> None: ...


class MemoryKVStore:
    def __init__(self) -> None:
        self._data: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: bytes) -> None:
        with self._lock:
            self._data[key] = bytes(value)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def __len__(self) -> int:
        return len(self._data)


DDL = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS kv(
  key TEXT PRIMARY KEY,
  value BLOB NOT NULL,
  updated_at TEXT NOT NULL
);
"""


def _now() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


class SqliteKVStore:
    """Single-table key/value store on sqlite (one connection per call)."""

    def __init__(self, db_path: Union[str, Path]) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._conn() as cx:
            cx.executescript(DDL)

    def _conn(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path)

    def get(self, key: str) -> Optional[bytes]:
        with self._conn() as cx:
            row = cx.execute("SELECT value FROM kv WHERE key=?", (key,)).fetchone()
        return bytes(row[0]) if row else None

    def set(self, key: str, value: bytes) -> None:
        with self._conn() as cx:
            cx.execute(
                "INSERT INTO kv(key,value,updated_at) VALUES(?,?,?) "
                "ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at",
                (key, sqlite3.Binary(value), _now()),
            )

    def delete(self, key: str) -> None:
        with self._conn() as cx:
            cx.execute("DELETE FROM kv WHERE key=?", (key,))

    def ping(self) -> bool:
        with self._conn() as cx:
            return cx.execute("SELECT 1").fetchone() == (1,)


class EncryptedKVStore:
    """Wraps another store; values are sealed with SecretBox under a per-key subkey."""

    def __init__(self, inner: KeyValueStore, master_key: bytes) -> None:
        if len(master_key) != 32:
            raise ValueError("master key must be 32 bytes")
        self.inner = inner
        self._master = master_key

    def _key_for(self, key: str) -> bytes:
        return derive_key(self._master, STORAGE_INFO, key.encode())

    def get(self, key: str) -> Optional[bytes]:
        blob = self.inner.get(key)
        if blob is None:
            return None
        return secretbox_decrypt(self._key_for(key), blob[:24], blob[24:])

    def set(self, key: str, value: bytes) -> None:
        nonce, ct = secretbox_encrypt(self._key_for(key), value)
        self.inner.set(key, nonce + ct)

    def delete(self, key: str) -> None:
        self.inner.delete(key)


__all__ = ["KeyValueStore", "MemoryKVStore", "SqliteKVStore", "EncryptedKVStore"]
