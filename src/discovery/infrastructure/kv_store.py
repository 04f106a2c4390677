from __future__ import annotations

import base64
import json
import logging
import os
from datetime import UTC, datetime
from pathlib import Path
from threading import RLock
from typing import Dict, Optional, Protocol

from ..config import load_settings
from ..domain.errors import PersistenceError

logger = logging.getLogger("discovery.kv")


class KeyValueStore(Protocol):
    def read(self, key: str) -> Optional[bytes]: ...

    def upsert(self, key: str, payload: bytes) -> None: ...

    def delete(self, key: str) -> None: ...


def _now_iso() -> str:
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


class InMemoryKeyValueStore:
    def __init__(self) -> None:
        self._data: Dict[str, bytes] = {}
        self._lock = RLock()

    def read(self, key: str) -> Optional[bytes]:
        with self._lock:
            return self._data.get(key)

    def upsert(self, key: str, payload: bytes) -> None:
        with self._lock:
            self._data[key] = bytes(payload)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self, prefix: str = "") -> list[str]:
        with self._lock:
            return sorted(k for k in self._data if k.startswith(prefix))


class FileKeyValueStore(InMemoryKeyValueStore):
    """JSON file-backed store for development persistence.

    Structure: ``{key: {"payload": <base64>, "created_at": ..., "updated_at": ...}}``.
    Every write replaces the file atomically; a failed write rolls the
    in-memory view back and raises ``PersistenceError``.
    """

    def __init__(self, file_path: Optional[str] = None) -> None:
        super().__init__()
        default_path = Path(load_settings().data_dir) / "messages.json"
        self._path = Path(file_path or os.getenv("DISCOVERY_KV_FILE", str(default_path)))
        self._meta: Dict[str, Dict[str, str]] = {}
        self._load()

    def _load(self) -> None:
        if not self._path.exists():
            return
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8")) or {}
            for key, record in raw.items():
                self._data[key] = base64.b64decode(record["payload"])
                self._meta[key] = {
                    "created_at": record.get("created_at") or _now_iso(),
                    "updated_at": record.get("updated_at") or _now_iso(),
                }
        except (OSError, ValueError, KeyError, TypeError) as exc:
            raise PersistenceError(f"Unreadable key-value file {self._path}") from exc

    def _save(self) -> None:
        obj = {
            key: {
                "payload": base64.b64encode(payload).decode("ascii"),
                **self._meta.get(key, {}),
            }
            for key, payload in self._data.items()
        }
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp.write_text(json.dumps(obj, indent=2), encoding="utf-8")
        os.replace(tmp, self._path)

    def upsert(self, key: str, payload: bytes) -> None:
        with self._lock:
            previous = self._data.get(key)
            previous_meta = self._meta.get(key)
            now = _now_iso()
            self._data[key] = bytes(payload)
            self._meta[key] = {
                "created_at": (previous_meta or {}).get("created_at", now),
                "updated_at": now,
            }
            try:
                self._save()
            except OSError as exc:
                if previous is None:
                    self._data.pop(key, None)
                    self._meta.pop(key, None)
                else:
                    self._data[key] = previous
                    self._meta[key] = previous_meta or {}
                raise PersistenceError(f"Could not write key {key!r}") from exc

    def delete(self, key: str) -> None:
        with self._lock:
            if key not in self._data:
                return
            previous = self._data.pop(key)
            previous_meta = self._meta.pop(key, None)
            try:
                self._save()
            except OSError as exc:
                self._data[key] = previous
                if previous_meta is not None:
                    self._meta[key] = previous_meta
                raise PersistenceError(f"Could not delete key {key!r}") from exc


_store: KeyValueStore | None = None


def get_kv_store() -> KeyValueStore:
    global _store
    if _store is not None:
        return _store
    settings = load_settings()
    if settings.store_impl == "mongo":
        from .kv_store_mongo import MongoKeyValueStore

        _store = MongoKeyValueStore(settings.mongo_url, settings.mongo_db)
    elif settings.store_impl == "file":
        _store = FileKeyValueStore(str(Path(settings.data_dir) / "messages.json"))
    else:
        _store = InMemoryKeyValueStore()
    logger.info("kv_store_selected impl=%s", settings.store_impl)
    return _store
