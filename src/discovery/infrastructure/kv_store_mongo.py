from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Optional

from pymongo.errors import PyMongoError

from ..domain.errors import PersistenceError
from .mongo_support import MotorRunner, connect_database


class MongoKeyValueStore:
    """Key-value records in a ``messages`` collection keyed by ``_id``."""

    def __init__(
        self,
        mongo_url: str = "mongodb://localhost:27017",
        mongo_db: str = "discovery",
        *,
        collection: Any = None,
        runner: Optional[MotorRunner] = None,
    ) -> None:
        self._runner = runner or MotorRunner()
        if collection is None:
            db = connect_database(self._runner, mongo_url, mongo_db)
            collection = db["messages"]
            self._run(collection.create_index("updated_at"))
        self._collection = collection

    def read(self, key: str) -> Optional[bytes]:
        try:
            doc = self._run(self._collection.find_one({"_id": key}))
        except PyMongoError as exc:
            raise PersistenceError(f"Could not read key {key!r}") from exc
        if not doc or doc.get("payload") is None:
            return None
        return bytes(doc["payload"])

    def upsert(self, key: str, payload: bytes) -> None:
        now = datetime.now(UTC)
        try:
            self._run(
                self._collection.update_one(
                    {"_id": key},
                    {
                        "$set": {"payload": bytes(payload), "updated_at": now},
                        "$setOnInsert": {"created_at": now},
                    },
                    upsert=True,
                )
            )
        except PyMongoError as exc:
            raise PersistenceError(f"Could not write key {key!r}") from exc

    def delete(self, key: str) -> None:
        try:
            self._run(self._collection.delete_one({"_id": key}))
        except PyMongoError as exc:
            raise PersistenceError(f"Could not delete key {key!r}") from exc

    def _run(self, awaitable: Any) -> Any:
        return self._runner.run(awaitable)
