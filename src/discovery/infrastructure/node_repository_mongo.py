from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any, Dict, List, Optional, Sequence

from pymongo import ASCENDING, ReturnDocument
from pymongo.errors import BulkWriteError, PyMongoError

from ..domain.errors import PersistenceError
from ..domain.models import Node, NodeCandidate
from .mongo_support import MotorRunner, connect_database
from .node_repository import fresh_candidates

logger = logging.getLogger("discovery.nodes")

_DUPLICATE_KEY = 11000


class MongoNodeRepository:
    """Nodes in a ``nodes`` collection with ids drawn from a ``counters`` document.

    A unique ``(parent_id, name)`` index backs the sibling-name check so
    concurrent writers from other processes cannot create duplicates;
    a candidate rejected by the index is treated like one filtered out
    before the insert.
    """

    def __init__(
        self,
        mongo_url: str = "mongodb://localhost:27017",
        mongo_db: str = "discovery",
        *,
        nodes: Any = None,
        counters: Any = None,
        runner: Optional[MotorRunner] = None,
    ) -> None:
        self._runner = runner or MotorRunner()
        if nodes is None or counters is None:
            db = connect_database(self._runner, mongo_url, mongo_db)
            nodes = db["nodes"]
            counters = db["counters"]
            self._run(nodes.create_index("id", unique=True))
            self._run(nodes.create_index([("parent_id", ASCENDING), ("name", ASCENDING)], unique=True))
            self._run(nodes.create_index("discovered_by"))
            self._run(nodes.create_index("created_at"))
        self._nodes = nodes
        self._counters = counters

    def get(self, node_id: int) -> Optional[Node]:
        try:
            doc = self._run(self._nodes.find_one({"id": node_id}))
        except PyMongoError as exc:
            raise PersistenceError(f"Could not read node {node_id}") from exc
        return self._to_node(doc) if doc else None

    def list_children(self, parent_id: Optional[int]) -> List[Node]:
        try:
            cursor = self._nodes.find({"parent_id": parent_id}).sort("id", ASCENDING)
            docs = self._run(cursor.to_list(length=None))
        except PyMongoError as exc:
            raise PersistenceError(f"Could not list children of {parent_id}") from exc
        return [self._to_node(doc) for doc in docs]

    def count(self) -> int:
        try:
            return int(self._run(self._nodes.count_documents({})))
        except PyMongoError as exc:
            raise PersistenceError("Could not count nodes") from exc

    def insert_children(
        self,
        parent_id: Optional[int],
        candidates: Sequence[NodeCandidate],
        discovered_by: Optional[str] = None,
    ) -> List[Node]:
        siblings = {n.name for n in self.list_children(parent_id)}
        accepted = fresh_candidates(siblings, candidates)
        if not accepted:
            return []
        first_id = self._reserve_ids(len(accepted))
        now = datetime.now(UTC)
        docs: List[Dict[str, Any]] = [
            {
                "id": first_id + offset,
                "name": candidate.name,
                "decoration": candidate.decoration,
                "parent_id": parent_id,
                "discovered_by": discovered_by,
                "created_at": now,
            }
            for offset, candidate in enumerate(accepted)
        ]
        try:
            self._run(self._nodes.insert_many(docs, ordered=False))
        except BulkWriteError as exc:
            errors = exc.details.get("writeErrors", [])
            if any(err.get("code") != _DUPLICATE_KEY for err in errors):
                self._discard([d["id"] for d in docs])
                raise PersistenceError(f"Could not insert children of {parent_id}") from exc
            rejected = {docs[err["index"]]["id"] for err in errors}
            logger.info(
                "sibling_names_taken_concurrently",
                extra={"parent_id": parent_id, "rejected": len(rejected)},
            )
            docs = [d for d in docs if d["id"] not in rejected]
        except PyMongoError as exc:
            self._discard([d["id"] for d in docs])
            raise PersistenceError(f"Could not insert children of {parent_id}") from exc
        return [self._to_node(doc) for doc in docs]

    def _reserve_ids(self, n: int) -> int:
        try:
            doc = self._run(
                self._counters.find_one_and_update(
                    {"_id": "nodes"},
                    {"$inc": {"seq": n}},
                    upsert=True,
                    return_document=ReturnDocument.AFTER,
                )
            )
        except PyMongoError as exc:
            raise PersistenceError("Could not allocate node ids") from exc
        return int(doc["seq"]) - n + 1

    def _discard(self, ids: List[int]) -> None:
        try:
            self._run(self._nodes.delete_many({"id": {"$in": ids}}))
        except PyMongoError:
            logger.exception("partial_insert_cleanup_failed", extra={"ids": ids})

    def _run(self, awaitable: Any) -> Any:
        return self._runner.run(awaitable)

    @staticmethod
    def _to_node(doc: Dict[str, Any]) -> Node:
        created_at = doc.get("created_at") or datetime.now(UTC)
        if isinstance(created_at, datetime) and created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=UTC)
        return Node(
            id=int(doc["id"]),
            name=str(doc["name"]),
            decoration=doc.get("decoration"),
            parent_id=doc.get("parent_id"),
            discovered_by=doc.get("discovered_by"),
            created_at=created_at,
        )
