from __future__ import annotations

import json
import logging
import os
from datetime import UTC, datetime
from pathlib import Path
from threading import RLock
from typing import Dict, List, Optional, Protocol, Sequence

from ..config import load_settings
from ..domain.errors import PersistenceError
from ..domain.models import Node, NodeCandidate

logger = logging.getLogger("discovery.nodes")


class NodeRepository(Protocol):
    def get(self, node_id: int) -> Optional[Node]: ...

    def list_children(self, parent_id: Optional[int]) -> List[Node]: ...

    def insert_children(
        self,
        parent_id: Optional[int],
        candidates: Sequence[NodeCandidate],
        discovered_by: Optional[str] = None,
    ) -> List[Node]: ...

    def count(self) -> int: ...


def fresh_candidates(existing_names: set[str], candidates: Sequence[NodeCandidate]) -> List[NodeCandidate]:
    """Drop candidates whose name is already taken by a sibling or an earlier candidate."""
    seen = set(existing_names)
    out: List[NodeCandidate] = []
    for candidate in candidates:
        if candidate.name in seen:
            continue
        seen.add(candidate.name)
        out.append(candidate)
    return out


class InMemoryNodeRepository:
    """Node store kept in process memory.

    ``insert_children`` filters against the siblings present at insert
    time and applies the whole batch under one lock, so a batch is either
    fully visible or not at all.
    """

    def __init__(self) -> None:
        self._nodes: Dict[int, Node] = {}
        self._children: Dict[Optional[int], List[int]] = {}
        self._counter: int = 0
        self._lock = RLock()

    def get(self, node_id: int) -> Optional[Node]:
        with self._lock:
            return self._nodes.get(node_id)

    def list_children(self, parent_id: Optional[int]) -> List[Node]:
        with self._lock:
            return [self._nodes[nid] for nid in self._children.get(parent_id, [])]

    def count(self) -> int:
        with self._lock:
            return len(self._nodes)

    def insert_children(
        self,
        parent_id: Optional[int],
        candidates: Sequence[NodeCandidate],
        discovered_by: Optional[str] = None,
    ) -> List[Node]:
        with self._lock:
            siblings = {n.name for n in self.list_children(parent_id)}
            accepted = fresh_candidates(siblings, candidates)
            if not accepted:
                return []
            now = datetime.now(UTC)
            created: List[Node] = []
            next_id = self._counter
            for candidate in accepted:
                next_id += 1
                created.append(
                    Node(
                        id=next_id,
                        name=candidate.name,
                        decoration=candidate.decoration,
                        parent_id=parent_id,
                        discovered_by=discovered_by,
                        created_at=now,
                    )
                )
            self._commit(created)
            return created

    def _commit(self, created: List[Node]) -> None:
        for node in created:
            self._nodes[node.id] = node
            self._children.setdefault(node.parent_id, []).append(node.id)
        self._counter = max(self._counter, max(n.id for n in created))

    def _rollback(self, created: List[Node], counter: int) -> None:
        for node in created:
            self._nodes.pop(node.id, None)
            ids = self._children.get(node.parent_id, [])
            if node.id in ids:
                ids.remove(node.id)
            if not ids:
                self._children.pop(node.parent_id, None)
        self._counter = counter


class FileNodeRepository(InMemoryNodeRepository):
    """JSON file-backed node store for development persistence.

    Structure: ``{"counter": <last id>, "nodes": [<node dict>, ...]}``.
    Thread-safe with a coarse RLock; suitable for dev/test, not high concurrency.
    """

    def __init__(self, file_path: Optional[str] = None) -> None:
        super().__init__()
        default_path = Path(load_settings().data_dir) / "nodes.json"
        self._path = Path(file_path or os.getenv("DISCOVERY_NODES_FILE", str(default_path)))
        self._load()

    def _load(self) -> None:
        if not self._path.exists():
            return
        try:
            data = json.loads(self._path.read_text(encoding="utf-8")) or {}
            nodes = [Node(**raw) for raw in data.get("nodes", [])]
        except (OSError, ValueError, TypeError) as exc:
            raise PersistenceError(f"Unreadable node file {self._path}") from exc
        for node in sorted(nodes, key=lambda n: n.id):
            self._nodes[node.id] = node
            self._children.setdefault(node.parent_id, []).append(node.id)
        self._counter = max([int(data.get("counter") or 0)] + [n.id for n in nodes])

    def _save(self) -> None:
        obj = {
            "counter": self._counter,
            "nodes": [n.model_dump(mode="json") for n in sorted(self._nodes.values(), key=lambda n: n.id)],
        }
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp.write_text(json.dumps(obj, indent=2, ensure_ascii=False), encoding="utf-8")
        os.replace(tmp, self._path)

    def _commit(self, created: List[Node]) -> None:
        counter = self._counter
        super()._commit(created)
        try:
            self._save()
        except OSError as exc:
            self._rollback(created, counter)
            raise PersistenceError(f"Could not persist {len(created)} nodes") from exc


_repo: NodeRepository | None = None


def get_node_repo() -> NodeRepository:
    global _repo
    if _repo is not None:
        return _repo
    settings = load_settings()
    if settings.store_impl == "mongo":
        from .node_repository_mongo import MongoNodeRepository

        _repo = MongoNodeRepository(settings.mongo_url, settings.mongo_db)
    elif settings.store_impl == "file":
        _repo = FileNodeRepository(str(Path(settings.data_dir) / "nodes.json"))
    else:
        _repo = InMemoryNodeRepository()
    logger.info("node_repository_selected impl=%s", settings.store_impl)
    return _repo
