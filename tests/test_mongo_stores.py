from datetime import UTC, datetime
from typing import Any, Dict, List

import pytest
from pymongo.errors import BulkWriteError, ServerSelectionTimeoutError

from src.discovery.domain.errors import PersistenceError
from src.discovery.domain.models import NodeCandidate
from src.discovery.infrastructure.kv_store_mongo import MongoKeyValueStore
from src.discovery.infrastructure.mongo_support import MotorRunner
from src.discovery.infrastructure.node_repository_mongo import MongoNodeRepository


def _matches(doc: Dict[str, Any], query: Dict[str, Any]) -> bool:
    for field, expected in query.items():
        if isinstance(expected, dict) and "$in" in expected:
            if doc.get(field) not in expected["$in"]:
                return False
        elif doc.get(field) != expected:
            return False
    return True


class _FakeCursor:
    def __init__(self, docs: List[Dict[str, Any]]) -> None:
        self._docs = docs

    def sort(self, field: str, direction: int) -> "_FakeCursor":
        self._docs = sorted(self._docs, key=lambda d: d[field], reverse=direction < 0)
        return self

    async def to_list(self, length=None) -> List[Dict[str, Any]]:
        return list(self._docs)


class _FakeCollection:
    def __init__(self, unique: tuple = ()) -> None:
        self.docs: List[Dict[str, Any]] = []
        self._unique = unique
        self.fail_with: Exception | None = None

    def _check(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    async def find_one(self, query):
        self._check()
        return next((dict(d) for d in self.docs if _matches(d, query)), None)

    def find(self, query):
        self._check()
        return _FakeCursor([dict(d) for d in self.docs if _matches(d, query)])

    async def count_documents(self, query):
        return sum(1 for d in self.docs if _matches(d, query))

    async def update_one(self, query, update, upsert=False):
        self._check()
        doc = next((d for d in self.docs if _matches(d, query)), None)
        if doc is None:
            if not upsert:
                return None
            doc = dict(query)
            doc.update(update.get("$setOnInsert", {}))
            self.docs.append(doc)
        doc.update(update.get("$set", {}))

    async def delete_one(self, query):
        self._check()
        for i, d in enumerate(self.docs):
            if _matches(d, query):
                del self.docs[i]
                return

    async def delete_many(self, query):
        self.docs = [d for d in self.docs if not _matches(d, query)]

    async def find_one_and_update(self, query, update, upsert=False, return_document=None):
        self._check()
        doc = next((d for d in self.docs if _matches(d, query)), None)
        if doc is None:
            doc = dict(query)
            self.docs.append(doc)
        for field, amount in update.get("$inc", {}).items():
            doc[field] = doc.get(field, 0) + amount
        return dict(doc)

    async def insert_many(self, docs, ordered=True):
        self._check()
        errors = []
        for index, doc in enumerate(docs):
            key = tuple(doc.get(f) for f in self._unique)
            if self._unique and any(tuple(d.get(f) for f in self._unique) == key for d in self.docs):
                errors.append({"index": index, "code": 11000, "errmsg": "E11000 duplicate key error"})
                continue
            self.docs.append(dict(doc))
        if errors:
            raise BulkWriteError({"writeErrors": errors, "nInserted": len(docs) - len(errors)})


@pytest.fixture
def runner():
    r = MotorRunner()
    yield r
    r.close()


@pytest.fixture
def mongo_kv(runner):
    collection = _FakeCollection()
    return MongoKeyValueStore(collection=collection, runner=runner), collection


@pytest.fixture
def mongo_repo(runner):
    nodes = _FakeCollection(unique=("parent_id", "name"))
    counters = _FakeCollection()
    return MongoNodeRepository(nodes=nodes, counters=counters, runner=runner), nodes


def test_runner_passes_plain_values_through(runner):
    async def _answer():
        return 42

    assert runner.run(_answer()) == 42
    assert runner.run("plain") == "plain"


def test_kv_upsert_read_delete(mongo_kv):
    store, collection = mongo_kv
    assert store.read("session:1") is None

    store.upsert("session:1", b"one")
    created_at = collection.docs[0]["created_at"]
    store.upsert("session:1", b"two")

    assert store.read("session:1") == b"two"
    assert len(collection.docs) == 1
    assert collection.docs[0]["created_at"] == created_at
    assert collection.docs[0]["updated_at"] >= created_at

    store.delete("session:1")
    store.delete("session:1")
    assert store.read("session:1") is None


def test_kv_driver_errors_become_persistence_errors(mongo_kv):
    store, collection = mongo_kv
    collection.fail_with = ServerSelectionTimeoutError("no primary")
    with pytest.raises(PersistenceError):
        store.read("k")
    with pytest.raises(PersistenceError):
        store.upsert("k", b"v")
    with pytest.raises(PersistenceError):
        store.delete("k")


def test_repo_assigns_sequential_ids_and_filters_siblings(mongo_repo):
    repo, _ = mongo_repo
    roots = repo.insert_children(None, [NodeCandidate(name="Water", decoration="💧"), NodeCandidate(name="Fire")])
    assert [n.id for n in roots] == [1, 2]

    kids = repo.insert_children(1, [NodeCandidate(name="Ice"), NodeCandidate(name="Ice"), NodeCandidate(name="Steam")], "u1")
    assert [(n.id, n.name) for n in kids] == [(3, "Ice"), (4, "Steam")]
    assert repo.insert_children(1, [NodeCandidate(name="Steam")]) == []

    assert [n.name for n in repo.list_children(1)] == ["Ice", "Steam"]
    assert repo.get(1).label == "💧 Water"
    assert repo.get(3).discovered_by == "u1"
    assert repo.get(99) is None
    assert repo.count() == 4


def test_repo_drops_names_taken_by_a_concurrent_writer(mongo_repo, monkeypatch):
    repo, nodes = mongo_repo
    repo.insert_children(None, [NodeCandidate(name="Water")])

    # another process inserts "Ice" after this one listed the siblings
    original_list = repo.list_children

    def stale_list(parent_id):
        result = original_list(parent_id)
        nodes.docs.append(
            {"id": 500, "name": "Ice", "parent_id": 1, "decoration": None, "discovered_by": "other",
             "created_at": datetime.now(UTC)}
        )
        return result

    monkeypatch.setattr(repo, "list_children", stale_list)
    created = repo.insert_children(1, [NodeCandidate(name="Ice"), NodeCandidate(name="Rain")])
    assert [n.name for n in created] == ["Rain"]
    names = [d["name"] for d in nodes.docs if d["parent_id"] == 1]
    assert sorted(names) == ["Ice", "Rain"]


def test_repo_insert_failure_discards_partial_batch(mongo_repo, monkeypatch):
    repo, nodes = mongo_repo
    repo.insert_children(None, [NodeCandidate(name="Water")])

    async def half_then_fail(docs, ordered=True):
        nodes.docs.append(dict(docs[0]))
        raise BulkWriteError({"writeErrors": [{"index": 1, "code": 121, "errmsg": "validation"}]})

    monkeypatch.setattr(nodes, "insert_many", half_then_fail)
    with pytest.raises(PersistenceError):
        repo.insert_children(1, [NodeCandidate(name="Ice"), NodeCandidate(name="Rain")])
    assert repo.list_children(1) == []
    assert repo.count() == 1
