import sys
from pathlib import Path
from typing import List, Optional

import pytest

ROOT = Path(__file__).resolve().parents[1]
root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)

from src.discovery.domain.models import NodeCandidate  # noqa: E402
from src.discovery.infrastructure.kv_store import InMemoryKeyValueStore  # noqa: E402
from src.discovery.infrastructure.node_repository import InMemoryNodeRepository  # noqa: E402
from src.discovery.services.content_tree import ContentTree  # noqa: E402
from src.discovery.services.engine import DiscoveryEngine  # noqa: E402


class FakeGenerator:
    """Deterministic stand-in for the LLM-backed generator.

    Returns queued batches first, then ten distinct ``"<parent> <n>"`` names.
    """

    def __init__(self, batches: Optional[List[List[NodeCandidate]]] = None) -> None:
        self.calls: List[str] = []
        self.batches = list(batches or [])
        self.error: Optional[Exception] = None

    def generate(self, parent_name: str) -> List[NodeCandidate]:
        self.calls.append(parent_name)
        if self.error is not None:
            raise self.error
        if self.batches:
            return self.batches.pop(0)
        return [NodeCandidate(name=f"{parent_name} {i}", decoration="✨") for i in range(10)]


@pytest.fixture(autouse=True)
def reset_singletons(monkeypatch):
    from src.discovery.infrastructure import events, kv_store, node_repository
    from src.discovery.services import engine, generator

    monkeypatch.setattr(kv_store, "_store", None, raising=False)
    monkeypatch.setattr(node_repository, "_repo", None, raising=False)
    monkeypatch.setattr(engine, "_tree", None, raising=False)
    monkeypatch.setattr(engine, "_engine", None, raising=False)
    monkeypatch.setattr(events, "_publisher", None, raising=False)
    monkeypatch.setattr(generator, "_BREAKER", generator.CircuitBreaker(threshold=2, cooldown=120.0))
    for key in (
        "DISCOVERY_STORE_IMPL",
        "DISCOVERY_DATA_DIR",
        "REDIS_URL",
        "TELEGRAM_WEBHOOK_SECRET",
        "TELEGRAM_BOT_TOKEN",
        "DISCOVERY_MODEL_PROVIDER",
        "DISCOVERY_IGNORE_OLD_SECONDS",
    ):
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def fake_generator() -> FakeGenerator:
    return FakeGenerator()


@pytest.fixture
def repo() -> InMemoryNodeRepository:
    return InMemoryNodeRepository()


@pytest.fixture
def tree(repo, fake_generator) -> ContentTree:
    return ContentTree(repo, fake_generator)


@pytest.fixture
def kv() -> InMemoryKeyValueStore:
    return InMemoryKeyValueStore()


@pytest.fixture
def engine(kv, tree) -> DiscoveryEngine:
    return DiscoveryEngine(kv, tree)
