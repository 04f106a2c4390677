from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from ..config import DEFAULT_GENERATE_ACCEPT
from ..domain.errors import DiscoveryError, GenerationError, NotFoundError
from ..domain.models import Node, NodeCandidate
from ..infrastructure.events import publish_event
from ..infrastructure.node_repository import NodeRepository, fresh_candidates
from ..observability.metrics import CHILDREN_LOOKUPS, GENERATION_FAILURES, NODES_CREATED
from .generator import Generator

logger = logging.getLogger("discovery.tree")

DEFAULT_ROOT_ITEMS: List[NodeCandidate] = [
    NodeCandidate(name="Water", decoration="💧"),
    NodeCandidate(name="Fire", decoration="🔥"),
    NodeCandidate(name="Air", decoration="💨"),
    NodeCandidate(name="Earth", decoration="🌍"),
]


@dataclass
class ChildrenResult:
    nodes: List[Node]
    created: List[Node] = field(default_factory=list)
    cache_hit: bool = True


class ContentTree:
    """Lazily materialized tree of discoverable items.

    Children of a node are generated the first time somebody asks for them
    and are persisted, so every later visitor sees the same set. No lock is
    held across read, generate and insert: two first visits racing on the
    same parent can both generate, which may leave more than
    ``accept_count`` children but never two siblings with the same name,
    because the repository re-checks names when it inserts.
    """

    def __init__(
        self,
        repo: NodeRepository,
        generator: Generator,
        accept_count: int = DEFAULT_GENERATE_ACCEPT,
        root_items: Optional[List[NodeCandidate]] = None,
    ) -> None:
        self._repo = repo
        self._generator = generator
        self._accept_count = accept_count
        self._root_items = list(root_items or DEFAULT_ROOT_ITEMS)

    def get_node(self, node_id: int) -> Node:
        node = self._repo.get(node_id)
        if node is None:
            raise NotFoundError(f"Node {node_id} does not exist")
        return node

    def get_children(self, parent_id: Optional[int], actor_id: Optional[str] = None) -> List[Node]:
        return self.get_or_generate_children(parent_id, actor_id).nodes

    def get_or_generate_children(self, parent_id: Optional[int], actor_id: Optional[str] = None) -> ChildrenResult:
        children = self._repo.list_children(parent_id)
        if children:
            CHILDREN_LOOKUPS.labels(outcome="hit").inc()
            return ChildrenResult(nodes=children)

        if parent_id is None:
            created = self._repo.insert_children(None, self._root_items, discovered_by=None)
            CHILDREN_LOOKUPS.labels(outcome="bootstrap").inc()
            logger.info("root_bootstrapped count=%d", len(created))
            self._announce(created)
            return ChildrenResult(nodes=self._repo.list_children(None), created=created, cache_hit=False)

        parent = self.get_node(parent_id)
        created = self._generate(parent, actor_id)
        CHILDREN_LOOKUPS.labels(outcome="generated").inc()
        self._announce(created)
        return ChildrenResult(nodes=self._repo.list_children(parent_id), created=created, cache_hit=False)

    def _generate(self, parent: Node, actor_id: Optional[str]) -> List[Node]:
        try:
            candidates = self._generator.generate(parent.name)
            siblings = {n.name for n in self._repo.list_children(parent.id)}
            accepted = fresh_candidates(siblings, candidates)[: self._accept_count]
            created = self._repo.insert_children(parent.id, accepted, discovered_by=actor_id)
        except GenerationError:
            GENERATION_FAILURES.inc()
            raise
        except DiscoveryError as exc:
            GENERATION_FAILURES.inc()
            raise GenerationError(f"Could not store children of {parent.name!r}") from exc
        logger.info(
            "children_generated parent=%s requested=%d accepted=%d stored=%d",
            parent.id,
            len(candidates),
            len(accepted),
            len(created),
        )
        return created

    def _announce(self, created: List[Node]) -> None:
        if not created:
            return
        NODES_CREATED.inc(len(created))
        for node in created:
            publish_event("node.discovered", node.model_dump(mode="json"))
