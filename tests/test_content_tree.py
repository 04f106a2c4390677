from collections import Counter

import pytest

from src.discovery.domain.errors import GenerationError, NotFoundError
from src.discovery.domain.models import NodeCandidate
from src.discovery.infrastructure.node_repository import FileNodeRepository
from src.discovery.services import content_tree as content_tree_module
from src.discovery.services.content_tree import DEFAULT_ROOT_ITEMS, ContentTree


def _names(nodes):
    return [n.name for n in nodes]


def test_root_bootstrap_seeds_four_defaults_once(tree, repo, fake_generator):
    first = tree.get_children(None)
    assert _names(first) == ["Water", "Fire", "Air", "Earth"]
    assert [n.decoration for n in first] == ["💧", "🔥", "💨", "🌍"]
    assert all(n.parent_id is None for n in first)

    second = tree.get_children(None)
    assert [n.id for n in second] == [n.id for n in first]
    assert repo.count() == 4
    assert fake_generator.calls == []


def test_cache_hit_is_idempotent_and_skips_generator(tree, fake_generator):
    water = tree.get_children(None)[0]

    first = tree.get_or_generate_children(water.id, "actor-1")
    assert not first.cache_hit
    assert fake_generator.calls == ["Water"]

    second = tree.get_or_generate_children(water.id, "actor-2")
    assert second.cache_hit
    assert second.created == []
    assert [n.id for n in second.nodes] == [n.id for n in first.nodes]
    assert fake_generator.calls == ["Water"]


def test_ten_distinct_candidates_are_truncated_to_four(tree, repo):
    fire = tree.get_children(None)[1]
    result = tree.get_or_generate_children(fire.id, "actor-1")
    assert _names(result.nodes) == ["Fire 0", "Fire 1", "Fire 2", "Fire 3"]
    assert len(repo.list_children(fire.id)) == 4
    assert result.created == result.nodes


def test_generated_children_record_parent_and_discoverer(tree):
    air = tree.get_children(None)[2]
    children = tree.get_children(air.id, "actor-42")
    assert all(c.parent_id == air.id for c in children)
    assert all(c.discovered_by == "actor-42" for c in children)


def test_duplicate_candidates_in_batch_are_dropped_before_truncation(tree, fake_generator):
    earth = tree.get_children(None)[3]
    fake_generator.batches = [
        [
            NodeCandidate(name="Mud", decoration="🟫"),
            NodeCandidate(name="Mud", decoration="💩"),
            NodeCandidate(name="mud"),
            NodeCandidate(name="Stone"),
            NodeCandidate(name="Clay"),
            NodeCandidate(name="Sand"),
        ]
    ]
    children = tree.get_children(earth.id)
    # exact, case-sensitive matching: "mud" is a different name
    assert _names(children) == ["Mud", "mud", "Stone", "Clay"]
    assert children[0].decoration == "🟫"


def test_concurrent_generation_may_exceed_target_but_never_duplicates(repo, fake_generator):
    tree = ContentTree(repo, fake_generator)
    water = tree.get_children(None)[0]

    class RacingGenerator:
        """Another actor finishes generating for the same parent mid-call."""

        def generate(self, parent_name):
            repo.insert_children(
                water.id,
                [NodeCandidate(name=n) for n in ("Steam", "Ice", "Rain", "Snow")],
                discovered_by="other-actor",
            )
            return [NodeCandidate(name=n) for n in ("Ice", "Rain", "Wave", "Tide", "Mist", "Dew")]

    racing = ContentTree(repo, RacingGenerator())
    result = racing.get_or_generate_children(water.id, "actor-1")

    names = _names(result.nodes)
    assert len(names) > 4
    assert Counter(names).most_common(1)[0][1] == 1
    assert _names(result.created) == ["Wave", "Tide", "Mist", "Dew"]
    assert {"Steam", "Snow"} <= set(names)


def test_sibling_names_stay_unique_across_sequential_batches(repo):
    parent = repo.insert_children(None, [NodeCandidate(name="Root")])[0]
    repo.insert_children(parent.id, [NodeCandidate(name=n) for n in ("A", "B", "C")])
    repo.insert_children(parent.id, [NodeCandidate(name=n) for n in ("C", "D", "A", "E")])
    names = _names(repo.list_children(parent.id))
    assert names == ["A", "B", "C", "D", "E"]
    assert len(names) == len(set(names))


def test_unknown_parent_raises_not_found(tree, fake_generator):
    with pytest.raises(NotFoundError):
        tree.get_children(999)
    assert fake_generator.calls == []


def test_failed_generation_leaves_cache_miss_and_recovers(tree, repo, fake_generator):
    fire = tree.get_children(None)[1]
    fake_generator.error = GenerationError("upstream down")

    with pytest.raises(GenerationError):
        tree.get_children(fire.id)
    assert repo.list_children(fire.id) == []

    fake_generator.error = None
    result = tree.get_or_generate_children(fire.id)
    assert not result.cache_hit
    assert len(result.nodes) == 4


def test_storage_failure_during_insert_surfaces_as_generation_error(tmp_path, fake_generator, monkeypatch):
    repo = FileNodeRepository(str(tmp_path / "nodes.json"))
    tree = ContentTree(repo, fake_generator)
    water = tree.get_children(None)[0]

    def _disk_full():
        raise OSError("disk full")

    monkeypatch.setattr(repo, "_save", _disk_full)
    with pytest.raises(GenerationError):
        tree.get_children(water.id)
    assert repo.list_children(water.id) == []
    assert repo.count() == 4


def test_empty_generation_returns_empty_and_retries_next_time(tree, fake_generator):
    air = tree.get_children(None)[2]
    fake_generator.batches = [[]]
    assert tree.get_children(air.id) == []
    assert len(tree.get_children(air.id)) == 4
    assert fake_generator.calls == ["Air", "Air"]


def test_created_nodes_are_announced(tree, monkeypatch):
    published = []
    monkeypatch.setattr(content_tree_module, "publish_event", lambda kind, payload: published.append((kind, payload)))

    roots = tree.get_children(None)
    assert [p[1]["name"] for p in published] == [item.name for item in DEFAULT_ROOT_ITEMS]

    published.clear()
    tree.get_children(roots[0].id, "actor-7")
    tree.get_children(roots[0].id, "actor-8")
    assert len(published) == 4
    assert all(kind == "node.discovered" for kind, _ in published)
    assert published[0][1]["discovered_by"] == "actor-7"


def test_accept_count_is_configurable(repo, fake_generator):
    tree = ContentTree(repo, fake_generator, accept_count=2)
    water = tree.get_children(None)[0]
    assert len(tree.get_children(water.id)) == 2
