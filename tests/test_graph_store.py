"""Tests for huginn.store.graph_store: entities, weighted relationships and caps."""

import pytest

from huginn.core.errors import CapacityExceeded
from huginn.core.types import GraphEntity
from huginn.intelligence.entities import entity_id
from huginn.store.graph_store import MAX_CHUNK_REFS, GraphStore


@pytest.fixture
def graph(tmp_path):
    store = GraphStore(tmp_path / "kuzu", max_entities=3, max_relationships=2)
    yield store
    store.close()


def _entity(name, repo="api", entity_type="tech"):
    return GraphEntity(
        id=entity_id(repo, entity_type, name),
        repository=repo,
        entity_type=entity_type,
        name=name,
    )


class TestEntities:
    def test_create_then_mention_again(self, graph):
        qdrant = _entity("Qdrant")
        created = graph.upsert_entity(qdrant, "c1", now=100.0)
        assert created.mention_count == 1
        updated = graph.upsert_entity(qdrant, "c2", now=200.0)
        assert updated.mention_count == 2
        assert updated.chunk_refs == ["c1", "c2"]

        stored = graph.get_entity(qdrant.id)
        assert stored.mention_count == 2
        assert stored.first_seen == 100.0
        assert stored.last_seen == 200.0

    def test_chunk_refs_are_bounded(self, graph):
        qdrant = _entity("Qdrant")
        for i in range(MAX_CHUNK_REFS + 5):
            graph.upsert_entity(qdrant, f"c{i}")
        refs = graph.get_entity(qdrant.id).chunk_refs
        assert len(refs) == MAX_CHUNK_REFS
        assert refs[-1] == f"c{MAX_CHUNK_REFS + 4}"

    def test_find_is_case_insensitive_and_repository_scoped(self, graph):
        graph.upsert_entity(_entity("Qdrant"), "c1")
        graph.upsert_entity(_entity("Qdrant", repo="web"), "c2")
        found = graph.find_entities("api", "qdrant")
        assert [e.repository for e in found] == ["api"]

    def test_entity_cap_and_eviction(self, graph):
        a, b, c, d = (_entity(n) for n in ("A", "B", "C", "D"))
        graph.upsert_entity(a, "c1", now=1.0)
        graph.upsert_entity(a, "c2", now=5.0)
        graph.upsert_entity(b, "c1", now=2.0)
        graph.upsert_entity(c, "c1", now=3.0)
        with pytest.raises(CapacityExceeded):
            graph.upsert_entity(d, "c3")

        # B is least mentioned and oldest, but it is protected
        assert graph.evict_entity("api", protect=[b.id]) == c.id
        graph.upsert_entity(d, "c3")
        assert graph.count_entities("api") == 3
        # Other repositories have their own cap
        graph.upsert_entity(_entity("A", repo="web"), "c9")
        assert graph.count_entities("web") == 1

    def test_evict_with_everything_protected(self, graph):
        a = _entity("A")
        graph.upsert_entity(a, "c1")
        assert graph.evict_entity("api", protect=[a.id]) is None
        assert graph.evict_entity("empty") is None


class TestRelationships:
    def test_weight_follows_decayed_reinforcement(self, graph):
        a, b = _entity("A"), _entity("B")
        graph.upsert_entity(a, "c1")
        graph.upsert_entity(b, "c1")

        w1 = graph.reinforce_relationship("api", a.id, b.id, "co_occurs", decay=0.8)
        w2 = graph.reinforce_relationship("api", b.id, a.id, "co_occurs", decay=0.8)
        assert w1 == pytest.approx(0.2)
        assert w2 == pytest.approx(0.36)
        assert graph.count_relationships("api") == 1
        rel = graph.get_relationship(b.id, a.id, "co_occurs")
        assert rel.weight == pytest.approx(0.36)

    def test_weight_stays_within_unit_interval(self, graph):
        a, b = _entity("A"), _entity("B")
        graph.upsert_entity(a, "c1")
        graph.upsert_entity(b, "c1")
        weight = 0.0
        for _ in range(200):
            weight = graph.reinforce_relationship("api", a.id, b.id, "depends_on", decay=0.5)
        assert 0.0 <= weight <= 1.0
        assert weight == pytest.approx(1.0)

    def test_directed_relations_are_distinct(self, graph):
        a, b = _entity("A"), _entity("B")
        graph.upsert_entity(a, "c1")
        graph.upsert_entity(b, "c1")
        graph.reinforce_relationship("api", a.id, b.id, "depends_on", decay=0.8)
        assert graph.get_relationship(b.id, a.id, "depends_on") is None
        assert graph.get_relationship(a.id, b.id, "depends_on") is not None

    def test_relationship_cap_and_eviction(self, graph):
        a, b, c = _entity("A"), _entity("B"), _entity("C")
        for e in (a, b, c):
            graph.upsert_entity(e, "c1")
        graph.reinforce_relationship("api", a.id, b.id, "co_occurs", decay=0.8, now=1.0)
        graph.reinforce_relationship("api", a.id, b.id, "co_occurs", decay=0.8, now=2.0)
        graph.reinforce_relationship("api", a.id, c.id, "co_occurs", decay=0.8, now=3.0)
        with pytest.raises(CapacityExceeded):
            graph.reinforce_relationship("api", b.id, c.id, "co_occurs", decay=0.8)

        assert graph.evict_relationship("api") is True
        assert graph.get_relationship(a.id, c.id, "co_occurs") is None
        graph.reinforce_relationship("api", b.id, c.id, "co_occurs", decay=0.8)
        assert graph.count_relationships("api") == 2

    def test_self_relationship_rejected(self, graph):
        a = _entity("A")
        graph.upsert_entity(a, "c1")
        with pytest.raises(ValueError):
            graph.reinforce_relationship("api", a.id, a.id, "co_occurs", decay=0.8)

    def test_neighbors_strongest_first(self, graph):
        a, b, c = _entity("A"), _entity("B"), _entity("C")
        for e in (a, b, c):
            graph.upsert_entity(e, "c1")
        graph.reinforce_relationship("api", a.id, b.id, "co_occurs", decay=0.8)
        graph.reinforce_relationship("api", a.id, b.id, "co_occurs", decay=0.8)
        graph.reinforce_relationship("api", c.id, a.id, "depends_on", decay=0.8)

        neighbors = graph.neighbors(a.id)
        assert [(e.name, rel) for e, rel, _ in neighbors] == [("B", "co_occurs"), ("C", "depends_on")]
        assert [e.name for e, _, _ in graph.neighbors(a.id, min_weight=0.3)] == ["B"]
