"""Tests for huginn.intelligence.builder: pattern promotion, idempotent consumption, folding."""

import asyncio

import pytest

from huginn.core.config import KnowledgeGraphConfig, PatternConfig
from huginn.core.errors import StoreError
from huginn.core.types import ChunkState, ChunkType, MemoryChunk
from huginn.intelligence.builder import PatternGraphBuilder, strongest_neighbors
from huginn.intelligence.signature import pattern_signature
from huginn.store.graph_store import GraphStore
from huginn.store.sqlite_metadata import SQLiteMetadataStore


class _RecordingGraph:
    def __init__(self, fail=None):
        self.fail = fail
        self.mentions = {}
        self.relations = {}

    def upsert_entity(self, entity, chunk_id, now=None):
        if self.fail is not None:
            raise self.fail
        self.mentions.setdefault(entity.name, []).append(chunk_id)
        return entity

    def evict_entity(self, repository, protect=None):
        return None

    def reinforce_relationship(self, repository, source_id, target_id, relation_type, decay, now=None):
        key = (source_id, target_id, relation_type)
        self.relations[key] = self.relations.get(key, 0) + 1
        return 1.0 - decay

    def evict_relationship(self, repository):
        return False


@pytest.fixture
def metadata(tmp_path):
    store = SQLiteMetadataStore(tmp_path / "metadata.db")
    yield store
    store.close()


def _builder(metadata, graph=None, **pattern_cfg):
    return PatternGraphBuilder(
        PatternConfig(**pattern_cfg),
        KnowledgeGraphConfig(),
        metadata,
        graph=graph,
        poll_seconds=10.0,
    )


def _stored(metadata, n, repo="api"):
    chunk = MemoryChunk(
        repository=repo,
        session_id="s1",
        content=f"Build failed on runner {n} using Docker and Redis",
        tags=["ci"],
        chunk_type=ChunkType.ERROR,
        state=ChunkState.STORED,
    )
    metadata.upsert_chunk(chunk)
    return chunk


class TestPromotion:
    def test_promoted_on_nth_observation_not_before(self, metadata):
        builder = _builder(metadata, min_pattern_frequency=3)
        chunks = [_stored(metadata, i) for i in range(3)]
        signature = pattern_signature(chunks[0])
        assert {pattern_signature(c) for c in chunks} == {signature}

        assert builder.observe(chunks[0]).active is False
        assert builder.observe(chunks[1]).active is False
        third = builder.observe(chunks[2])
        assert third.active is True
        assert third.frequency == 3
        assert builder.stats()["promoted"] == 1
        assert metadata.get_pattern("api", signature).active is True

    def test_redelivery_does_not_double_count(self, metadata):
        builder = _builder(metadata, min_pattern_frequency=2)
        chunk = _stored(metadata, 1)
        builder.observe(chunk)
        again = builder.observe(chunk)
        assert again.frequency == 1
        assert again.active is False

    def test_sample_is_bounded(self, metadata):
        builder = _builder(metadata, min_pattern_frequency=10, sample_size=2)
        chunks = [_stored(metadata, i) for i in range(4)]
        for c in chunks:
            pattern = builder.observe(c)
        assert pattern.sample_chunk_ids == [chunks[2].id, chunks[3].id]

    def test_pattern_cap_evicts_least_frequent(self, metadata):
        builder = _builder(metadata, max_patterns=1, min_pattern_frequency=10)
        first = _stored(metadata, 1)
        other = MemoryChunk(repository="api", session_id="s1", content="A decision?", chunk_type=ChunkType.DECISION)
        metadata.upsert_chunk(other)
        builder.observe(first)
        builder.observe(other)
        assert metadata.count_patterns("api") == 1
        assert metadata.get_pattern("api", pattern_signature(first)) is None

    def test_disabled_patterns_observe_nothing(self, metadata):
        builder = _builder(metadata, enabled=False)
        assert builder.observe(_stored(metadata, 1)) is None


class TestFolding:
    def test_promotion_folds_the_whole_sample_then_each_new_chunk(self, metadata):
        graph = _RecordingGraph()
        builder = _builder(metadata, graph=graph, min_pattern_frequency=2)
        c1, c2, c3 = (_stored(metadata, i) for i in range(3))

        builder.observe(c1)
        assert graph.mentions == {}
        builder.observe(c2)
        assert sorted(graph.mentions["Docker"]) == sorted([c1.id, c2.id])
        builder.observe(c3)
        assert graph.mentions["Docker"][-1] == c3.id
        assert all(metadata.is_folded("api", c.id) for c in (c1, c2, c3))
        assert builder.stats()["folded"] == 3

    def test_fold_is_idempotent(self, metadata):
        graph = _RecordingGraph()
        builder = _builder(metadata, graph=graph)
        chunk = _stored(metadata, 1)
        assert builder.fold(chunk) is True
        assert builder.fold(chunk) is False
        assert graph.mentions["Docker"] == [chunk.id]

    def test_redelivered_chunk_of_active_pattern_is_not_refolded(self, metadata):
        graph = _RecordingGraph()
        builder = _builder(metadata, graph=graph, min_pattern_frequency=1)
        chunk = _stored(metadata, 1)
        builder.observe(chunk)
        builder.observe(chunk)
        assert graph.mentions["Redis"] == [chunk.id]

    def test_fold_into_real_graph(self, metadata, tmp_path):
        graph = GraphStore(tmp_path / "kuzu")
        try:
            builder = _builder(metadata, graph=graph, min_pattern_frequency=1)
            chunk = _stored(metadata, 1)
            builder.observe(chunk)
            docker = graph.find_entities("api", "docker")[0]
            rows = strongest_neighbors(graph, [docker.id], min_weight=0.1)
            assert [(r["entity"], r["relation"]) for r in rows] == [("Redis", "co_occurs")]
            assert rows[0]["weight"] == pytest.approx(0.2)
        finally:
            graph.close()


class TestNotificationQueue:
    def test_process_pending_acks_processed_and_missing(self, metadata):
        builder = _builder(metadata)
        chunk = _stored(metadata, 1)
        metadata.enqueue_notification(chunk.id, "api")
        metadata.enqueue_notification("gone", "api")
        summary = builder.process_pending()
        assert summary == {"processed": 1, "missing": 1, "failed": 0}
        assert metadata.count_notifications() == 0

    def test_replayed_notification_is_not_double_counted(self, metadata):
        builder = _builder(metadata, min_pattern_frequency=5)
        chunk = _stored(metadata, 1)
        for _ in range(3):
            metadata.enqueue_notification(chunk.id, "api")
            builder.process_pending()
        assert metadata.get_pattern("api", pattern_signature(chunk)).frequency == 1

    def test_store_errors_leave_the_notification_queued(self, metadata):
        graph = _RecordingGraph(fail=StoreError("kuzu locked"))
        builder = _builder(metadata, graph=graph, min_pattern_frequency=1)
        chunk = _stored(metadata, 1)
        metadata.enqueue_notification(chunk.id, "api")
        summary = builder.process_pending()
        assert summary["failed"] == 1
        (item,) = metadata.pending_notifications()
        assert item["attempts"] == 1

    @pytest.mark.asyncio
    async def test_notify_wakes_the_background_loop(self, metadata):
        builder = _builder(metadata)
        await builder.start()
        try:
            chunk = _stored(metadata, 1)
            metadata.enqueue_notification(chunk.id, "api")
            builder.notify(chunk)
            for _ in range(200):
                if builder.stats()["processed"]:
                    break
                await asyncio.sleep(0.01)
        finally:
            await builder.stop()
        assert builder.stats()["processed"] == 1
        assert metadata.count_notifications() == 0
