"""Tests for huginn.chunking: boundary triggers, near-duplicate merging, bounds and filtering."""

import random

import numpy as np

from huginn.cache.tiered import CacheTier, LRUPolicy
from huginn.chunking.chunker import Chunker, classify_chunk, is_excluded
from huginn.chunking.features import cosine_similarity, feature_vector
from huginn.core.config import ChunkingConfig
from huginn.core.types import (
    ChunkState,
    ChunkType,
    ContentEvent,
    EventKind,
    RepositoryProfile,
)

REPO = "payments-api"


def _profiles(overrides=None):
    overrides = overrides or {}

    def profile_for(repository):
        return overrides.get(repository, RepositoryProfile(repository=repository))

    return profile_for


def _chunker(profiles=None, **overrides):
    cfg = ChunkingConfig(**overrides)
    return Chunker(cfg, profiles or _profiles(), clock=lambda: 5000.0)


def _event(content, t, kind=EventKind.MESSAGE, files=None, session="s1", repo=REPO, tags=None):
    return ContentEvent(
        repository=repo,
        session_id=session,
        content=content,
        kind=kind,
        files=files or [],
        tags=tags or [],
        timestamp=t,
    )


class TestWorkedExample:
    def test_three_files_of_twenty_chars_make_one_chunk_of_sixty(self):
        chunker = _chunker(min_content_length=50, max_content_length=10000, file_change_threshold=3)
        spans = ["a" * 20, "b" * 20, "c" * 20]
        files = ["src/one.py", "src/two.py", "src/three.py"]

        outputs = [
            chunker.ingest(_event(span, 1000.0 + i, EventKind.FILE_CHANGE, [path]))
            for i, (span, path) in enumerate(zip(spans, files))
        ]

        assert outputs[:2] == [[], []]
        assert [len(c.content) for c in outputs[2]] == [60]
        (chunk,) = outputs[2]
        assert chunk.files == sorted(files)
        assert chunk.state == ChunkState.FINALIZED
        assert chunk.chunk_type == ChunkType.CODE_CHANGE
        assert chunker.end_session(REPO, "s1") == []


class TestBoundaryTriggers:
    def test_trigger_below_minimum_is_sticky(self):
        chunker = _chunker(min_content_length=50)
        assert chunker.ingest(_event("x" * 30, 1000.0, EventKind.TODO_COMPLETED)) == []
        assert chunker.stats()["pending_flush"] == 1
        (chunk,) = chunker.ingest(_event("y" * 30, 1001.0))
        assert len(chunk.content) == 60
        assert chunk.chunk_type == ChunkType.TODO
        assert chunker.stats()["pending_flush"] == 0

    def test_todo_trigger_can_be_disabled(self):
        chunker = _chunker(min_content_length=10, todo_completion_trigger=False)
        assert chunker.ingest(_event("finished the migration task", 1000.0, EventKind.TODO_COMPLETED)) == []
        assert chunker.stats()["pending_flush"] == 0

    def test_time_trigger_on_event(self):
        chunker = _chunker(min_content_length=10, time_threshold_minutes=1)
        assert chunker.ingest(_event("first note about caching", 1000.0)) == []
        (chunk,) = chunker.ingest(_event("second note after a pause", 1061.0))
        assert chunk.content == "first note about cachingsecond note after a pause"

    def test_oversized_event_is_split_never_dropped(self):
        chunker = _chunker(min_content_length=10, max_content_length=100)
        content = "".join(chr(ord("a") + (i % 26)) for i in range(250))
        released = chunker.ingest(_event(content, 1000.0))
        assert [len(c.content) for c in released] == [100, 100, 50]
        assert "".join(c.content for c in released) == content
        assert chunker.end_session(REPO, "s1") == []

    def test_short_tail_after_split_stays_buffered(self):
        chunker = _chunker(min_content_length=60, max_content_length=100)
        content = ("lorem ipsum dolor " * 8)[:130]
        assert [len(c.content) for c in chunker.ingest(_event(content, 1000.0))] == [100]
        assert [len(c.content) for c in chunker.end_session(REPO, "s1")] == [30]

    def test_end_of_session_bypasses_minimum(self):
        chunker = _chunker(min_content_length=50)
        chunker.ingest(_event("tiny note", 1000.0))
        (chunk,) = chunker.end_session(REPO, "s1")
        assert chunk.content == "tiny note"

    def test_session_end_event(self):
        chunker = _chunker(min_content_length=50)
        chunker.ingest(_event("tiny note", 1000.0))
        released = chunker.ingest(_event("", 1001.0, EventKind.SESSION_END))
        assert [c.content for c in released] == ["tiny note"]
        assert chunker.open_sessions() == []


class TestMerge:
    SPAN = "Refactored the upload retry loop in uploader.py to use exponential backoff"

    def test_similar_span_merges_into_last_finalized_chunk(self):
        chunker = _chunker(min_content_length=20, similarity_threshold=0.8)
        (first,) = chunker.ingest(_event(self.SPAN, 1000.0, EventKind.TODO_COMPLETED, tags=["uploads"]))
        (merged,) = chunker.ingest(_event(self.SPAN, 1001.0, EventKind.TODO_COMPLETED, tags=["retry"]))

        assert merged.id == first.id
        assert merged.content == f"{self.SPAN}\n{self.SPAN}"
        assert merged.tags == ["retry", "uploads"]
        assert merged.updated_at == 1001.0
        assert merged.created_at == first.created_at
        assert first.content == self.SPAN
        assert chunker.stats()["merged_chunks"] == 1
        assert chunker.stats()["finalized_chunks"] == 1
        assert chunker.end_session(REPO, "s1") == []

    def test_dissimilar_spans_are_separate_chunks(self):
        chunker = _chunker(min_content_length=20, similarity_threshold=0.8)
        second = "Investigated flaky login tests; the session cookie expires during CI runs"
        (a,) = chunker.ingest(_event(self.SPAN, 1000.0, EventKind.TODO_COMPLETED))
        (b,) = chunker.ingest(_event(second, 1001.0, EventKind.TODO_COMPLETED))
        assert (a.content, b.content) == (self.SPAN, second)
        assert a.id != b.id

    def test_only_the_most_recent_chunk_is_a_merge_target(self):
        chunker = _chunker(min_content_length=20, similarity_threshold=0.8)
        other = "Investigated flaky login tests; the session cookie expires during CI runs"
        (a,) = chunker.ingest(_event(self.SPAN, 1000.0, EventKind.TODO_COMPLETED))
        chunker.ingest(_event(other, 1001.0, EventKind.TODO_COMPLETED))
        (c,) = chunker.ingest(_event(self.SPAN, 1002.0, EventKind.TODO_COMPLETED))
        assert c.id != a.id
        assert c.content == self.SPAN

    def test_merge_never_exceeds_maximum(self):
        chunker = _chunker(min_content_length=20, max_content_length=100, similarity_threshold=0.5)
        span = "retry backoff jitter " * 3
        released = chunker.ingest(_event(span, 1000.0, EventKind.TODO_COMPLETED))
        released += chunker.ingest(_event(span, 1001.0, EventKind.TODO_COMPLETED))
        released += chunker.end_session(REPO, "s1")
        assert len({c.id for c in released}) == 2
        assert all(len(c.content) <= 100 for c in released)

    def test_features_of_last_chunk_are_cached_then_forgotten(self):
        tier = CacheTier("features", 100, LRUPolicy())
        chunker = Chunker(ChunkingConfig(min_content_length=10), _profiles(), feature_cache=tier)
        chunker.ingest(_event("cache me if you can", 1000.0, EventKind.TODO_COMPLETED))
        assert tier.size() == 1
        chunker.end_session(REPO, "s1")
        assert tier.size() == 0


class TestSweep:
    def test_sweep_fires_time_trigger_on_idle_buffer(self):
        chunker = _chunker(min_content_length=50)
        assert chunker.ingest(_event("q" * 60, 1000.0)) == []
        assert chunker.sweep(now=1599.0) == []
        (chunk,) = chunker.sweep(now=1600.0)
        assert len(chunk.content) == 60
        assert chunker.sweep(now=9999.0) == []

    def test_idle_buffer_below_minimum_waits_for_more_content(self):
        chunker = _chunker(min_content_length=50)
        chunker.ingest(_event("w" * 20, 1000.0))
        assert chunker.sweep(now=1600.0) == []
        assert chunker.stats()["pending_flush"] == 1
        (chunk,) = chunker.ingest(_event("v" * 40, 1601.0))
        assert len(chunk.content) == 60

    def test_sweep_does_not_repeat_finalized_chunks(self):
        chunker = _chunker(min_content_length=50, file_change_threshold=3)
        released = []
        for i, path in enumerate(["a.py", "b.py", "c.py"]):
            released += chunker.ingest(_event("z" * 20, 1000.0 + i, EventKind.FILE_CHANGE, [path]))
        assert len(released) == 1
        assert chunker.sweep(now=9999.0) == []


class TestFiltering:
    def test_excluded_files_drop_the_event(self):
        chunker = _chunker(min_content_length=10)
        assert chunker.ingest(_event("API_KEY=abc123", 1000.0, files=["deploy/prod.env"])) == []
        assert chunker.ingest(_event("-----BEGIN KEY", 1001.0, files=["certs/server.pem"])) == []
        assert chunker.stats()["dropped_events"] == 2
        assert chunker.end_session(REPO, "s1") == []

    def test_disabled_repository_is_ignored(self):
        profiles = _profiles({"secret": RepositoryProfile(repository="secret", enabled=False)})
        chunker = _chunker(profiles=profiles, min_content_length=10)
        chunker.ingest(_event("anything at all", 1000.0, repo="secret"))
        assert chunker.end_session("secret", "s1") == []

    def test_is_excluded_matches_path_and_basename(self):
        assert is_excluded("config/.env", ["*.env"])
        assert is_excluded("C:\\keys\\id.key", ["*.key"])
        assert is_excluded("vendor/lib.py", ["vendor/*"])
        assert not is_excluded("src/envelope.py", ["*.env"])


class TestClassification:
    def test_priority_order(self):
        assert classify_chunk("Traceback: boom", saw_todo=True, saw_file_change=True) == ChunkType.TODO
        assert classify_chunk("The build failed again", False, True) == ChunkType.ERROR
        assert classify_chunk("We decided to use Qdrant", False, True) == ChunkType.DECISION
        assert classify_chunk("renamed a variable", False, True) == ChunkType.CODE_CHANGE
        assert classify_chunk("just chatting", False, False) == ChunkType.DISCUSSION


class TestProperties:
    def test_sessions_are_independent(self):
        chunker = _chunker(min_content_length=50, file_change_threshold=2)
        chunker.ingest(_event("a" * 30, 1000.0, EventKind.FILE_CHANGE, ["x.py"], session="s1"))
        chunker.ingest(_event("b" * 30, 1000.0, EventKind.FILE_CHANGE, ["y.py"], session="s2"))
        assert chunker.stats()["pending_flush"] == 0
        assert sorted(chunker.open_sessions()) == [(REPO, "s1"), (REPO, "s2")]

    def test_finalized_chunks_respect_bounds_and_merges_only_append(self):
        rng = random.Random(7)
        cfg = dict(min_content_length=40, max_content_length=200, file_change_threshold=3)
        chunker = _chunker(**cfg)
        words = ["cache", "vector", "retry", "chunk", "graph", "pattern", "token", "bucket"]
        latest = {}
        mid_session = []
        t = 1000.0
        for _ in range(400):
            t += rng.uniform(1, 90)
            content = " ".join(rng.choice(words) for _ in range(rng.randint(1, 25)))
            kind = rng.choice([EventKind.MESSAGE, EventKind.FILE_CHANGE, EventKind.TODO_COMPLETED])
            files = [f"src/{rng.randint(0, 9)}.py"] if kind == EventKind.FILE_CHANGE else []
            mid_session += chunker.ingest(_event(content, t, kind, files))
        mid_session += chunker.sweep(now=t + 1)
        tail = chunker.end_session(REPO, "s1")

        for chunk in mid_session:
            assert 40 <= len(chunk.content) <= 200
        for chunk in mid_session + tail:
            assert len(chunk.content) <= 200
            earlier = latest.get(chunk.id)
            if earlier is not None:
                assert chunk.content.startswith(earlier.content + "\n")
                assert chunk.created_at == earlier.created_at
            latest[chunk.id] = chunk


class TestFeatures:
    def test_identical_text_has_similarity_one(self):
        a = feature_vector("retry the upload with backoff")
        assert abs(cosine_similarity(a, a) - 1.0) < 1e-6

    def test_unrelated_text_scores_low(self):
        a = feature_vector("retry the upload with backoff and jitter")
        b = feature_vector("the login form renders a blue button")
        assert cosine_similarity(a, b) < 0.5

    def test_empty_text_is_zero_vector(self):
        vec = feature_vector("", dims=32)
        assert vec.shape == (32,)
        assert not np.any(vec)
        assert cosine_similarity(vec, feature_vector("anything", dims=32)) == 0.0
