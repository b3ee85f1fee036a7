"""
Huginn Chunker
--------------
Turns the ordered event stream of each (repository, session) into bounded
memory chunks.

State per session:
  Open          buffer accumulating event content
  PendingFlush  a boundary trigger fired but the buffer is still below the
                minimum; it is cut as soon as it reaches the minimum
  Finalized     the cut chunk is returned to the caller (and from there to
                the embedding gateway)

Boundary triggers (any one suffices):
  - accumulated length >= max_content_length
  - a todo-completed event, when the todo trigger is enabled
  - distinct files touched since the last cut >= file_change_threshold
  - time since the last cut >= time_threshold_minutes

End of session bypasses the minimum.

Near-duplicates: a new cut is compared with the session's most recently
finalized chunk. When similar enough, it is merged into that chunk, which is
returned again under the same id with its content and updated_at refreshed.
The gateway re-stores it in place of the earlier version.
"""

import re
import time
import logging
import threading
from fnmatch import fnmatch
from typing import Callable, Dict, List, Optional, Set, Tuple

import numpy as np

from huginn.cache.tiered import CacheTier
from huginn.chunking.features import cosine_similarity, feature_vector
from huginn.core.config import ChunkingConfig
from huginn.core.errors import ChunkValidationError
from huginn.core.types import (
    ChunkState,
    ChunkType,
    ContentEvent,
    EventKind,
    MemoryChunk,
    RepositoryProfile,
)

logger = logging.getLogger("Huginn.Chunker")

ERROR_MARKERS = re.compile(r"\b(error|exception|traceback|failed|failure|panic)\b", re.IGNORECASE)
DECISION_MARKERS = re.compile(r"\b(decided|decision|chose|agreed|we will go with)\b", re.IGNORECASE)

SessionKey = Tuple[str, str]


def classify_chunk(content: str, saw_todo: bool, saw_file_change: bool) -> ChunkType:
    if saw_todo:
        return ChunkType.TODO
    if ERROR_MARKERS.search(content):
        return ChunkType.ERROR
    if DECISION_MARKERS.search(content):
        return ChunkType.DECISION
    if saw_file_change:
        return ChunkType.CODE_CHANGE
    return ChunkType.DISCUSSION


def is_excluded(path: str, patterns: List[str]) -> bool:
    """True when the path or its basename matches any exclusion glob."""
    normalized = path.replace("\\", "/")
    basename = normalized.rsplit("/", 1)[-1]
    return any(fnmatch(normalized, p) or fnmatch(basename, p) for p in patterns)


class _SessionState:
    def __init__(self, repository: str, session_id: str, now: float):
        self.repository = repository
        self.session_id = session_id
        self.lock = threading.Lock()
        self.parts: List[str] = []
        self.length = 0
        self.files: Set[str] = set()
        self.tags: Set[str] = set()
        self.saw_todo = False
        self.saw_file_change = False
        self.opened_at: Optional[float] = None
        self.last_cut_at = now
        self.pending_flush = False
        self.last: Optional[MemoryChunk] = None

    def reset_buffer(self, now: float) -> None:
        self.parts = []
        self.length = 0
        self.files = set()
        self.tags = set()
        self.saw_todo = False
        self.saw_file_change = False
        self.opened_at = None
        self.last_cut_at = now
        self.pending_flush = False


class Chunker:
    """
    Per-session chunk state machine.

    `ingest`, `end_session`, `sweep` and `flush_all` return the chunks they
    finalized or merged into, in order; the caller hands them to the gateway.
    Sessions are independent: each one has its own lock and no call blocks on
    I/O.
    """

    def __init__(
        self,
        config: ChunkingConfig,
        profile_for: Callable[[str], RepositoryProfile],
        feature_cache: Optional[CacheTier] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self._profile_for = profile_for
        self.feature_cache = feature_cache
        self._clock = clock
        self._sessions: Dict[SessionKey, _SessionState] = {}
        self._registry_lock = threading.Lock()
        self.dropped_events = 0
        self.finalized_count = 0
        self.merged_count = 0

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def ingest(self, event: ContentEvent) -> List[MemoryChunk]:
        if event.kind == EventKind.SESSION_END:
            return self.end_session(event.repository, event.session_id)

        profile = self._profile_for(event.repository)
        if not profile.enabled:
            self.dropped_events += 1
            logger.debug("Dropped event for disabled repository %s", event.repository)
            return []
        excluded = [f for f in event.files if is_excluded(f, profile.exclude_patterns)]
        if excluded:
            self.dropped_events += 1
            logger.info(
                "Dropped event in %s touching excluded files: %s",
                event.repository, ", ".join(excluded),
            )
            return []

        state = self._state_for(event.repository, event.session_id, event.timestamp)
        with state.lock:
            self._accumulate(state, event)
            if self._trigger_fired(state, event):
                state.pending_flush = True
            if state.pending_flush and state.length >= self.config.min_content_length:
                return self._cut(state, event.timestamp, bypass_minimum=False)
            return []

    def end_session(self, repository: str, session_id: str) -> List[MemoryChunk]:
        """Flush the buffer, even below the minimum, and forget the session."""
        with self._registry_lock:
            state = self._sessions.pop((repository, session_id), None)
        if state is None:
            return []
        now = self._clock()
        with state.lock:
            finalized: List[MemoryChunk] = []
            if state.length > 0:
                finalized.extend(self._cut(state, now, bypass_minimum=True))
            if state.last is not None:
                self._forget_features(state.last)
                state.last = None
        logger.debug(
            "Session %s/%s ended; %d chunk(s) finalized", repository, session_id, len(finalized)
        )
        return finalized

    def sweep(self, now: Optional[float] = None) -> List[MemoryChunk]:
        """Fire the time trigger on buffers that have been idle for the time threshold."""
        now = self._clock() if now is None else now
        window = self.config.time_threshold_minutes * 60.0
        with self._registry_lock:
            states = list(self._sessions.values())

        finalized: List[MemoryChunk] = []
        for state in states:
            with state.lock:
                if state.length > 0 and now - state.last_cut_at >= window:
                    state.pending_flush = True
                    if state.length >= self.config.min_content_length:
                        finalized.extend(self._cut(state, now, bypass_minimum=False))
        return finalized

    def flush_all(self) -> List[MemoryChunk]:
        """Shutdown path: end every open session."""
        with self._registry_lock:
            keys = list(self._sessions.keys())
        finalized: List[MemoryChunk] = []
        for repository, session_id in keys:
            finalized.extend(self.end_session(repository, session_id))
        return finalized

    def open_sessions(self) -> List[SessionKey]:
        with self._registry_lock:
            return list(self._sessions.keys())

    def stats(self) -> Dict[str, int]:
        with self._registry_lock:
            states = list(self._sessions.values())
        return {
            "open_sessions": len(states),
            "pending_flush": sum(1 for s in states if s.pending_flush),
            "dropped_events": self.dropped_events,
            "finalized_chunks": self.finalized_count,
            "merged_chunks": self.merged_count,
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _state_for(self, repository: str, session_id: str, now: float) -> _SessionState:
        key = (repository, session_id)
        with self._registry_lock:
            state = self._sessions.get(key)
            if state is None:
                state = _SessionState(repository, session_id, now)
                self._sessions[key] = state
            return state

    def _accumulate(self, state: _SessionState, event: ContentEvent) -> None:
        if state.opened_at is None:
            state.opened_at = event.timestamp
        if event.content:
            state.parts.append(event.content)
            state.length += len(event.content)
        state.files.update(event.files)
        state.tags.update(t.lower() for t in event.tags)
        if event.kind == EventKind.TODO_COMPLETED:
            state.saw_todo = True
        elif event.kind == EventKind.FILE_CHANGE:
            state.saw_file_change = True

    def _trigger_fired(self, state: _SessionState, event: ContentEvent) -> bool:
        cfg = self.config
        if state.length >= cfg.max_content_length:
            return True
        if cfg.todo_completion_trigger and event.kind == EventKind.TODO_COMPLETED:
            return True
        if len(state.files) >= cfg.file_change_threshold:
            return True
        return event.timestamp - state.last_cut_at >= cfg.time_threshold_minutes * 60.0

    def _check_length(self, content: str) -> None:
        if len(content) > self.config.max_content_length:
            raise ChunkValidationError(
                "chunk content exceeds maximum length",
                length=len(content),
                maximum=self.config.max_content_length,
            )

    def _split(self, content: str) -> List[str]:
        try:
            self._check_length(content)
            return [content]
        except ChunkValidationError as e:
            logger.debug("Splitting oversized buffer: %s", e)
            step = self.config.max_content_length
            return [content[i:i + step] for i in range(0, len(content), step)]

    def _cut(self, state: _SessionState, now: float, bypass_minimum: bool) -> List[MemoryChunk]:
        content = "".join(state.parts)
        pieces = self._split(content)

        # A short tail after splitting stays buffered unless the session is ending
        remainder = ""
        if not bypass_minimum and len(pieces) > 1 and len(pieces[-1]) < self.config.min_content_length:
            remainder = pieces.pop()

        chunk_type = classify_chunk(content, state.saw_todo, state.saw_file_change)
        files = sorted(state.files)
        tags = sorted(state.tags)
        created_at = state.opened_at if state.opened_at is not None else now

        finalized: List[MemoryChunk] = []
        for piece in pieces:
            chunk = MemoryChunk(
                repository=state.repository,
                session_id=state.session_id,
                content=piece,
                tags=list(tags),
                files=list(files),
                chunk_type=chunk_type,
                state=ChunkState.FINALIZED,
                created_at=created_at,
                updated_at=now,
            )
            finalized.append(self._merge_or_finalize(state, chunk, now))

        state.reset_buffer(now)
        if remainder:
            state.parts = [remainder]
            state.length = len(remainder)
            state.opened_at = now
        return finalized

    def _merge_or_finalize(self, state: _SessionState, chunk: MemoryChunk, now: float) -> MemoryChunk:
        """Merge into the session's last finalized chunk, or finalize `chunk` as the new last one."""
        last = state.last
        if last is not None:
            combined_length = len(last.content) + 1 + len(chunk.content)
            similarity = cosine_similarity(self._features(last), self._features(chunk))
            if (
                similarity >= self.config.similarity_threshold
                and combined_length <= self.config.max_content_length
            ):
                chunk_type = chunk.chunk_type if last.chunk_type == ChunkType.DISCUSSION else last.chunk_type
                # Chunks already returned are never mutated
                merged = last.model_copy(update={
                    "content": f"{last.content}\n{chunk.content}",
                    "tags": sorted(set(last.tags) | set(chunk.tags)),
                    "files": sorted(set(last.files) | set(chunk.files)),
                    "chunk_type": chunk_type,
                    "state": ChunkState.FINALIZED,
                    "updated_at": now,
                })
                state.last = merged
                self._cache_features(merged)
                self.merged_count += 1
                logger.debug(
                    "Merged near-duplicate into chunk %s (similarity %.3f)", merged.id, similarity
                )
                return merged
            self._forget_features(last)

        state.last = chunk
        self._cache_features(chunk)
        self.finalized_count += 1
        logger.debug(
            "Finalized chunk %s for %s/%s (%d chars, %s)",
            chunk.id, chunk.repository, chunk.session_id, len(chunk.content), chunk.chunk_type.value,
        )
        return chunk

    def _features(self, chunk: MemoryChunk) -> np.ndarray:
        if self.feature_cache is not None:
            cached, found = self.feature_cache.get(("features", chunk.id))
            if found:
                return cached
        return self._cache_features(chunk)

    def _cache_features(self, chunk: MemoryChunk) -> np.ndarray:
        vec = feature_vector(chunk.content, self.config.feature_dims)
        if self.feature_cache is not None:
            self.feature_cache.put(("features", chunk.id), vec)
        return vec

    def _forget_features(self, chunk: MemoryChunk) -> None:
        if self.feature_cache is not None:
            self.feature_cache.invalidate(("features", chunk.id))
