"""
Huginn Embedding/Vector Gateway
-------------------------------
Takes finalized chunks from the chunker and makes them durable:

  open -> embedded -> stored     (terminal success)
                   -> failed     (terminal; recorded for reprocessing)

Embedding calls share one process-wide token bucket and retry retryable
provider errors with capped exponential backoff. Vector upserts retry on
StoreError. A caller deadline aborts outstanding calls; the chunk is then
recorded as deferred instead of being dropped. Storing a chunk that is
already stored with the same content is a no-op; a merged chunk (same id,
newer content) replaces the stored version. Stores of one chunk id run one
at a time.

Chunks arrive through `submit`, which queues them for a small pool of
async workers so the chunker never waits on network I/O.
"""

import asyncio
import hashlib
import logging
import random
import time
from typing import Awaitable, Callable, Dict, List, Optional

from huginn.cache.tiered import TieredCache
from huginn.core.config import EmbeddingConfig
from huginn.core.errors import (
    DeadlineExceeded,
    EmbeddingFailure,
    ProviderError,
    StorageFailure,
    StoreError,
)
from huginn.core.types import ChunkState, MemoryChunk
from huginn.embedding.provider import EmbeddingProvider
from huginn.embedding.rate_limit import TokenBucket
from huginn.store.sqlite_metadata import SQLiteMetadataStore
from huginn.store.vector_store import VectorStore

logger = logging.getLogger("Huginn.Gateway")

ChunkListener = Callable[[MemoryChunk], None]


def query_hash(text: str) -> str:
    normalized = " ".join(text.lower().split())
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()[:16]


class EmbeddingGateway:
    def __init__(
        self,
        config: EmbeddingConfig,
        provider: EmbeddingProvider,
        vectors: VectorStore,
        metadata: SQLiteMetadataStore,
        cache: Optional[TieredCache] = None,
        limiter: Optional[TokenBucket] = None,
        store_retry_attempts: int = 3,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.provider = provider
        self.vectors = vectors
        self.metadata = metadata
        self.cache = cache
        self.limiter = limiter or TokenBucket(config.rate_limit_rpm, config.burst_size, clock=clock)
        self.store_retry_attempts = max(1, store_retry_attempts)
        self._sleep = sleep
        self._clock = clock
        self._listeners: List[ChunkListener] = []
        self._queue: Optional[asyncio.Queue] = None
        self._workers: List[asyncio.Task] = []
        self._chunk_locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}
        self.stored_count = 0
        self.failed_count = 0
        self.deferred_count = 0

    def add_listener(self, listener: ChunkListener) -> None:
        """Register a callback invoked with each newly stored chunk."""
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Backoff and embedding
    # ------------------------------------------------------------------

    def backoff_delay(self, attempt: int) -> float:
        base = self.config.retry_base_delay
        delay = base * (2 ** attempt) + random.uniform(0, base)
        return min(self.config.retry_max_delay, delay)

    def _deadline_for(self, timeout: Optional[float]) -> Optional[float]:
        return self._clock() + timeout if timeout is not None else None

    async def _embed_with_retry(
        self, text: str, deadline: Optional[float], chunk_id: Optional[str] = None
    ) -> List[float]:
        attempts = self.config.retry_attempts
        last_error: Optional[ProviderError] = None
        for attempt in range(attempts):
            await self.limiter.acquire(deadline)
            try:
                return await self.provider.embed(text)
            except ProviderError as e:
                last_error = e
                if not e.retryable:
                    logger.error("Embedding rejected for %s: %s", chunk_id or "query", e)
                    break
                if attempt + 1 >= attempts:
                    break
                delay = self.backoff_delay(attempt)
                if deadline is not None and self._clock() + delay > deadline:
                    raise DeadlineExceeded("embedding retry backoff would pass the deadline") from e
                logger.warning(
                    "Embedding attempt %d/%d for %s failed (%s); retrying in %.2fs",
                    attempt + 1, attempts, chunk_id or "query", e, delay,
                )
                await self._sleep(delay)
        raise EmbeddingFailure(
            f"Embedding failed after {attempts} attempt(s): {last_error}", chunk_id=chunk_id
        ) from last_error

    async def embed(self, text: str, timeout: Optional[float] = None) -> List[float]:
        """Embed arbitrary text under the shared rate limit and retry policy."""
        deadline = self._deadline_for(timeout)
        try:
            return await asyncio.wait_for(self._embed_with_retry(text, deadline), timeout)
        except asyncio.TimeoutError as e:
            raise DeadlineExceeded(f"embedding did not complete within {timeout}s") from e

    async def embed_query(self, text: str, timeout: Optional[float] = None) -> List[float]:
        """Query embeddings are cached in the vector tier by normalized-text hash."""
        key = ("query", query_hash(text))
        if self.cache is not None:
            cached, found = self.cache.vector.get(key)
            if found:
                return cached
        vector = await self.embed(text, timeout=timeout)
        if self.cache is not None:
            self.cache.vector.put(key, vector)
        return vector

    # ------------------------------------------------------------------
    # Store
    # ------------------------------------------------------------------

    async def _upsert_with_retry(self, chunk: MemoryChunk, deadline: Optional[float]) -> None:
        last_error: Optional[StoreError] = None
        for attempt in range(self.store_retry_attempts):
            try:
                await asyncio.to_thread(self.vectors.upsert, chunk.id, chunk.embedding, chunk.payload())
                return
            except StoreError as e:
                last_error = e
                if attempt + 1 >= self.store_retry_attempts:
                    break
                delay = self.backoff_delay(attempt)
                if deadline is not None and self._clock() + delay > deadline:
                    raise DeadlineExceeded("vector upsert backoff would pass the deadline") from e
                logger.warning(
                    "Vector upsert attempt %d/%d for %s failed (%s); retrying in %.2fs",
                    attempt + 1, self.store_retry_attempts, chunk.id, e, delay,
                )
                await self._sleep(delay)
        raise StorageFailure(
            f"Vector upsert failed after {self.store_retry_attempts} attempt(s): {last_error}",
            chunk_id=chunk.id,
        ) from last_error

    async def _mark_failed(self, chunk: MemoryChunk, error: Exception) -> None:
        chunk.state = ChunkState.FAILED
        self.failed_count += 1
        try:
            await asyncio.to_thread(self.metadata.set_chunk_state, chunk.id, ChunkState.FAILED)
            await asyncio.to_thread(self.metadata.record_failure, chunk, "failed", str(error))
        except StoreError as e:
            logger.error("Could not record failed chunk %s: %s", chunk.id, e)
            raise StorageFailure(f"Failed chunk could not be recorded: {e}", chunk_id=chunk.id) from e
        logger.error("Chunk %s failed and was queued for reprocessing: %s", chunk.id, error)

    async def _record_deferred(self, chunk: MemoryChunk, reason: str) -> None:
        self.deferred_count += 1
        await asyncio.to_thread(self.metadata.record_failure, chunk, "deferred", reason)
        logger.warning("Chunk %s deferred: %s", chunk.id, reason)

    async def _store(self, chunk: MemoryChunk, deadline: Optional[float]) -> bool:
        lock = self._chunk_locks.setdefault(chunk.id, asyncio.Lock())
        self._lock_users[chunk.id] = self._lock_users.get(chunk.id, 0) + 1
        try:
            async with lock:
                return await self._store_locked(chunk, deadline)
        finally:
            self._lock_users[chunk.id] -= 1
            if self._lock_users[chunk.id] == 0:
                del self._lock_users[chunk.id]
                del self._chunk_locks[chunk.id]

    async def _already_stored(self, chunk: MemoryChunk) -> bool:
        try:
            state = await asyncio.to_thread(self.metadata.get_chunk_state, chunk.id)
            if state != ChunkState.STORED:
                return False
            existing = await asyncio.to_thread(self.metadata.get_chunk, chunk.id)
        except StoreError as e:
            raise StorageFailure(f"Lifecycle lookup failed: {e}", chunk_id=chunk.id) from e
        if existing is None:
            return False
        if existing.content == chunk.content or existing.updated_at > chunk.updated_at:
            return True
        logger.debug("Chunk %s was merged since it was stored; re-storing", chunk.id)
        return False

    async def _store_locked(self, chunk: MemoryChunk, deadline: Optional[float]) -> bool:
        if await self._already_stored(chunk):
            logger.debug("Chunk %s already stored; skipping", chunk.id)
            return False

        try:
            chunk.state = ChunkState.OPEN
            await asyncio.to_thread(self.metadata.upsert_chunk, chunk)
        except StoreError as e:
            raise StorageFailure(f"Lifecycle record failed: {e}", chunk_id=chunk.id) from e

        try:
            chunk.embedding = await self._embed_with_retry(chunk.content, deadline, chunk_id=chunk.id)
        except EmbeddingFailure as e:
            await self._mark_failed(chunk, e)
            raise

        chunk.state = ChunkState.EMBEDDED
        try:
            await asyncio.to_thread(self.metadata.set_chunk_state, chunk.id, ChunkState.EMBEDDED)
            await self._upsert_with_retry(chunk, deadline)
        except (StorageFailure, StoreError) as e:
            await self._mark_failed(chunk, e)
            if isinstance(e, StorageFailure):
                raise
            raise StorageFailure(str(e), chunk_id=chunk.id) from e

        chunk.state = ChunkState.STORED
        try:
            await asyncio.to_thread(self.metadata.upsert_chunk, chunk)
            await asyncio.to_thread(self.metadata.clear_failure, chunk.id)
            await asyncio.to_thread(self.metadata.enqueue_notification, chunk.id, chunk.repository)
        except StoreError as e:
            # The vector is already persisted; replay is idempotent on chunk id
            await self._record_deferred(chunk, f"post-store bookkeeping failed: {e}")
            raise StorageFailure(f"Stored chunk bookkeeping failed: {e}", chunk_id=chunk.id) from e

        self.stored_count += 1
        self._after_store(chunk)
        return True

    def _after_store(self, chunk: MemoryChunk) -> None:
        if self.cache is not None:
            self.cache.memory.put(chunk.id, chunk.model_copy(update={"embedding": None}))
            self.cache.invalidate_repository(chunk.repository)
        logger.info(
            "Stored chunk %s (%s, %d chars) for %s",
            chunk.id, chunk.chunk_type.value, len(chunk.content), chunk.repository,
        )
        for listener in self._listeners:
            try:
                listener(chunk)
            except Exception:
                logger.exception("Chunk-stored listener failed for %s", chunk.id)

    async def store(self, chunk: MemoryChunk, timeout: Optional[float] = None) -> bool:
        """
        Embed and persist one chunk. Returns False when this version of it was
        already stored.

        Raises EmbeddingFailure, StorageFailure or DeadlineExceeded; in every
        case the chunk has been recorded for reprocessing.
        """
        deadline = self._deadline_for(timeout)
        try:
            return await asyncio.wait_for(self._store(chunk, deadline), timeout)
        except asyncio.TimeoutError as e:
            await self._record_deferred(chunk, f"deadline of {timeout}s exceeded")
            raise DeadlineExceeded(f"store of {chunk.id} did not complete within {timeout}s") from e
        except DeadlineExceeded as e:
            await self._record_deferred(chunk, str(e))
            raise

    async def reprocess_failed(self, limit: int = 100) -> dict:
        """Replay failed and deferred chunks. Idempotent on chunk id."""
        pending = await asyncio.to_thread(self.metadata.pending_failures, limit)
        summary = {"stored": 0, "already_stored": 0, "failed": 0}
        for chunk, kind, attempts in pending:
            try:
                stored = await self.store(chunk, timeout=self.config.store_timeout_seconds)
            except (EmbeddingFailure, StorageFailure, DeadlineExceeded) as e:
                summary["failed"] += 1
                logger.warning("Reprocessing %s chunk %s (attempt %d) failed: %s", kind, chunk.id, attempts + 1, e)
                continue
            if stored:
                summary["stored"] += 1
            else:
                summary["already_stored"] += 1
                await asyncio.to_thread(self.metadata.clear_failure, chunk.id)
        if pending:
            logger.info("Reprocessed %d chunk(s): %s", len(pending), summary)
        return summary

    # ------------------------------------------------------------------
    # Handoff queue and workers
    # ------------------------------------------------------------------

    async def start(self, workers: int = 4) -> None:
        if self._workers:
            return
        self._queue = asyncio.Queue()
        await self._recover_incomplete()
        self._workers = [
            asyncio.create_task(self._worker_loop(i), name=f"huginn-gateway-{i}")
            for i in range(max(1, workers))
        ]
        logger.info("Embedding gateway started with %d worker(s)", len(self._workers))

    async def _recover_incomplete(self) -> None:
        """Chunks left open or embedded by a previous process are recorded as deferred."""
        try:
            stale = await asyncio.to_thread(
                self.metadata.get_chunks_in_states, [ChunkState.OPEN, ChunkState.EMBEDDED]
            )
        except StoreError as e:
            logger.error("Could not scan for incomplete chunks: %s", e)
            return
        for chunk in stale:
            await self._record_deferred(chunk, "incomplete at startup")

    async def submit(self, chunk: MemoryChunk) -> None:
        """Hand a finalized chunk to the workers without waiting for it to be stored."""
        if self._queue is None:
            raise RuntimeError("EmbeddingGateway.start() must be called before submit()")
        await self._queue.put(chunk)

    def pending(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    async def _worker_loop(self, index: int) -> None:
        assert self._queue is not None
        while True:
            chunk = await self._queue.get()
            try:
                await self.store(chunk, timeout=self.config.store_timeout_seconds)
            except (EmbeddingFailure, StorageFailure, DeadlineExceeded) as e:
                logger.warning("Worker %d could not store chunk %s: %s", index, chunk.id, e)
            finally:
                self._queue.task_done()

    async def drain(self, timeout: float) -> int:
        """
        Wait up to `timeout` for queued chunks to be stored. Anything still
        queued afterwards is recorded as deferred. Returns that count.
        """
        if self._queue is None:
            return 0
        try:
            await asyncio.wait_for(self._queue.join(), timeout)
            return 0
        except asyncio.TimeoutError:
            left = 0
            while not self._queue.empty():
                chunk = self._queue.get_nowait()
                self._queue.task_done()
                await self._record_deferred(chunk, "shutdown drain timeout")
                left += 1
            return left

    async def stop(self) -> None:
        for task in self._workers:
            task.cancel()
        for task in self._workers:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._workers = []
        await self.provider.close()
        logger.info("Embedding gateway stopped")

    def stats(self) -> dict:
        return {
            "stored": self.stored_count,
            "failed": self.failed_count,
            "deferred": self.deferred_count,
            "queued": self.pending(),
            "rate_limit_waits": self.limiter.waits,
        }
