"""
Huginn Memory Service
---------------------
The one object that owns every component for the life of the process:
cache tiers, chunker, embedding gateway, search engine, pattern/graph
builder and retention daemon. Collaborators (embedding provider, vector,
metadata and graph stores) can be injected; anything not injected is built
from configuration on start().

Usage:
    config = HuginnConfig.from_env()
    service = MemoryService(config)
    await service.start()

    await service.ingest(ContentEvent(repository="api", session_id="s1", content="..."))
    results = await service.search("api", "how do we retry uploads?", desired_count=5)

    await service.shutdown()
"""

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional

from huginn.cache.tiered import CacheTier, TieredCache
from huginn.chunking.chunker import Chunker
from huginn.consolidation.retention import RetentionDaemon
from huginn.core.config import HuginnConfig
from huginn.core.types import ContentEvent, MemoryChunk, SearchResult
from huginn.embedding.gateway import EmbeddingGateway
from huginn.embedding.provider import EmbeddingProvider, build_provider
from huginn.embedding.rate_limit import TokenBucket
from huginn.intelligence.builder import PatternGraphBuilder, strongest_neighbors
from huginn.retrieval.progressive import ProgressiveSearchEngine
from huginn.store.graph_store import GraphStore
from huginn.store.sqlite_metadata import SQLiteMetadataStore
from huginn.store.vector_store import VectorStore

logger = logging.getLogger("Huginn.Service")


class MemoryService:
    def __init__(
        self,
        config: Optional[HuginnConfig] = None,
        provider: Optional[EmbeddingProvider] = None,
        vectors: Optional[VectorStore] = None,
        metadata: Optional[SQLiteMetadataStore] = None,
        graph: Optional[GraphStore] = None,
    ):
        self.config = config or HuginnConfig.from_env()
        self._provider = provider
        self._vectors = vectors
        self._metadata = metadata
        self._graph = graph

        self.cache = TieredCache(self.config.caching)
        self.chunker = Chunker(
            self.config.chunking,
            self.config.get_repository_profile,
            feature_cache=CacheTier.from_config("features", self.config.caching.features),
        )
        self.gateway: Optional[EmbeddingGateway] = None
        self.search_engine: Optional[ProgressiveSearchEngine] = None
        self.builder: Optional[PatternGraphBuilder] = None
        self.retention: Optional[RetentionDaemon] = None
        self._sweep_task: Optional[asyncio.Task] = None
        self._started = False
        self._started_at: Optional[float] = None

    def _build_collaborators(self) -> None:
        cfg = self.config
        needs_files = self._vectors is None or self._metadata is None or (
            self._graph is None and cfg.knowledge_graph.enabled
        )
        if needs_files:
            cfg.ensure_directories()
        if self._metadata is None:
            self._metadata = SQLiteMetadataStore(cfg.metadata.path)
        if self._vectors is None:
            self._vectors = VectorStore(
                data_path=cfg.vector.path,
                collection_name=cfg.vector.collection,
                embedding_dims=cfg.vector.dimensions,
                url=cfg.vector.url,
                api_key=cfg.vector.api_key,
            )
        if self._graph is None and cfg.knowledge_graph.enabled:
            self._graph = GraphStore(
                cfg.graph.path,
                max_entities=cfg.knowledge_graph.max_entities,
                max_relationships=cfg.knowledge_graph.max_relationships,
            )
        if self._provider is None:
            self._provider = build_provider(cfg.embedding)

    async def start(self) -> None:
        """Build missing collaborators and launch background workers. Idempotent."""
        if self._started:
            return
        logger.info("Starting Huginn memory service...")
        t0 = time.time()
        cfg = self.config
        self._build_collaborators()

        self.gateway = EmbeddingGateway(
            cfg.embedding,
            self._provider,
            self._vectors,
            self._metadata,
            cache=self.cache,
            limiter=TokenBucket(cfg.embedding.rate_limit_rpm, cfg.embedding.burst_size),
            store_retry_attempts=cfg.vector.retry_attempts,
        )
        self.search_engine = ProgressiveSearchEngine(
            cfg.search,
            self.gateway,
            self._vectors,
            cfg.get_repository_profile,
            metadata=self._metadata,
            cache=self.cache,
        )
        self.builder = PatternGraphBuilder(
            cfg.patterns,
            cfg.knowledge_graph,
            self._metadata,
            graph=self._graph,
            poll_seconds=cfg.performance.builder_poll_seconds,
            batch_size=cfg.performance.notification_batch_size,
        )
        self.retention = RetentionDaemon(cfg.retention, self._metadata, self._vectors, cache=self.cache)
        self.gateway.add_listener(self.builder.notify)

        await self.gateway.start(workers=cfg.performance.worker_pool_size)
        await self.builder.start()
        await self.retention.start()
        self._sweep_task = asyncio.create_task(self._sweep_loop())

        self._started = True
        self._started_at = time.time()
        logger.info("Huginn memory service started in %.2fs", time.time() - t0)

    def _require_started(self) -> None:
        if not self._started:
            raise RuntimeError("MemoryService.start() must be called first")

    async def _handoff(self, chunks: List[MemoryChunk]) -> None:
        for chunk in chunks:
            await self.gateway.submit(chunk)

    async def _sweep_loop(self) -> None:
        interval = self.config.performance.sweep_interval_seconds
        while True:
            try:
                await asyncio.sleep(interval)
            except asyncio.CancelledError:
                break
            finalized = self.chunker.sweep()
            if finalized:
                logger.debug("Sweep finalized %d idle chunk(s)", len(finalized))
                await self._handoff(finalized)

    # ==========================================
    # Ingestion
    # ==========================================

    async def ingest(self, event: ContentEvent) -> List[MemoryChunk]:
        """Feed one event to its session's chunker; finalized chunks are queued for storage."""
        self._require_started()
        finalized = self.chunker.ingest(event)
        await self._handoff(finalized)
        return finalized

    async def end_session(self, repository: str, session_id: str) -> List[MemoryChunk]:
        self._require_started()
        finalized = self.chunker.end_session(repository, session_id)
        await self._handoff(finalized)
        return finalized

    async def store_chunk(self, chunk: MemoryChunk, timeout: Optional[float] = None) -> bool:
        """Store a finalized chunk directly, waiting for the outcome."""
        self._require_started()
        if timeout is None:
            timeout = self.config.embedding.store_timeout_seconds
        return await self.gateway.store(chunk, timeout=timeout)

    async def reprocess_failed(self, limit: int = 100) -> Dict[str, int]:
        self._require_started()
        return await self.gateway.reprocess_failed(limit)

    # ==========================================
    # Retrieval
    # ==========================================

    async def search(
        self,
        repository: str,
        query: str,
        desired_count: int = 10,
        timeout: Optional[float] = None,
    ) -> List[SearchResult]:
        self._require_started()
        return await self.search_engine.search(repository, query, desired_count, timeout=timeout)

    async def get_chunk(self, chunk_id: str) -> Optional[MemoryChunk]:
        self._require_started()
        cached, found = self.cache.memory.get(chunk_id)
        if found:
            return cached
        chunk = await asyncio.to_thread(self._metadata.get_chunk, chunk_id)
        if chunk is not None:
            self.cache.memory.put(chunk_id, chunk)
        return chunk

    async def related_entities(self, repository: str, name: str, limit: int = 20) -> List[Dict[str, Any]]:
        """Graph neighbours of the entities called `name`, above the relationship threshold."""
        self._require_started()
        if self._graph is None:
            return []

        def _lookup():
            entities = self._graph.find_entities(repository, name)
            return strongest_neighbors(
                self._graph,
                [e.id for e in entities],
                self.config.knowledge_graph.relationship_threshold,
                limit,
            )

        return await asyncio.to_thread(_lookup)

    # ==========================================
    # Lifecycle
    # ==========================================

    async def stats(self) -> Dict[str, Any]:
        self._require_started()

        def _store_stats():
            return {
                "chunks": self._metadata.chunk_state_counts(),
                "failures": self._metadata.failure_counts(),
                "pending_notifications": self._metadata.count_notifications(),
                "vectors": self._vectors.count(),
                "schema_version": self._metadata.get_meta("version"),
            }

        return {
            "uptime_seconds": round(time.time() - (self._started_at or time.time()), 1),
            "cache": self.cache.stats(),
            "chunker": self.chunker.stats(),
            "gateway": self.gateway.stats(),
            "patterns": self.builder.stats(),
            "retention": self.retention.get_status(),
            "stores": await asyncio.to_thread(_store_stats),
        }

    async def shutdown(self) -> None:
        """
        Flush every open session, give queued chunks up to the drain window to
        be stored, record the rest as deferred, then stop background work and
        close the stores.
        """
        if not self._started:
            return
        logger.info("Shutting down Huginn memory service...")
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

        await self._handoff(self.chunker.flush_all())
        deferred = await self.gateway.drain(self.config.performance.shutdown_drain_seconds)
        if deferred:
            logger.warning("%d chunk(s) deferred at shutdown", deferred)

        await self.retention.stop()
        await self.builder.stop()
        await self.gateway.stop()

        self._vectors.close()
        self._metadata.close()
        if self._graph is not None:
            self._graph.close()
        self._started = False
        logger.info("Huginn shut down")
