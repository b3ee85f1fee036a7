"""
Huginn Pattern & Knowledge-Graph Builder
----------------------------------------
Background consumer of the durable "chunk stored" notification queue.

For each stored chunk:
1. OBSERVE: compute its pattern signature, bump the pattern's frequency and
   append the chunk to its bounded sample
2. PROMOTE: once frequency reaches min_pattern_frequency the pattern turns
   active and every chunk in its sample is folded into the graph
3. FOLD: chunks of active patterns contribute entities and reinforce
   relationships between co-occurring entities

Re-delivery is harmless: the observation ledger keeps a chunk from being
counted twice toward a pattern, and the fold ledger keeps it from being
folded into the graph twice. Notifications are acknowledged only after
processing, so a crash leaves them queued for the next pass.
"""

import asyncio
import logging
import time
from typing import Callable, Dict, List, Optional, TypeVar

from huginn.core.config import KnowledgeGraphConfig, PatternConfig
from huginn.core.errors import CapacityExceeded, StoreError
from huginn.core.types import MemoryChunk, Pattern
from huginn.intelligence.entities import extract_entities, extract_relations
from huginn.intelligence.signature import pattern_signature, structural_shape
from huginn.store.graph_store import GraphStore
from huginn.store.sqlite_metadata import SQLiteMetadataStore

logger = logging.getLogger("Huginn.Patterns")

T = TypeVar("T")


class PatternGraphBuilder:
    def __init__(
        self,
        patterns: PatternConfig,
        knowledge_graph: KnowledgeGraphConfig,
        metadata: SQLiteMetadataStore,
        graph: Optional[GraphStore] = None,
        poll_seconds: float = 5.0,
        batch_size: int = 100,
        clock: Callable[[], float] = time.time,
    ):
        self.patterns = patterns
        self.kg = knowledge_graph
        self.metadata = metadata
        self.graph = graph
        self.poll_seconds = poll_seconds
        self.batch_size = batch_size
        self._clock = clock
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._wake: Optional[asyncio.Event] = None
        self.processed = 0
        self.promoted = 0
        self.folded = 0

    # ------------------------------------------------------------------
    # Pattern observation
    # ------------------------------------------------------------------

    def observe(self, chunk: MemoryChunk) -> Optional[Pattern]:
        """Count `chunk` toward its pattern. Idempotent per (pattern, chunk id)."""
        if not self.patterns.enabled:
            return None
        repo = chunk.repository
        signature = pattern_signature(chunk)

        if self.metadata.has_observation(repo, signature, chunk.id):
            pattern = self.metadata.get_pattern(repo, signature)
            if pattern is not None and pattern.active:
                self.fold(chunk)
            logger.debug("Chunk %s already observed for pattern %s", chunk.id, signature)
            return pattern

        now = self._clock()
        pattern = self.metadata.get_pattern(repo, signature)
        if pattern is None:
            self._ensure_pattern_capacity(repo)
            pattern = Pattern(
                signature=signature,
                repository=repo,
                chunk_type=chunk.chunk_type,
                tags=sorted({t.lower() for t in chunk.tags}),
                shape=structural_shape(chunk),
                first_seen=now,
                last_seen=now,
            )

        pattern.frequency += 1
        pattern.last_seen = now
        sample = [c for c in pattern.sample_chunk_ids if c != chunk.id] + [chunk.id]
        pattern.sample_chunk_ids = sample[-self.patterns.sample_size:]

        promoted = not pattern.active and pattern.frequency >= self.patterns.min_pattern_frequency
        if promoted:
            pattern.active = True

        if not self.metadata.save_observation(pattern, chunk.id):
            return self.metadata.get_pattern(repo, signature)

        if promoted:
            self.promoted += 1
            logger.info(
                "Pattern %s in %s promoted to active at frequency %d",
                signature, repo, pattern.frequency,
            )
            for sample_chunk in self.metadata.get_chunks(pattern.sample_chunk_ids):
                self.fold(sample_chunk)
        elif pattern.active:
            self.fold(chunk)
        return pattern

    def _ensure_pattern_capacity(self, repository: str) -> None:
        while self.metadata.count_patterns(repository) >= self.patterns.max_patterns:
            evicted = self.metadata.evict_pattern(repository)
            if evicted is None:
                return
            logger.debug("Evicted pattern %s from %s", evicted, repository)

    # ------------------------------------------------------------------
    # Graph folding
    # ------------------------------------------------------------------

    def _with_capacity(self, op: Callable[[], T], evict: Callable[[], object]) -> Optional[T]:
        try:
            return op()
        except CapacityExceeded as e:
            logger.debug("%s; evicting", e)
            if not evict():
                logger.warning("%s and nothing could be evicted", e)
                return None
            return op()

    def fold(self, chunk: MemoryChunk) -> bool:
        """Fold one chunk's entities and relationships into the graph, once."""
        if self.graph is None or not self.kg.enabled:
            return False
        repo = chunk.repository
        if self.metadata.is_folded(repo, chunk.id):
            return False

        entities = extract_entities(
            repo, chunk.content, chunk.files, limit=self.kg.max_entities_per_chunk
        )
        protected = [e.id for e in entities]
        now = self._clock()
        kept = []
        for entity in entities:
            stored = self._with_capacity(
                lambda e=entity: self.graph.upsert_entity(e, chunk.id, now=now),
                lambda: self.graph.evict_entity(repo, protect=protected),
            )
            if stored is not None:
                kept.append(stored)

        for source_id, target_id, relation_type in extract_relations(chunk.content, kept):
            self._with_capacity(
                lambda s=source_id, t=target_id, r=relation_type: self.graph.reinforce_relationship(
                    repo, s, t, r, self.kg.relationship_decay, now=now
                ),
                lambda: self.graph.evict_relationship(repo),
            )

        self.metadata.mark_folded(repo, chunk.id)
        self.folded += 1
        logger.debug("Folded chunk %s into graph (%d entities)", chunk.id, len(kept))
        return True

    # ------------------------------------------------------------------
    # Notification consumption
    # ------------------------------------------------------------------

    def process_pending(self) -> Dict[str, int]:
        """Consume one batch of notifications. Failed items stay queued."""
        summary = {"processed": 0, "missing": 0, "failed": 0}
        for item in self.metadata.pending_notifications(self.batch_size):
            chunk_id = item["chunk_id"]
            try:
                chunk = self.metadata.get_chunk(chunk_id)
                if chunk is None:
                    summary["missing"] += 1
                else:
                    self.observe(chunk)
                    summary["processed"] += 1
                self.metadata.ack_notification(chunk_id)
            except StoreError as e:
                summary["failed"] += 1
                logger.warning("Pattern processing for %s failed; will retry: %s", chunk_id, e)
                try:
                    self.metadata.fail_notification(chunk_id, str(e))
                except StoreError as inner:
                    logger.error("Could not record notification failure for %s: %s", chunk_id, inner)
        self.processed += summary["processed"]
        return summary

    def notify(self, chunk: MemoryChunk) -> None:
        """Chunk-stored listener: wake the loop instead of waiting for the next poll."""
        if self._wake is not None:
            self._wake.set()

    async def start(self) -> None:
        if not self.patterns.enabled:
            logger.info("Pattern builder disabled")
            return
        if self._running:
            logger.warning("Pattern builder already running")
            return
        self._running = True
        self._wake = asyncio.Event()
        self._task = asyncio.create_task(self._run_loop())
        logger.info("Pattern builder started (poll=%.1fs)", self.poll_seconds)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Pattern builder stopped")

    async def _run_loop(self) -> None:
        assert self._wake is not None
        while self._running:
            try:
                summary = await asyncio.to_thread(self.process_pending)
                if summary["processed"] or summary["failed"]:
                    logger.debug("Pattern batch: %s", summary)
            except StoreError as e:
                logger.error("Pattern builder pass failed: %s", e)

            try:
                await asyncio.wait_for(self._wake.wait(), self.poll_seconds)
            except asyncio.TimeoutError:
                pass
            self._wake.clear()

    def stats(self) -> Dict[str, int]:
        return {
            "processed": self.processed,
            "promoted": self.promoted,
            "folded": self.folded,
        }


def strongest_neighbors(
    graph: GraphStore, entity_ids: List[str], min_weight: float, limit: int = 20
) -> List[dict]:
    """Flatten neighbour lookups for several entities into plain dicts, strongest first."""
    rows = []
    for entity_id in entity_ids:
        for entity, relation_type, weight in graph.neighbors(entity_id, min_weight, limit):
            rows.append(
                {
                    "from": entity_id,
                    "entity": entity.name,
                    "entity_type": entity.entity_type,
                    "relation": relation_type,
                    "weight": round(weight, 4),
                }
            )
    rows.sort(key=lambda r: -r["weight"])
    return rows[:limit]
