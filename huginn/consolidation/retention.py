"""
Huginn Retention Daemon
-----------------------
Periodically purges chunks whose last update is older than retention_days
from the vector store, the metadata store and the memory cache tier.

Deletion runs in batches; the vector store is purged first so a failure
halfway leaves metadata rows behind (retried next cycle) rather than
orphaned vectors.
"""

import asyncio
import logging
import time
from typing import Callable, Optional

from huginn.cache.tiered import TieredCache
from huginn.core.config import RetentionConfig
from huginn.core.errors import StoreError
from huginn.store.sqlite_metadata import SQLiteMetadataStore
from huginn.store.vector_store import VectorStore

logger = logging.getLogger("Huginn.Retention")


class RetentionDaemon:
    def __init__(
        self,
        config: RetentionConfig,
        metadata: SQLiteMetadataStore,
        vectors: VectorStore,
        cache: Optional[TieredCache] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.metadata = metadata
        self.vectors = vectors
        self.cache = cache
        self._clock = clock
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._last_cycle: Optional[float] = None
        self.purged_total = 0

    def purge_expired(self) -> int:
        """Delete every stored chunk older than the retention window. Returns the number purged."""
        cutoff = self._clock() - self.config.retention_days * 86400.0
        purged = 0
        while True:
            ids = self.metadata.expired_chunk_ids(cutoff, self.config.cleanup_batch_size)
            if not ids:
                break
            self.vectors.delete(ids)
            self.metadata.delete_chunks(ids)
            if self.cache is not None:
                for chunk_id in ids:
                    self.cache.memory.invalidate(chunk_id)
            purged += len(ids)
            if len(ids) < self.config.cleanup_batch_size:
                break
        if purged:
            logger.info("Retention purged %d chunk(s) older than %.0f day(s)", purged, self.config.retention_days)
        self.purged_total += purged
        self._last_cycle = self._clock()
        return purged

    async def start(self) -> None:
        if not self.config.enabled:
            logger.info("Retention daemon disabled")
            return
        if self._running:
            logger.warning("Retention daemon already running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            "Retention daemon started (retention=%.0fd, interval=%.1fh)",
            self.config.retention_days, self.config.cleanup_interval_hours,
        )

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Retention daemon stopped")

    async def _run_loop(self) -> None:
        interval_seconds = self.config.cleanup_interval_hours * 3600
        while self._running:
            try:
                await asyncio.to_thread(self.purge_expired)
            except StoreError as e:
                logger.error("Retention cycle failed: %s", e)
            try:
                await asyncio.sleep(interval_seconds)
            except asyncio.CancelledError:
                break

    def get_status(self) -> dict:
        return {
            "enabled": self.config.enabled,
            "running": self._running,
            "last_cycle": self._last_cycle,
            "purged_total": self.purged_total,
        }
