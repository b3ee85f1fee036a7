"""
Huginn Progressive Search
-------------------------
Repository-scoped vector search that widens its acceptance bar in ordered
passes until it has enough results:

  default (0.5) -> relaxed (0.3) -> broadest (0.2)

Results from stricter passes are kept and re-ranked with later ones,
deduplicated by chunk id (higher score wins). If the origin repository
still falls short, the same passes run against related repositories whose
configured similarity clears the threshold.

Failure policy: a vector store error on the first pass raises
SearchUnavailable. Errors on relaxed or fallback passes are logged and the
pass is skipped, so the caller gets fewer results instead of none.
"""

import asyncio
import logging
import time
from typing import Callable, Dict, List, Optional, Tuple

from huginn.cache.tiered import TieredCache
from huginn.core.config import SearchConfig
from huginn.core.errors import DeadlineExceeded, EmbeddingFailure, SearchUnavailable, StoreError
from huginn.core.types import MemoryChunk, RepositoryProfile, SearchResult, Sensitivity
from huginn.embedding.gateway import EmbeddingGateway, query_hash
from huginn.store.sqlite_metadata import SQLiteMetadataStore
from huginn.store.vector_store import VectorStore

logger = logging.getLogger("Huginn.Search")


def rank_results(results: List[SearchResult]) -> List[SearchResult]:
    """Score descending; same-repository first at equal score; then most recent."""
    return sorted(
        results,
        key=lambda r: (-r.score, r.cross_repository, -r.chunk.updated_at),
    )


class ProgressiveSearchEngine:
    def __init__(
        self,
        config: SearchConfig,
        gateway: EmbeddingGateway,
        vectors: VectorStore,
        profile_for: Callable[[str], RepositoryProfile],
        metadata: Optional[SQLiteMetadataStore] = None,
        cache: Optional[TieredCache] = None,
    ):
        self.config = config
        self.gateway = gateway
        self.vectors = vectors
        self.metadata = metadata
        self.cache = cache
        self._profile_for = profile_for

    def passes(self) -> List[Tuple[str, float]]:
        passes = [("default", self.config.default_min_relevance)]
        if self.config.enable_progressive_search:
            passes.append(("relaxed", self.config.relaxed_min_relevance))
            passes.append(("broadest", self.config.broadest_min_relevance))
        return passes

    def fallback_targets(self, repository: str) -> List[str]:
        """Related repositories eligible for fallback, most similar first."""
        profile = self._profile_for(repository)
        candidates = sorted(
            (
                (similarity, related)
                for related, similarity in profile.related.items()
                if related != repository and similarity >= self.config.repository_similarity_threshold
            ),
            key=lambda item: (-item[0], item[1]),
        )
        targets: List[str] = []
        for _, related in candidates:
            related_profile = self._profile_for(related)
            if not related_profile.enabled or related_profile.sensitivity == Sensitivity.RESTRICTED:
                continue
            targets.append(related)
            if len(targets) >= self.config.max_related_repos:
                break
        return targets

    async def search(
        self,
        repository: str,
        query: str,
        desired_count: int = 10,
        timeout: Optional[float] = None,
    ) -> List[SearchResult]:
        if desired_count <= 0:
            return []
        timeout = timeout if timeout is not None else self.config.request_timeout_seconds
        try:
            return await asyncio.wait_for(self._search(repository, query, desired_count), timeout)
        except asyncio.TimeoutError as e:
            raise DeadlineExceeded(f"search in {repository} did not complete within {timeout}s") from e

    async def _search(self, repository: str, query: str, desired_count: int) -> List[SearchResult]:
        key = (repository, query_hash(query), desired_count)
        if self.cache is not None:
            cached, found = self.cache.query.get(key)
            if found:
                logger.debug("Search cache hit for %s", key)
                return list(cached)

        try:
            vector = await self.gateway.embed_query(query)
        except EmbeddingFailure as e:
            raise SearchUnavailable(f"Query embedding failed: {e}") from e

        found: Dict[str, SearchResult] = {}
        consulted = [repository]
        await self._run_passes(repository, repository, vector, desired_count, found, first_pass_fatal=True)

        if self.config.enable_repository_fallback and len(found) < desired_count:
            for target in self.fallback_targets(repository):
                if len(found) >= desired_count:
                    break
                logger.debug("Falling back from %s to related repository %s", repository, target)
                consulted.append(target)
                await self._run_passes(repository, target, vector, desired_count, found, first_pass_fatal=False)

        ranked = rank_results(list(found.values()))[:desired_count]
        await self._record_access(ranked)

        if self.cache is not None:
            self.cache.put_query(key, list(ranked), consulted)
        logger.info(
            "Search in %s returned %d/%d result(s)", repository, len(ranked), desired_count
        )
        return ranked

    async def _run_passes(
        self,
        origin: str,
        repository: str,
        vector: List[float],
        desired_count: int,
        found: Dict[str, SearchResult],
        first_pass_fatal: bool,
    ) -> None:
        cross = repository != origin
        for index, (pass_name, threshold) in enumerate(self.passes()):
            if index > 0 and len(found) >= desired_count:
                break
            try:
                hits = await asyncio.to_thread(
                    self.vectors.query, repository, vector, threshold, desired_count
                )
            except StoreError as e:
                if index == 0 and first_pass_fatal:
                    raise SearchUnavailable(f"Vector store unavailable for {repository}: {e}") from e
                logger.warning(
                    "Search pass '%s' in %s failed; continuing with partial results: %s",
                    pass_name, repository, e,
                )
                continue

            for payload, score in hits:
                chunk_id = payload.get("chunk_id") or payload.get("id")
                existing = found.get(chunk_id)
                if existing is not None and existing.score >= score:
                    continue
                try:
                    chunk = MemoryChunk.from_payload(payload)
                except ValueError as e:
                    logger.warning("Skipping unreadable payload for %s: %s", chunk_id, e)
                    continue
                found[chunk_id] = SearchResult(
                    chunk=chunk,
                    score=float(score),
                    source_repository=repository,
                    cross_repository=cross,
                    pass_name=existing.pass_name if existing is not None else pass_name,
                )

    async def _record_access(self, results: List[SearchResult]) -> None:
        if not results:
            return
        now = time.time()
        for result in results:
            result.chunk.last_accessed = now
        if self.metadata is None:
            return
        try:
            await asyncio.to_thread(
                self.metadata.record_access_batch, [r.chunk.id for r in results], now
            )
        except StoreError as e:
            logger.warning("Access-time bookkeeping failed: %s", e)
