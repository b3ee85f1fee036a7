"""
Huginn Vector Store
-------------------
Qdrant-based vector storage for chunk embeddings.
Wraps qdrant-client with the two operations the core needs:
upsert(id, vector, payload) and query(repository, vector, min_relevance, limit).

Every qdrant-client failure is translated into StoreError at this boundary.
"""

import logging
import uuid
from functools import wraps
from pathlib import Path
from typing import Optional, List, Tuple, Dict, Any

from qdrant_client import QdrantClient
from qdrant_client.http.exceptions import UnexpectedResponse, ResponseHandlingException
from qdrant_client.models import (
    Distance,
    VectorParams,
    PointStruct,
    PointIdsList,
    Filter,
    FieldCondition,
    MatchValue,
)

from huginn.core.errors import StoreError

logger = logging.getLogger("Huginn.Vector")

DEFAULT_COLLECTION = "huginn_chunks"
DEFAULT_DIMS = 1536

_QDRANT_ERRORS = (UnexpectedResponse, ResponseHandlingException, ValueError, RuntimeError, OSError)


def _translate_errors(fn):
    @wraps(fn)
    def wrapper(self, *args, **kwargs):
        try:
            return fn(self, *args, **kwargs)
        except StoreError:
            raise
        except _QDRANT_ERRORS as e:
            raise StoreError(f"Vector store {fn.__name__} failed: {e}") from e
    return wrapper


def point_id_for(chunk_id: str) -> str:
    return str(uuid.uuid5(uuid.NAMESPACE_DNS, chunk_id))


class VectorStore:
    """Manages chunk vectors in Qdrant (embedded on-disk, or remote by URL)."""

    def __init__(
        self,
        data_path=None,
        collection_name: str = DEFAULT_COLLECTION,
        embedding_dims: int = DEFAULT_DIMS,
        url: Optional[str] = None,
        api_key: Optional[str] = None,
    ):
        if data_path is None and url is None:
            raise ValueError("VectorStore needs either a data path or a url")
        self.data_path = Path(data_path) if data_path is not None else None
        self.url = url
        self._api_key = api_key
        self.collection_name = collection_name
        self.embedding_dims = embedding_dims
        self._client: Optional[QdrantClient] = None
        self._initialize()

    def _get_client(self) -> QdrantClient:
        if self._client is None:
            if self.url:
                self._client = QdrantClient(url=self.url, api_key=self._api_key)
            else:
                self._client = QdrantClient(path=str(self.data_path))
        return self._client

    @_translate_errors
    def _initialize(self):
        client = self._get_client()
        collections = [c.name for c in client.get_collections().collections]
        if self.collection_name not in collections:
            client.create_collection(
                collection_name=self.collection_name,
                vectors_config=VectorParams(
                    size=self.embedding_dims,
                    distance=Distance.COSINE,
                    on_disk=True,
                ),
            )
            logger.info("Created vector collection '%s' (%d dims)", self.collection_name, self.embedding_dims)
        else:
            logger.info("Vector collection '%s' exists", self.collection_name)

    @_translate_errors
    def upsert(self, chunk_id: str, embedding: List[float], payload: Optional[Dict[str, Any]] = None) -> str:
        """Insert or update a vector point. Re-upserting the same chunk id overwrites it."""
        if len(embedding) != self.embedding_dims:
            raise StoreError(
                f"Vector for {chunk_id} has {len(embedding)} dims, collection expects {self.embedding_dims}"
            )
        client = self._get_client()
        point_id = point_id_for(chunk_id)
        body = {"chunk_id": chunk_id}
        if payload:
            body.update(payload)

        client.upsert(
            collection_name=self.collection_name,
            points=[PointStruct(id=point_id, vector=embedding, payload=body)],
        )
        return point_id

    @_translate_errors
    def query(
        self,
        repository: str,
        vector: List[float],
        min_relevance: float,
        limit: int,
    ) -> List[Tuple[Dict[str, Any], float]]:
        """
        Nearest neighbours inside one repository with score >= min_relevance.
        Returns (payload, score) pairs, best first.
        """
        client = self._get_client()
        query_filter = Filter(
            must=[FieldCondition(key="repository", match=MatchValue(value=repository))]
        )
        results = client.query_points(
            collection_name=self.collection_name,
            query=vector,
            limit=limit,
            score_threshold=min_relevance,
            query_filter=query_filter,
        ).points

        return [
            (hit.payload, hit.score)
            for hit in results
            if hit.payload and "chunk_id" in hit.payload
        ]

    @_translate_errors
    def delete(self, chunk_ids: List[str]) -> int:
        """Delete vectors by chunk id."""
        if not chunk_ids:
            return 0
        client = self._get_client()
        client.delete(
            collection_name=self.collection_name,
            points_selector=PointIdsList(points=[point_id_for(c) for c in chunk_ids]),
        )
        return len(chunk_ids)

    @_translate_errors
    def count(self) -> int:
        client = self._get_client()
        info = client.get_collection(self.collection_name)
        return info.points_count or 0

    def close(self):
        if self._client:
            self._client.close()
            self._client = None
