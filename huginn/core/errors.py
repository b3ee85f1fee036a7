"""
Huginn Errors
-------------
Typed error taxonomy shared by every layer.

Only EmbeddingFailure, StorageFailure, SearchUnavailable and DeadlineExceeded
escape public operations. ChunkValidationError and CapacityExceeded are raised
and resolved internally (truncation, eviction).
"""

from __future__ import annotations

from typing import Optional


class HuginnError(RuntimeError):
    """Base class for Huginn errors."""

    retryable: bool = False


class ProviderError(HuginnError):
    """Raised when the embedding provider call fails."""

    def __init__(self, detail: str, *, retryable: bool = True, status_code: Optional[int] = None) -> None:
        self.retryable = retryable
        self.status_code = status_code
        status_hint = f" (status={status_code})" if status_code is not None else ""
        super().__init__(f"{detail}{status_hint}")


class StoreError(HuginnError):
    """Raised when a vector, metadata or graph store is unavailable."""

    retryable = True


class EmbeddingFailure(HuginnError):
    """Embedding could not be computed after exhausting retries."""

    retryable = True

    def __init__(self, detail: str, *, chunk_id: Optional[str] = None) -> None:
        self.chunk_id = chunk_id
        super().__init__(detail)


class StorageFailure(HuginnError):
    """Vector upsert could not be completed after exhausting retries."""

    retryable = True

    def __init__(self, detail: str, *, chunk_id: Optional[str] = None) -> None:
        self.chunk_id = chunk_id
        super().__init__(detail)


class SearchUnavailable(HuginnError):
    """The first (default threshold) search pass could not be served."""

    retryable = True


class DeadlineExceeded(HuginnError):
    """A caller-supplied deadline passed before the operation completed."""

    retryable = True


class ChunkValidationError(HuginnError):
    """Chunk content violates the configured size bounds."""

    def __init__(self, detail: str, *, length: int, maximum: int) -> None:
        self.length = length
        self.maximum = maximum
        super().__init__(detail)


class CapacityExceeded(HuginnError):
    """A pattern or graph cap was reached; callers evict and retry."""

    def __init__(self, kind: str, repository: str, cap: int) -> None:
        self.kind = kind
        self.repository = repository
        self.cap = cap
        super().__init__(f"{kind} cap of {cap} reached for repository '{repository}'")
