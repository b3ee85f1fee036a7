"""
Huginn: Long-Term Memory for AI Coding Assistants
"""

from huginn.core.config import HuginnConfig
from huginn.core.errors import (
    DeadlineExceeded,
    EmbeddingFailure,
    HuginnError,
    SearchUnavailable,
    StorageFailure,
)
from huginn.core.types import ContentEvent, EventKind, MemoryChunk, SearchResult
from huginn.version import __version__

__all__ = [
    "__version__",
    "HuginnConfig",
    "MemoryService",
    "ContentEvent",
    "EventKind",
    "MemoryChunk",
    "SearchResult",
    "HuginnError",
    "EmbeddingFailure",
    "StorageFailure",
    "SearchUnavailable",
    "DeadlineExceeded",
]


def __getattr__(name):
    if name == "MemoryService":
        from huginn.core.service import MemoryService
        return MemoryService
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
