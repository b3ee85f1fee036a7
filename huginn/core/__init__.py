# Lazy imports to avoid pulling heavy dependencies on simple type imports
from huginn.core.types import ChunkType, MemoryChunk, RepositoryProfile, SearchResult

__all__ = ["MemoryService", "ChunkType", "MemoryChunk", "RepositoryProfile", "SearchResult"]


def __getattr__(name):
    if name == "MemoryService":
        from huginn.core.service import MemoryService
        return MemoryService
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
