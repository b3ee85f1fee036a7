# Lazy imports: EmbeddingGateway pulls in the vector store (qdrant_client)
from huginn.embedding.provider import EmbeddingProvider, HttpEmbeddingProvider
from huginn.embedding.rate_limit import TokenBucket

__all__ = ["EmbeddingGateway", "EmbeddingProvider", "HttpEmbeddingProvider", "TokenBucket"]


def __getattr__(name):
    if name == "EmbeddingGateway":
        from huginn.embedding.gateway import EmbeddingGateway
        return EmbeddingGateway
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
