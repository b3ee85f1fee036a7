from huginn.chunking.chunker import Chunker
from huginn.chunking.features import cosine_similarity, feature_vector

__all__ = ["Chunker", "feature_vector", "cosine_similarity"]
