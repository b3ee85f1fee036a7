"""
Huginn Feature Embedding
------------------------
Cheap hashed bag-of-tokens vectors used for near-duplicate detection in the
chunker. These never leave the process and never touch the embedding
provider; they only need to rank "same content, reworded slightly" above
"different content".

Tokens and adjacent-token bigrams are hashed (crc32) into a fixed number of
buckets with a sign bit, then L2-normalized so cosine is a dot product.
"""

import re
import zlib
from typing import List

import numpy as np

_TOKEN_RE = re.compile(r"[A-Za-z0-9_./-]+")


def tokenize(text: str) -> List[str]:
    return [t.lower() for t in _TOKEN_RE.findall(text)]


def feature_vector(text: str, dims: int = 256) -> np.ndarray:
    """Hashed token+bigram feature vector, unit length (or all zeros for empty text)."""
    vec = np.zeros(dims, dtype=np.float32)
    tokens = tokenize(text)
    features = tokens + [f"{a} {b}" for a, b in zip(tokens, tokens[1:])]
    for feature in features:
        h = zlib.crc32(feature.encode("utf-8"))
        sign = 1.0 if (h >> 31) & 1 == 0 else -1.0
        vec[h % dims] += sign
    norm = float(np.linalg.norm(vec))
    if norm > 0:
        vec /= norm
    return vec


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """Cosine over two feature vectors. Zero vectors are dissimilar to everything."""
    na = float(np.linalg.norm(a))
    nb = float(np.linalg.norm(b))
    if na == 0.0 or nb == 0.0:
        return 0.0
    return float(np.dot(a, b) / (na * nb))
