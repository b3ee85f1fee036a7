"""
Huginn Pattern Signatures
-------------------------
A pattern signature is a stable hash of a chunk's type, its tags and a coarse
structural shape. Chunks with the same signature are instances of the same
recurring pattern (e.g. "short error report touching files, with a code
fence").
"""

import hashlib
import re

from huginn.core.types import MemoryChunk

_CODE_FENCE = re.compile(r"```")
_LIST_ITEM = re.compile(r"^\s*(?:[-*+]|\d+[.)])\s+", re.MULTILINE)

SIZE_BUCKETS = ((200, "xs"), (1000, "s"), (3000, "m"), (6000, "l"))


def size_bucket(length: int) -> str:
    for limit, name in SIZE_BUCKETS:
        if length < limit:
            return name
    return "xl"


def structural_shape(chunk: MemoryChunk) -> str:
    content = chunk.content
    parts = [
        size_bucket(len(content)),
        "code" if _CODE_FENCE.search(content) else "prose",
        "files" if chunk.files else "nofiles",
        "list" if _LIST_ITEM.search(content) else "flat",
        "question" if "?" in content else "statement",
    ]
    return "|".join(parts)


def pattern_signature(chunk: MemoryChunk) -> str:
    tags = ",".join(sorted({t.lower() for t in chunk.tags}))
    raw = f"{chunk.chunk_type.value}#{tags}#{structural_shape(chunk)}"
    return hashlib.sha1(raw.encode("utf-8")).hexdigest()[:16]
