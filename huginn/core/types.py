"""
Huginn Core Types
-----------------
Pydantic models and enums for chunks, repository profiles, patterns and the
knowledge graph.
"""

import time
import uuid
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ChunkType(str, Enum):
    DISCUSSION = "discussion"
    DECISION = "decision"
    TODO = "todo"
    ERROR = "error"
    CODE_CHANGE = "code_change"


class ChunkState(str, Enum):
    OPEN = "open"
    PENDING_FLUSH = "pending_flush"
    FINALIZED = "finalized"
    EMBEDDED = "embedded"
    STORED = "stored"
    FAILED = "failed"


class EventKind(str, Enum):
    MESSAGE = "message"
    TOOL_OUTPUT = "tool_output"
    FILE_CHANGE = "file_change"
    TODO_COMPLETED = "todo_completed"
    SESSION_END = "session_end"


class Sensitivity(str, Enum):
    NORMAL = "normal"
    HIGH = "high"
    # Never used as a cross-repository fallback target
    RESTRICTED = "restricted"


DEFAULT_EXCLUDE_PATTERNS = ["*.env", "*.key", "*.pem", "*.p12"]


class ContentEvent(BaseModel):
    """One unit of raw context arriving on a (repository, session) stream."""
    repository: str
    session_id: str
    content: str = ""
    kind: EventKind = EventKind.MESSAGE
    files: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    timestamp: float = Field(default_factory=time.time)


class MemoryChunk(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    repository: str
    session_id: str
    content: str
    embedding: Optional[List[float]] = None
    tags: List[str] = Field(default_factory=list)
    files: List[str] = Field(default_factory=list)
    chunk_type: ChunkType = ChunkType.DISCUSSION
    state: ChunkState = ChunkState.OPEN

    created_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)
    last_accessed: Optional[float] = None

    metadata: Dict[str, Any] = Field(default_factory=dict)

    def payload(self) -> Dict[str, Any]:
        """Vector-store payload: everything except the embedding and lifecycle state."""
        return self.model_dump(mode="json", exclude={"embedding", "state"})

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "MemoryChunk":
        data = {k: v for k, v in payload.items() if k in cls.model_fields}
        data.setdefault("state", ChunkState.STORED)
        return cls(**data)


class RepositoryProfile(BaseModel):
    """Per-repository policy. Owned by configuration; read-only at request time."""
    repository: str = ""
    enabled: bool = True
    sensitivity: Sensitivity = Sensitivity.NORMAL
    exclude_patterns: List[str] = Field(default_factory=lambda: list(DEFAULT_EXCLUDE_PATTERNS))
    tags: List[str] = Field(default_factory=list)
    # repository id -> similarity score in [0, 1]
    related: Dict[str, float] = Field(default_factory=dict)


class Pattern(BaseModel):
    signature: str
    repository: str
    chunk_type: ChunkType = ChunkType.DISCUSSION
    tags: List[str] = Field(default_factory=list)
    shape: str = ""
    frequency: int = 0
    sample_chunk_ids: List[str] = Field(default_factory=list)
    first_seen: float = Field(default_factory=time.time)
    last_seen: float = Field(default_factory=time.time)
    active: bool = False


class GraphEntity(BaseModel):
    id: str
    repository: str
    entity_type: str  # file|module|tech|decision
    name: str
    chunk_refs: List[str] = Field(default_factory=list)
    mention_count: int = 1
    first_seen: float = Field(default_factory=time.time)
    last_seen: float = Field(default_factory=time.time)


class GraphRelationship(BaseModel):
    repository: str
    source_id: str
    target_id: str
    relation_type: str  # co_occurs|depends_on
    weight: float = Field(default=0.0, ge=0.0, le=1.0)
    updated_at: float = Field(default_factory=time.time)


class SearchResult(BaseModel):
    chunk: MemoryChunk
    score: float = 0.0
    source_repository: str
    cross_repository: bool = False
    pass_name: str = "default"  # default|relaxed|broadest
