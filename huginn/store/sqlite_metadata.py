"""
Huginn SQLite Metadata Store
----------------------------
Durable bookkeeping around the vector index:

- chunk records and their gateway lifecycle state
- the failure queue (failed and deferred chunks awaiting reprocessing)
- the "chunk stored" notification queue consumed by the pattern builder
- patterns, plus the observation and graph-fold ledgers that make the
  builder idempotent per chunk id

SQLite provides ACID guarantees and zero-config operation. All access goes
through one connection guarded by a re-entrant lock, since callers reach the
store from worker threads.
"""

import sqlite3
import json
import time
import logging
import threading
from contextlib import contextmanager
from functools import wraps
from pathlib import Path
from typing import Optional, List, Dict, Any, Tuple

from huginn.core.errors import StoreError
from huginn.core.types import ChunkState, ChunkType, MemoryChunk, Pattern

logger = logging.getLogger("Huginn.SQLite")

SCHEMA_VERSION = 1

CREATE_CHUNKS = """
CREATE TABLE IF NOT EXISTS chunks (
    id              TEXT PRIMARY KEY,
    repository      TEXT NOT NULL,
    session_id      TEXT NOT NULL,
    content         TEXT NOT NULL,
    chunk_type      TEXT DEFAULT 'discussion',
    tags            TEXT DEFAULT '[]',
    files           TEXT DEFAULT '[]',

    -- Gateway lifecycle: open -> embedded -> stored | failed
    state           TEXT NOT NULL DEFAULT 'open',

    created_at      REAL NOT NULL,
    updated_at      REAL NOT NULL,
    last_accessed   REAL,

    metadata        TEXT DEFAULT '{}'
);
"""

CREATE_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_chunks_repo_session ON chunks(repository, session_id);",
    "CREATE INDEX IF NOT EXISTS idx_chunks_state ON chunks(state);",
    "CREATE INDEX IF NOT EXISTS idx_chunks_updated ON chunks(updated_at);",
]

CHUNK_FAILURES = """
CREATE TABLE IF NOT EXISTS chunk_failures (
    chunk_id    TEXT PRIMARY KEY,
    kind        TEXT NOT NULL,          -- failed | deferred
    payload     TEXT NOT NULL,
    last_error  TEXT,
    attempts    INTEGER DEFAULT 1,
    updated_at  REAL NOT NULL
);
"""

CHUNK_NOTIFICATIONS = """
CREATE TABLE IF NOT EXISTS chunk_notifications (
    chunk_id    TEXT PRIMARY KEY,
    repository  TEXT NOT NULL,
    enqueued_at REAL NOT NULL,
    attempts    INTEGER DEFAULT 0,
    last_error  TEXT
);
"""

PATTERNS = """
CREATE TABLE IF NOT EXISTS patterns (
    repository  TEXT NOT NULL,
    signature   TEXT NOT NULL,
    chunk_type  TEXT NOT NULL,
    tags        TEXT DEFAULT '[]',
    shape       TEXT DEFAULT '',
    frequency   INTEGER DEFAULT 0,
    sample      TEXT DEFAULT '[]',
    first_seen  REAL NOT NULL,
    last_seen   REAL NOT NULL,
    active      INTEGER DEFAULT 0,
    PRIMARY KEY (repository, signature)
);
"""

PATTERN_OBSERVATIONS = """
CREATE TABLE IF NOT EXISTS pattern_observations (
    repository  TEXT NOT NULL,
    signature   TEXT NOT NULL,
    chunk_id    TEXT NOT NULL,
    observed_at REAL NOT NULL,
    PRIMARY KEY (repository, signature, chunk_id)
);
"""

GRAPH_FOLDS = """
CREATE TABLE IF NOT EXISTS graph_folds (
    repository  TEXT NOT NULL,
    chunk_id    TEXT NOT NULL,
    folded_at   REAL NOT NULL,
    PRIMARY KEY (repository, chunk_id)
);
"""

SCHEMA_META = """
CREATE TABLE IF NOT EXISTS schema_meta (
    key   TEXT PRIMARY KEY,
    value TEXT
);
"""


def _translate_errors(fn):
    @wraps(fn)
    def wrapper(self, *args, **kwargs):
        try:
            return fn(self, *args, **kwargs)
        except sqlite3.Error as e:
            raise StoreError(f"Metadata store {fn.__name__} failed: {e}") from e
    return wrapper


def _loads_list(raw: Optional[str]) -> List[Any]:
    if not raw:
        return []
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return []
    return parsed if isinstance(parsed, list) else []


class SQLiteMetadataStore:
    """Chunk lifecycle, queues, patterns and ledgers in one SQLite file."""

    def __init__(self, db_path):
        self.db_path = Path(db_path) if not isinstance(db_path, Path) else db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self._initialize()

    def _get_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL;")
            self._conn.execute("PRAGMA synchronous=NORMAL;")
            self._conn.execute("PRAGMA cache_size=10000;")
        return self._conn

    @contextmanager
    def _transaction(self):
        with self._lock:
            conn = self._get_conn()
            try:
                yield conn
                conn.commit()
            except BaseException:
                conn.rollback()
                raise

    @_translate_errors
    def _initialize(self):
        with self._transaction() as conn:
            conn.execute(CREATE_CHUNKS)
            for idx in CREATE_INDEXES:
                conn.execute(idx)
            conn.execute(CHUNK_FAILURES)
            conn.execute(CHUNK_NOTIFICATIONS)
            conn.execute(PATTERNS)
            conn.execute(PATTERN_OBSERVATIONS)
            conn.execute(GRAPH_FOLDS)
            conn.execute(SCHEMA_META)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_patterns_eviction ON patterns(repository, frequency, last_seen);"
            )
            conn.execute(
                "INSERT OR IGNORE INTO schema_meta (key, value) VALUES (?, ?)",
                ("version", str(SCHEMA_VERSION)),
            )
        logger.info("SQLite metadata store initialized at %s", self.db_path)

    # ------------------------------------------------------------------
    # Chunks
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_chunk(row: sqlite3.Row) -> MemoryChunk:
        d = dict(row)
        d["tags"] = _loads_list(d.get("tags"))
        d["files"] = _loads_list(d.get("files"))
        try:
            d["metadata"] = json.loads(d.get("metadata") or "{}")
        except json.JSONDecodeError:
            d["metadata"] = {}
        try:
            d["chunk_type"] = ChunkType(d.get("chunk_type", "discussion"))
        except ValueError:
            d["chunk_type"] = ChunkType.DISCUSSION
        try:
            d["state"] = ChunkState(d.get("state", "open"))
        except ValueError:
            d["state"] = ChunkState.OPEN
        return MemoryChunk(**d)

    @_translate_errors
    def upsert_chunk(self, chunk: MemoryChunk) -> None:
        """Insert or replace the chunk record, including its lifecycle state."""
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO chunks (
                    id, repository, session_id, content, chunk_type, tags, files,
                    state, created_at, updated_at, last_accessed, metadata
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    content = excluded.content,
                    chunk_type = excluded.chunk_type,
                    tags = excluded.tags,
                    files = excluded.files,
                    state = excluded.state,
                    updated_at = excluded.updated_at,
                    metadata = excluded.metadata
                """,
                (
                    chunk.id,
                    chunk.repository,
                    chunk.session_id,
                    chunk.content,
                    chunk.chunk_type.value,
                    json.dumps(chunk.tags),
                    json.dumps(chunk.files),
                    chunk.state.value,
                    chunk.created_at,
                    chunk.updated_at,
                    chunk.last_accessed,
                    json.dumps(chunk.metadata),
                ),
            )

    @_translate_errors
    def get_chunk(self, chunk_id: str) -> Optional[MemoryChunk]:
        with self._lock:
            row = self._get_conn().execute("SELECT * FROM chunks WHERE id = ?", (chunk_id,)).fetchone()
        return self._row_to_chunk(row) if row else None

    @_translate_errors
    def get_chunks(self, chunk_ids: List[str]) -> List[MemoryChunk]:
        if not chunk_ids:
            return []
        placeholders = ",".join("?" for _ in chunk_ids)
        with self._lock:
            rows = self._get_conn().execute(
                f"SELECT * FROM chunks WHERE id IN ({placeholders})", chunk_ids
            ).fetchall()
        by_id = {row["id"]: self._row_to_chunk(row) for row in rows}
        return [by_id[c] for c in chunk_ids if c in by_id]

    @_translate_errors
    def get_chunk_state(self, chunk_id: str) -> Optional[ChunkState]:
        with self._lock:
            row = self._get_conn().execute("SELECT state FROM chunks WHERE id = ?", (chunk_id,)).fetchone()
        if row is None:
            return None
        try:
            return ChunkState(row["state"])
        except ValueError:
            return None

    @_translate_errors
    def set_chunk_state(self, chunk_id: str, state: ChunkState) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute("UPDATE chunks SET state = ? WHERE id = ?", (state.value, chunk_id))
            return cursor.rowcount > 0

    @_translate_errors
    def get_chunks_in_states(self, states: List[ChunkState], limit: int = 1000) -> List[MemoryChunk]:
        if not states:
            return []
        placeholders = ",".join("?" for _ in states)
        with self._lock:
            rows = self._get_conn().execute(
                f"SELECT * FROM chunks WHERE state IN ({placeholders}) ORDER BY updated_at ASC LIMIT ?",
                [s.value for s in states] + [max(1, int(limit))],
            ).fetchall()
        return [self._row_to_chunk(row) for row in rows]

    @_translate_errors
    def record_access_batch(self, chunk_ids: List[str], accessed_at: Optional[float] = None) -> None:
        """Access-time bookkeeping; leaves content and updated_at untouched."""
        if not chunk_ids:
            return
        ts = accessed_at if accessed_at is not None else time.time()
        with self._transaction() as conn:
            conn.executemany(
                "UPDATE chunks SET last_accessed = ? WHERE id = ?",
                [(ts, chunk_id) for chunk_id in chunk_ids],
            )

    @_translate_errors
    def expired_chunk_ids(self, cutoff: float, limit: int = 1000) -> List[str]:
        """Stored chunks last updated before `cutoff`. Failed and deferred chunks never expire."""
        with self._lock:
            rows = self._get_conn().execute(
                "SELECT id FROM chunks WHERE state = ? AND updated_at < ? "
                "ORDER BY updated_at ASC LIMIT ?",
                (ChunkState.STORED.value, cutoff, limit),
            ).fetchall()
        return [row["id"] for row in rows]

    @_translate_errors
    def delete_chunks(self, chunk_ids: List[str]) -> int:
        if not chunk_ids:
            return 0
        placeholders = ",".join("?" for _ in chunk_ids)
        with self._transaction() as conn:
            cursor = conn.execute(f"DELETE FROM chunks WHERE id IN ({placeholders})", chunk_ids)
            conn.execute(f"DELETE FROM chunk_failures WHERE chunk_id IN ({placeholders})", chunk_ids)
            conn.execute(f"DELETE FROM chunk_notifications WHERE chunk_id IN ({placeholders})", chunk_ids)
            return cursor.rowcount

    @_translate_errors
    def chunk_state_counts(self) -> Dict[str, int]:
        with self._lock:
            rows = self._get_conn().execute(
                "SELECT state, COUNT(*) AS n FROM chunks GROUP BY state"
            ).fetchall()
        return {row["state"]: int(row["n"]) for row in rows}

    # ------------------------------------------------------------------
    # Failure queue
    # ------------------------------------------------------------------

    @_translate_errors
    def record_failure(self, chunk: MemoryChunk, kind: str, error: str) -> None:
        """Record a failed or deferred chunk with enough payload to replay it."""
        payload = chunk.model_dump(mode="json", exclude={"embedding"})
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO chunk_failures (chunk_id, kind, payload, last_error, attempts, updated_at)
                VALUES (?, ?, ?, ?, 1, ?)
                ON CONFLICT(chunk_id) DO UPDATE SET
                    kind = excluded.kind,
                    payload = excluded.payload,
                    last_error = excluded.last_error,
                    attempts = chunk_failures.attempts + 1,
                    updated_at = excluded.updated_at
                """,
                (chunk.id, kind, json.dumps(payload), error[:1000], time.time()),
            )

    @_translate_errors
    def pending_failures(self, limit: int = 100) -> List[Tuple[MemoryChunk, str, int]]:
        """Oldest first: (chunk, kind, attempts)."""
        with self._lock:
            rows = self._get_conn().execute(
                "SELECT chunk_id, kind, payload, attempts FROM chunk_failures ORDER BY updated_at ASC LIMIT ?",
                (max(1, int(limit)),),
            ).fetchall()
        results: List[Tuple[MemoryChunk, str, int]] = []
        for row in rows:
            try:
                chunk = MemoryChunk(**json.loads(row["payload"]))
            except (json.JSONDecodeError, ValueError, TypeError) as e:
                logger.error("Unreadable failure payload for chunk %s: %s", row["chunk_id"], e)
                continue
            results.append((chunk, row["kind"], int(row["attempts"])))
        return results

    @_translate_errors
    def clear_failure(self, chunk_id: str) -> None:
        with self._transaction() as conn:
            conn.execute("DELETE FROM chunk_failures WHERE chunk_id = ?", (chunk_id,))

    @_translate_errors
    def failure_counts(self) -> Dict[str, int]:
        with self._lock:
            rows = self._get_conn().execute(
                "SELECT kind, COUNT(*) AS n FROM chunk_failures GROUP BY kind"
            ).fetchall()
        return {row["kind"]: int(row["n"]) for row in rows}

    # ------------------------------------------------------------------
    # Notification queue
    # ------------------------------------------------------------------

    @_translate_errors
    def enqueue_notification(self, chunk_id: str, repository: str) -> None:
        with self._transaction() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO chunk_notifications (chunk_id, repository, enqueued_at) VALUES (?, ?, ?)",
                (chunk_id, repository, time.time()),
            )

    @_translate_errors
    def pending_notifications(self, limit: int = 100) -> List[Dict[str, Any]]:
        with self._lock:
            rows = self._get_conn().execute(
                """
                SELECT chunk_id, repository, enqueued_at, attempts
                FROM chunk_notifications
                ORDER BY enqueued_at ASC
                LIMIT ?
                """,
                (max(1, int(limit)),),
            ).fetchall()
        return [dict(row) for row in rows]

    @_translate_errors
    def ack_notification(self, chunk_id: str) -> None:
        with self._transaction() as conn:
            conn.execute("DELETE FROM chunk_notifications WHERE chunk_id = ?", (chunk_id,))

    @_translate_errors
    def fail_notification(self, chunk_id: str, error: str) -> None:
        with self._transaction() as conn:
            conn.execute(
                "UPDATE chunk_notifications SET attempts = attempts + 1, last_error = ? WHERE chunk_id = ?",
                (error[:1000], chunk_id),
            )

    @_translate_errors
    def count_notifications(self) -> int:
        with self._lock:
            row = self._get_conn().execute("SELECT COUNT(*) FROM chunk_notifications").fetchone()
        return int(row[0])

    # ------------------------------------------------------------------
    # Patterns and ledgers
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_pattern(row: sqlite3.Row) -> Pattern:
        try:
            chunk_type = ChunkType(row["chunk_type"])
        except ValueError:
            chunk_type = ChunkType.DISCUSSION
        return Pattern(
            signature=row["signature"],
            repository=row["repository"],
            chunk_type=chunk_type,
            tags=_loads_list(row["tags"]),
            shape=row["shape"] or "",
            frequency=int(row["frequency"]),
            sample_chunk_ids=_loads_list(row["sample"]),
            first_seen=float(row["first_seen"]),
            last_seen=float(row["last_seen"]),
            active=bool(row["active"]),
        )

    @_translate_errors
    def get_pattern(self, repository: str, signature: str) -> Optional[Pattern]:
        with self._lock:
            row = self._get_conn().execute(
                "SELECT * FROM patterns WHERE repository = ? AND signature = ?",
                (repository, signature),
            ).fetchone()
        return self._row_to_pattern(row) if row else None

    @_translate_errors
    def has_observation(self, repository: str, signature: str, chunk_id: str) -> bool:
        with self._lock:
            row = self._get_conn().execute(
                "SELECT 1 FROM pattern_observations WHERE repository = ? AND signature = ? AND chunk_id = ?",
                (repository, signature, chunk_id),
            ).fetchone()
        return row is not None

    @_translate_errors
    def save_observation(self, pattern: Pattern, chunk_id: str) -> bool:
        """
        Atomically record that `chunk_id` was counted toward `pattern` and
        persist the updated pattern. Returns False (and writes nothing) when
        the observation was already recorded.
        """
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO pattern_observations (repository, signature, chunk_id, observed_at)
                VALUES (?, ?, ?, ?)
                """,
                (pattern.repository, pattern.signature, chunk_id, time.time()),
            )
            if cursor.rowcount == 0:
                return False
            conn.execute(
                """
                INSERT INTO patterns (
                    repository, signature, chunk_type, tags, shape, frequency,
                    sample, first_seen, last_seen, active
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(repository, signature) DO UPDATE SET
                    frequency = excluded.frequency,
                    sample = excluded.sample,
                    last_seen = excluded.last_seen,
                    active = excluded.active
                """,
                (
                    pattern.repository,
                    pattern.signature,
                    pattern.chunk_type.value,
                    json.dumps(pattern.tags),
                    pattern.shape,
                    pattern.frequency,
                    json.dumps(pattern.sample_chunk_ids),
                    pattern.first_seen,
                    pattern.last_seen,
                    1 if pattern.active else 0,
                ),
            )
            return True

    @_translate_errors
    def count_patterns(self, repository: str) -> int:
        with self._lock:
            row = self._get_conn().execute(
                "SELECT COUNT(*) FROM patterns WHERE repository = ?", (repository,)
            ).fetchone()
        return int(row[0])

    @_translate_errors
    def evict_pattern(self, repository: str) -> Optional[str]:
        """Remove the lowest-frequency pattern (oldest last_seen on ties). Returns its signature."""
        with self._transaction() as conn:
            row = conn.execute(
                """
                SELECT signature FROM patterns
                WHERE repository = ?
                ORDER BY frequency ASC, last_seen ASC
                LIMIT 1
                """,
                (repository,),
            ).fetchone()
            if row is None:
                return None
            signature = row["signature"]
            conn.execute(
                "DELETE FROM patterns WHERE repository = ? AND signature = ?", (repository, signature)
            )
            conn.execute(
                "DELETE FROM pattern_observations WHERE repository = ? AND signature = ?",
                (repository, signature),
            )
            return signature

    @_translate_errors
    def is_folded(self, repository: str, chunk_id: str) -> bool:
        with self._lock:
            row = self._get_conn().execute(
                "SELECT 1 FROM graph_folds WHERE repository = ? AND chunk_id = ?",
                (repository, chunk_id),
            ).fetchone()
        return row is not None

    @_translate_errors
    def mark_folded(self, repository: str, chunk_id: str) -> bool:
        """Returns False if the chunk had already been folded into the graph."""
        with self._transaction() as conn:
            cursor = conn.execute(
                "INSERT OR IGNORE INTO graph_folds (repository, chunk_id, folded_at) VALUES (?, ?, ?)",
                (repository, chunk_id, time.time()),
            )
            return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Meta
    # ------------------------------------------------------------------

    @_translate_errors
    def get_meta(self, key: str, default: Optional[str] = None) -> Optional[str]:
        with self._lock:
            row = self._get_conn().execute("SELECT value FROM schema_meta WHERE key = ?", (key,)).fetchone()
        if row is None:
            return default
        return row[0]

    def close(self):
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None
