"""
Huginn Graph Store
------------------
Kuzu-based knowledge graph of entities and weighted relationships, scoped
by repository.

Entity and relationship counts are capped per repository. Inserting past a
cap raises CapacityExceeded; the caller evicts (lowest weight / mention
count first, oldest as tie-break) and retries. Kuzu query failures are
translated into StoreError.
"""

import json
import logging
import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import kuzu

from huginn.core.errors import CapacityExceeded, StoreError
from huginn.core.types import GraphEntity, GraphRelationship

logger = logging.getLogger("Huginn.Graph")

MAX_CHUNK_REFS = 50
UNDIRECTED_RELATIONS = {"co_occurs"}


class GraphStore:
    """Manages the entity/relationship knowledge graph in embedded Kuzu."""

    def __init__(self, db_path, max_entities: int = 50000, max_relationships: int = 100000):
        self.db_path = Path(db_path) if not isinstance(db_path, Path) else db_path
        self.max_entities = max_entities
        self.max_relationships = max_relationships
        self._db: Optional[kuzu.Database] = None
        self._thread_local = threading.local()
        self._write_lock = threading.RLock()
        # Initialize DB immediately to fail fast on lock errors
        self._get_db()
        self._initialize()

    def _get_db(self) -> kuzu.Database:
        if self._db is None:
            self._db = kuzu.Database(str(self.db_path))
        return self._db

    def _get_conn(self) -> kuzu.Connection:
        if not hasattr(self._thread_local, "conn"):
            self._thread_local.conn = kuzu.Connection(self._get_db())
        return self._thread_local.conn

    def _rows(self, query: str, params: Optional[Dict[str, Any]] = None) -> List[List[Any]]:
        try:
            result = self._get_conn().execute(query, params or {})
            rows: List[List[Any]] = []
            while result.has_next():
                rows.append(result.get_next())
            return rows
        except RuntimeError as e:
            raise StoreError(f"Graph query failed: {e}") from e

    def _initialize(self):
        conn = self._get_conn()

        try:
            conn.execute("""
                CREATE NODE TABLE IF NOT EXISTS Entity (
                    id STRING,
                    repository STRING,
                    entity_type STRING,
                    name STRING,
                    chunk_refs STRING,
                    mention_count INT64 DEFAULT 1,
                    first_seen DOUBLE,
                    last_seen DOUBLE,
                    PRIMARY KEY (id)
                )
            """)
        except RuntimeError as e:
            if "already exists" not in str(e).lower():
                raise StoreError(f"Entity table creation failed: {e}") from e

        try:
            conn.execute("""
                CREATE REL TABLE IF NOT EXISTS RELATES (
                    FROM Entity TO Entity,
                    repository STRING,
                    relation_type STRING,
                    weight DOUBLE DEFAULT 0.0,
                    updated_at DOUBLE
                )
            """)
        except RuntimeError as e:
            if "already exists" not in str(e).lower():
                raise StoreError(f"RELATES table creation failed: {e}") from e

        logger.info("Graph store initialized at %s", self.db_path)

    # ------------------------------------------------------------------
    # Entities
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_entity(row: List[Any]) -> GraphEntity:
        try:
            refs = json.loads(row[4] or "[]")
        except json.JSONDecodeError:
            refs = []
        return GraphEntity(
            id=row[0],
            repository=row[1],
            entity_type=row[2],
            name=row[3],
            chunk_refs=refs if isinstance(refs, list) else [],
            mention_count=int(row[5] or 0),
            first_seen=float(row[6] or 0.0),
            last_seen=float(row[7] or 0.0),
        )

    _ENTITY_COLUMNS = (
        "e.id, e.repository, e.entity_type, e.name, e.chunk_refs, "
        "e.mention_count, e.first_seen, e.last_seen"
    )

    def get_entity(self, entity_id: str) -> Optional[GraphEntity]:
        rows = self._rows(
            f"MATCH (e:Entity {{id: $id}}) RETURN {self._ENTITY_COLUMNS}", {"id": entity_id}
        )
        return self._row_to_entity(rows[0]) if rows else None

    def find_entities(self, repository: str, name: str, limit: int = 20) -> List[GraphEntity]:
        """Case-insensitive exact name lookup inside one repository."""
        rows = self._rows(
            f"MATCH (e:Entity) WHERE e.repository = $repo AND lower(e.name) = $name "
            f"RETURN {self._ENTITY_COLUMNS} ORDER BY e.mention_count DESC LIMIT $limit",
            {"repo": repository, "name": name.lower(), "limit": limit},
        )
        return [self._row_to_entity(r) for r in rows]

    def upsert_entity(self, entity: GraphEntity, chunk_id: str, now: Optional[float] = None) -> GraphEntity:
        """
        Record one mention of `entity` by `chunk_id`.

        New entities count against the repository cap; existing ones bump
        their mention count and last_seen.
        """
        now = now if now is not None else time.time()
        with self._write_lock:
            existing = self.get_entity(entity.id)
            if existing is None:
                if self.count_entities(entity.repository) >= self.max_entities:
                    raise CapacityExceeded("entity", entity.repository, self.max_entities)
                refs = [chunk_id]
                self._rows(
                    "CREATE (e:Entity {id: $id, repository: $repo, entity_type: $type, name: $name, "
                    "chunk_refs: $refs, mention_count: 1, first_seen: $now, last_seen: $now})",
                    {
                        "id": entity.id,
                        "repo": entity.repository,
                        "type": entity.entity_type,
                        "name": entity.name,
                        "refs": json.dumps(refs),
                        "now": now,
                    },
                )
                return entity.model_copy(
                    update={"chunk_refs": refs, "mention_count": 1, "first_seen": now, "last_seen": now}
                )

            refs = [r for r in existing.chunk_refs if r != chunk_id] + [chunk_id]
            refs = refs[-MAX_CHUNK_REFS:]
            self._rows(
                "MATCH (e:Entity {id: $id}) "
                "SET e.mention_count = e.mention_count + 1, e.last_seen = $now, e.chunk_refs = $refs",
                {"id": entity.id, "now": now, "refs": json.dumps(refs)},
            )
            return existing.model_copy(
                update={
                    "chunk_refs": refs,
                    "mention_count": existing.mention_count + 1,
                    "last_seen": now,
                }
            )

    def count_entities(self, repository: str) -> int:
        rows = self._rows(
            "MATCH (e:Entity) WHERE e.repository = $repo RETURN COUNT(e)", {"repo": repository}
        )
        return int(rows[0][0]) if rows else 0

    def evict_entity(self, repository: str, protect: Optional[List[str]] = None) -> Optional[str]:
        """Remove the least-mentioned, least recently seen entity and its relationships."""
        protected = set(protect or [])
        with self._write_lock:
            rows = self._rows(
                "MATCH (e:Entity) WHERE e.repository = $repo "
                "RETURN e.id ORDER BY e.mention_count ASC, e.last_seen ASC LIMIT $limit",
                {"repo": repository, "limit": len(protected) + 1},
            )
            candidates = [r[0] for r in rows if r[0] not in protected]
            if not candidates:
                return None
            victim = candidates[0]
            self._rows("MATCH (e:Entity {id: $id}) DETACH DELETE e", {"id": victim})
        logger.debug("Evicted entity %s from %s", victim, repository)
        return victim

    # ------------------------------------------------------------------
    # Relationships
    # ------------------------------------------------------------------

    def reinforce_relationship(
        self,
        repository: str,
        source_id: str,
        target_id: str,
        relation_type: str,
        decay: float,
        now: Optional[float] = None,
    ) -> float:
        """
        Form or strengthen a relationship; weight follows w <- decay*w + (1-decay),
        starting from 0. Returns the new weight.
        """
        if source_id == target_id:
            raise ValueError("self relationships are not recorded")
        if relation_type in UNDIRECTED_RELATIONS and source_id > target_id:
            source_id, target_id = target_id, source_id
        now = now if now is not None else time.time()
        params = {"src": source_id, "dst": target_id, "type": relation_type}

        with self._write_lock:
            rows = self._rows(
                "MATCH (a:Entity {id: $src})-[r:RELATES]->(b:Entity {id: $dst}) "
                "WHERE r.relation_type = $type RETURN r.weight",
                params,
            )
            if not rows:
                if self.count_relationships(repository) >= self.max_relationships:
                    raise CapacityExceeded("relationship", repository, self.max_relationships)
                weight = 1.0 - decay
                self._rows(
                    "MATCH (a:Entity {id: $src}), (b:Entity {id: $dst}) "
                    "CREATE (a)-[:RELATES {repository: $repo, relation_type: $type, "
                    "weight: $weight, updated_at: $now}]->(b)",
                    {**params, "repo": repository, "weight": weight, "now": now},
                )
                return weight

            weight = min(1.0, decay * float(rows[0][0] or 0.0) + (1.0 - decay))
            self._rows(
                "MATCH (a:Entity {id: $src})-[r:RELATES]->(b:Entity {id: $dst}) "
                "WHERE r.relation_type = $type SET r.weight = $weight, r.updated_at = $now",
                {**params, "weight": weight, "now": now},
            )
            return weight

    def get_relationship(
        self, source_id: str, target_id: str, relation_type: str
    ) -> Optional[GraphRelationship]:
        if relation_type in UNDIRECTED_RELATIONS and source_id > target_id:
            source_id, target_id = target_id, source_id
        rows = self._rows(
            "MATCH (a:Entity {id: $src})-[r:RELATES]->(b:Entity {id: $dst}) "
            "WHERE r.relation_type = $type RETURN r.repository, r.weight, r.updated_at",
            {"src": source_id, "dst": target_id, "type": relation_type},
        )
        if not rows:
            return None
        repo, weight, updated_at = rows[0]
        return GraphRelationship(
            repository=repo,
            source_id=source_id,
            target_id=target_id,
            relation_type=relation_type,
            weight=float(weight),
            updated_at=float(updated_at),
        )

    def count_relationships(self, repository: str) -> int:
        rows = self._rows(
            "MATCH ()-[r:RELATES]->() WHERE r.repository = $repo RETURN COUNT(r)",
            {"repo": repository},
        )
        return int(rows[0][0]) if rows else 0

    def evict_relationship(self, repository: str) -> bool:
        """Remove the lowest-weight relationship, oldest update as tie-break."""
        with self._write_lock:
            rows = self._rows(
                "MATCH (a:Entity)-[r:RELATES]->(b:Entity) WHERE r.repository = $repo "
                "RETURN a.id, b.id, r.relation_type ORDER BY r.weight ASC, r.updated_at ASC LIMIT 1",
                {"repo": repository},
            )
            if not rows:
                return False
            src, dst, rel_type = rows[0]
            self._rows(
                "MATCH (a:Entity {id: $src})-[r:RELATES]->(b:Entity {id: $dst}) "
                "WHERE r.relation_type = $type DELETE r",
                {"src": src, "dst": dst, "type": rel_type},
            )
        logger.debug("Evicted relationship %s -%s-> %s in %s", src, rel_type, dst, repository)
        return True

    def neighbors(
        self, entity_id: str, min_weight: float = 0.0, limit: int = 20
    ) -> List[Tuple[GraphEntity, str, float]]:
        """Entities adjacent to `entity_id` in either direction, strongest first."""
        rows = self._rows(
            "MATCH (a:Entity {id: $id})-[r:RELATES]-(e:Entity) WHERE r.weight >= $min "
            f"RETURN {self._ENTITY_COLUMNS}, r.relation_type, r.weight "
            "ORDER BY r.weight DESC LIMIT $limit",
            {"id": entity_id, "min": float(min_weight), "limit": int(limit)},
        )
        return [(self._row_to_entity(r[:8]), r[8], float(r[9])) for r in rows]

    def close(self):
        self._db = None
        if hasattr(self._thread_local, "conn"):
            del self._thread_local.conn
