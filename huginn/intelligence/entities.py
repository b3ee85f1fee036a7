"""
Huginn Rule-Based Entity Extraction
-----------------------------------
Zero-latency entity and relation extraction for the knowledge graph using
regex patterns and heuristics. No model calls.

Entity types:
  file      paths with a known source/config extension
  tech      languages, frameworks, datastores and platforms
  module    dotted Python-style module paths (huginn.store.graph_store)
  decision  sentences stating a decision
"""

import hashlib
import itertools
import re
from typing import List, Optional, Tuple

from huginn.core.types import GraphEntity

# Technology/framework patterns
TECH_PATTERNS = [
    r'\b(React|Vue|Angular|Next\.?js|Nuxt|Svelte|Django|Flask|FastAPI|Express|Spring|Rails)\b',
    r'\b(Python|JavaScript|TypeScript|Rust|Go|Java|Ruby|PHP|Swift|Kotlin)\b',
    r'\b(PostgreSQL|MySQL|MongoDB|Redis|SQLite|Qdrant|Kuzu|Elasticsearch|DynamoDB)\b',
    r'\b(Docker|Kubernetes|AWS|Azure|GCP|Vercel|Terraform|Supabase|Firebase)\b',
    r'\b(pytest|numpy|pydantic|httpx|asyncio|Celery|Kafka|RabbitMQ|gRPC|GraphQL)\b',
]
_TECH_RE = [re.compile(p, re.IGNORECASE) for p in TECH_PATTERNS]

FILE_PATTERN = re.compile(
    r'(?:^|[\s`"\'(])([a-zA-Z_.][\w/\\.-]*\.(?:py|js|ts|tsx|jsx|go|rs|java|rb|php|html|css|md|yaml|yml|json|toml|sql|sh|cfg|ini))\b'
)

MODULE_PATTERN = re.compile(r'\b([a-z_][a-z0-9_]+(?:\.[a-z_][a-z0-9_]+){1,5})\b')

DECISION_PATTERN = re.compile(
    r'([^.!?\n]*\b(?:decided|decision|chose|agreed|we will go with|going with)\b[^.!?\n]*)',
    re.IGNORECASE,
)

DEPENDENCY_PATTERNS = [
    re.compile(r'(.+?)\s+(?:depends on|requires|imports|uses|calls)\s+(.+?)(?:[.\n]|$)', re.IGNORECASE),
    re.compile(r'(.+?)\s+is (?:built with|powered by|based on)\s+(.+?)(?:[.\n]|$)', re.IGNORECASE),
]

_FILE_EXTENSIONS = ("py", "js", "ts", "md", "json", "yaml", "yml", "toml", "sql", "sh", "go", "rs")


def entity_id(repository: str, entity_type: str, name: str) -> str:
    raw = f"{repository}|{entity_type}|{name.lower()}"
    return hashlib.sha1(raw.encode("utf-8")).hexdigest()


def extract_entities(repository: str, text: str, files: Optional[List[str]] = None, limit: int = 12) -> List[GraphEntity]:
    """Extract at most `limit` distinct entities, files first, in order of appearance."""
    found: List[Tuple[str, str]] = []
    seen = set()

    def _add(entity_type: str, name: str) -> None:
        name = name.strip()
        key = (entity_type, name.lower())
        if name and key not in seen:
            seen.add(key)
            found.append((entity_type, name))

    for path in files or []:
        _add("file", path.replace("\\", "/"))
    for match in FILE_PATTERN.finditer(text):
        _add("file", match.group(1).replace("\\", "/"))

    for pattern in _TECH_RE:
        for match in pattern.finditer(text):
            _add("tech", match.group(1))

    file_names = {name.lower() for t, name in found if t == "file"}
    for match in MODULE_PATTERN.finditer(text):
        name = match.group(1)
        if name.rsplit(".", 1)[-1] in _FILE_EXTENSIONS or any(name in f for f in file_names):
            continue
        _add("module", name)

    for match in DECISION_PATTERN.finditer(text):
        _add("decision", match.group(1)[:200])

    return [
        GraphEntity(
            id=entity_id(repository, entity_type, name),
            repository=repository,
            entity_type=entity_type,
            name=name,
        )
        for entity_type, name in found[:limit]
    ]


def extract_relations(text: str, entities: List[GraphEntity]) -> List[Tuple[str, str, str]]:
    """
    (source_id, target_id, relation_type) triples: co_occurs for every pair of
    entities in the chunk, plus depends_on where a dependency phrase links two
    known entities.
    """
    relations: List[Tuple[str, str, str]] = []
    for a, b in itertools.combinations(entities, 2):
        relations.append((a.id, b.id, "co_occurs"))

    names = [(e.name.lower(), e) for e in entities if e.entity_type != "decision"]
    seen = set()
    for pattern in DEPENDENCY_PATTERNS:
        for match in pattern.finditer(text):
            subj_text = match.group(1).lower()
            obj_text = match.group(2).lower()
            subj = next((e for n, e in names if n in subj_text), None)
            obj = next((e for n, e in names if n in obj_text), None)
            if subj and obj and subj.id != obj.id and (subj.id, obj.id) not in seen:
                seen.add((subj.id, obj.id))
                relations.append((subj.id, obj.id, "depends_on"))
    return relations
