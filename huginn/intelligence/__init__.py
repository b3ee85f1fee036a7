# Lazy imports: PatternGraphBuilder transitively pulls the graph store (kuzu)
from huginn.intelligence.entities import extract_entities, extract_relations
from huginn.intelligence.signature import pattern_signature

__all__ = ["PatternGraphBuilder", "extract_entities", "extract_relations", "pattern_signature"]


def __getattr__(name):
    if name == "PatternGraphBuilder":
        from huginn.intelligence.builder import PatternGraphBuilder
        return PatternGraphBuilder
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
