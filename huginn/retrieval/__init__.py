# Lazy imports: ProgressiveSearchEngine pulls in qdrant_client transitively
__all__ = ["ProgressiveSearchEngine", "rank_results"]


def __getattr__(name):
    if name in __all__:
        from huginn.retrieval import progressive
        return getattr(progressive, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
