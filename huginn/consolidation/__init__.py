# Lazy imports: RetentionDaemon transitively pulls vector store
__all__ = ["RetentionDaemon"]


def __getattr__(name):
    if name == "RetentionDaemon":
        from huginn.consolidation.retention import RetentionDaemon
        return RetentionDaemon
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
