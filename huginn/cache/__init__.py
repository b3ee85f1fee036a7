from huginn.cache.tiered import CacheTier, FIFOPolicy, LFUPolicy, LRUPolicy, TieredCache

__all__ = ["CacheTier", "TieredCache", "LRUPolicy", "LFUPolicy", "FIFOPolicy"]
