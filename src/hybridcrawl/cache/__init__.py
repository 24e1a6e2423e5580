"""Response caching."""

from .memory_cache import MemoryCache, cache_key, estimate_size

__all__ = ["MemoryCache", "cache_key", "estimate_size"]
