"""
Cache package for the access service.

Provides the in-process tag cache that serves door lookups without touching
the identity store's storage on the hot path, with explicit invalidation
driven by store mutations.
"""

from .tag_cache import CacheEntry, TagCache

__all__ = ["CacheEntry", "TagCache"]
