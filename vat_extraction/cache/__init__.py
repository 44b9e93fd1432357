"""
Cache Module.

Fingerprint-keyed result cache with LRU/TTL bounds and in-flight
de-duplication.
"""

from .extraction_cache import ExtractionCache, CacheEntry, CacheStats

__all__ = ['ExtractionCache', 'CacheEntry', 'CacheStats']
