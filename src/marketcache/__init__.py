"""
Market-data cache layer
In-memory entries keyed by (entity, shape), TTL per shape, last-known values.
"""

from .key_generator import make_cache_key
from .store import CacheEntry, CacheStore, LastKnownValues
from .ttl import DEFAULT_TTL_TABLE, TTLPolicy

__all__ = [
    'CacheEntry',
    'CacheStore',
    'DEFAULT_TTL_TABLE',
    'LastKnownValues',
    'TTLPolicy',
    'make_cache_key',
]
