"""TTL caches over capsule listings, corpora and scan metadata."""

from capsulekit.cache.metadata import SNAPSHOT_NAME, CapsuleMetadataCache, MetadataEntry
from capsulekit.cache.service import CacheService, Mutation, affected_caches
from capsulekit.cache.ttl import KeyedTTLCache, TTLCache

__all__ = [
    "SNAPSHOT_NAME",
    "CacheService",
    "CapsuleMetadataCache",
    "KeyedTTLCache",
    "MetadataEntry",
    "Mutation",
    "TTLCache",
    "affected_caches",
]
