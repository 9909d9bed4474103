"""Persistence and caching components for the sync engine."""

from src.storage.cache import CacheManager, cache_aside
from src.storage.entity_store import EntityStore, InMemoryEntityStore, StoreTransaction

__all__ = ["CacheManager", "EntityStore", "InMemoryEntityStore", "StoreTransaction", "cache_aside"]
