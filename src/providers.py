"""Centralized provider module for the entity store, cache and sync engine.

This module provides factory functions for creating the storage backends the
engine runs on. Developers can modify these functions to swap implementations
without changing other code.

Default implementations:
- EntityStore: InMemoryEntityStore (process-local, no external services required)
- Cache: CacheManager (in-process TTL cache)
"""

import structlog

from src.models.config import AppConfig
from src.storage.cache import CacheManager
from src.storage.entity_store import EntityStore, InMemoryEntityStore
from src.sync.handlers import EntityHandlerRegistry, build_default_registry
from src.sync.sync_coordinator import SyncCoordinator

log = structlog.stdlib.get_logger()


def get_entity_store(config: AppConfig) -> EntityStore:
    """Get the configured entity store implementation.

    Developers: Modify this function to change the persistence backend.
    Default: InMemoryEntityStore

    Any replacement must implement EntityStore, including a commit clock that
    never goes backwards; incremental sync depends on it.

    Args:
        config: Application configuration

    Returns:
        EntityStore instance (not yet started)
    """
    log.info("initializing_entity_store", provider="memory")
    return InMemoryEntityStore()


def get_cache_manager(config: AppConfig) -> CacheManager | None:
    """Get the configured cache, or None when caching is disabled.

    Args:
        config: Application configuration

    Returns:
        CacheManager instance (not yet started) or None

    Raises:
        ValueError: If the configured TTL is not positive
    """
    if not config.cache.enabled:
        log.info("cache_disabled")
        return None

    if config.cache.default_ttl_seconds <= 0:
        error_msg = "cache.default_ttl_seconds must be positive"
        log.error("get_cache_manager_failed", error=error_msg)
        raise ValueError(error_msg)

    log.info(
        "initializing_cache",
        provider="memory",
        default_ttl_seconds=config.cache.default_ttl_seconds,
    )
    return CacheManager(default_ttl_seconds=config.cache.default_ttl_seconds)


def build_sync_coordinator(
    config: AppConfig,
    registry: EntityHandlerRegistry | None = None,
) -> SyncCoordinator:
    """Build a SyncCoordinator from configuration.

    Call start() (or use `async with`) before syncing.

    Args:
        config: Application configuration
        registry: Entity handlers (journal entity types if None)

    Returns:
        SyncCoordinator wired to the configured store and cache

    Raises:
        RuntimeError: If a component cannot be initialized
    """
    try:
        return SyncCoordinator(
            store=get_entity_store(config),
            registry=registry or build_default_registry(),
            config=config,
            cache=get_cache_manager(config),
        )
    except ValueError as e:
        log.error(
            "build_sync_coordinator_failed",
            error=str(e),
            error_type=type(e).__name__,
        )
        raise RuntimeError(f"Failed to initialize sync engine: {e}") from e
