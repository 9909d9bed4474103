"""
Pytest fixtures for the sync engine test suite.

Provides:
- A started in-memory entity store
- A started SyncCoordinator with default configuration and a cache

Property tests that drive coroutines under hypothesis build their own engine
per example and run it with asyncio.run instead of using these fixtures.
"""

import pytest

from src.models.config import AppConfig
from src.storage.cache import CacheManager
from src.storage.entity_store import InMemoryEntityStore
from src.sync.sync_coordinator import SyncCoordinator


@pytest.fixture
async def store():
    """Started in-memory entity store."""
    entity_store = InMemoryEntityStore()
    await entity_store.start()
    yield entity_store
    await entity_store.close()


@pytest.fixture
def app_config() -> AppConfig:
    return AppConfig()


@pytest.fixture
async def coordinator(app_config: AppConfig):
    """Started coordinator over a fresh in-memory store."""
    async with SyncCoordinator(
        InMemoryEntityStore(),
        config=app_config,
        cache=CacheManager(default_ttl_seconds=app_config.cache.default_ttl_seconds),
    ) as sync_coordinator:
        yield sync_coordinator
