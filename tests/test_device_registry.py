"""Tests for the device registry and its cached lookups."""

import pytest

from src.storage.cache import CacheManager
from src.sync.device_registry import DeviceRegistry


@pytest.fixture
async def cache():
    manager = CacheManager()
    await manager.start()
    yield manager
    await manager.close()


async def test_touch_registers_unknown_device(store):
    registry = DeviceRegistry(store)

    record = await registry.touch("user-1", "phone")

    assert record.device_id == "phone"
    assert record.name == "phone"
    assert record.device_type == "unknown"
    assert record.priority == 0
    assert await registry.get("user-1", "phone") == record


async def test_touch_refreshes_last_seen_and_keeps_metadata(store):
    registry = DeviceRegistry(store)
    first = await registry.touch("user-1", "tablet", name="iPad", device_type="ios", priority=7)

    second = await registry.touch("user-1", "tablet")

    assert second.last_seen > first.last_seen
    assert (second.name, second.device_type, second.priority) == ("iPad", "ios", 7)


async def test_devices_are_scoped_per_user(store):
    registry = DeviceRegistry(store)
    await registry.touch("user-1", "phone", priority=5)

    assert await registry.get("user-2", "phone") is None
    assert (await registry.get("user-1", "phone")).priority == 5


async def test_cached_lookup_sees_updates(store, cache):
    registry = DeviceRegistry(store, cache=cache, cache_ttl_seconds=300)
    await registry.touch("user-1", "phone", priority=1)

    assert (await registry.get("user-1", "phone")).priority == 1
    assert (await registry.get("user-1", "phone")).priority == 1
    assert cache.hits == 1

    await registry.touch("user-1", "phone", priority=9)

    assert (await registry.get("user-1", "phone")).priority == 9


async def test_cached_and_uncached_registries_agree(store, cache):
    cached = DeviceRegistry(store, cache=cache)
    uncached = DeviceRegistry(store)
    await cached.touch("user-1", "watch", priority=2)

    assert await cached.get("user-1", "watch") == await uncached.get("user-1", "watch")
    assert await cached.get("user-1", "nothing") is None
    assert await uncached.get("user-1", "nothing") is None
