"""Device registry tracking per-device metadata for conflict tie-breaks."""

import structlog

from src.models.records import DeviceRecord
from src.storage.cache import CacheManager, cache_aside
from src.storage.entity_store import EntityStore

log = structlog.stdlib.get_logger()


class DeviceRegistry:
    """Upserts device records on sync interactions and serves point lookups."""

    def __init__(
        self,
        store: EntityStore,
        cache: CacheManager | None = None,
        cache_ttl_seconds: float | None = None,
    ):
        """
        Initialize device registry.

        Args:
            store: Entity store holding device records
            cache: Optional cache for lookups
            cache_ttl_seconds: TTL for cached device records
        """
        self._store = store
        self._cache = cache
        self._cache_ttl = cache_ttl_seconds

    @staticmethod
    def _cache_key(user_id: str, device_id: str) -> str:
        return f"device:{user_id}:{device_id}"

    async def touch(
        self,
        user_id: str,
        device_id: str,
        *,
        name: str | None = None,
        device_type: str | None = None,
        priority: int | None = None,
    ) -> DeviceRecord:
        """
        Upsert a device record, refreshing last-seen.

        Fields left as None keep their stored value (or the model default for a
        new device).

        Args:
            user_id: Owning user
            device_id: Client device identifier
            name: Optional display name
            device_type: Optional device type
            priority: Optional priority

        Returns:
            The stored device record
        """
        existing = await self._store.get_device(user_id, device_id)
        now = self._store.now()

        if existing is None:
            record = DeviceRecord(
                device_id=device_id,
                user_id=user_id,
                name=name or device_id,
                device_type=device_type or "unknown",
                priority=priority if priority is not None else 0,
                last_seen=now,
            )
            log.info("device_registered", user_id=user_id, device_id=device_id)
        else:
            updates: dict[str, object] = {"last_seen": now}
            if name is not None:
                updates["name"] = name
            if device_type is not None:
                updates["device_type"] = device_type
            if priority is not None:
                updates["priority"] = priority
            record = existing.model_copy(update=updates)

        await self._store.upsert_device(record)
        if self._cache is not None:
            await self._cache.invalidate(self._cache_key(user_id, device_id))
        return record

    async def get(self, user_id: str, device_id: str) -> DeviceRecord | None:
        """Look up a device record by (user_id, device_id)."""
        return await cache_aside(
            self._cache,
            self._cache_key(user_id, device_id),
            lambda: self._store.get_device(user_id, device_id),
            self._cache_ttl,
        )
