"""Incremental delta production bounded by a client watermark."""

from datetime import datetime, timedelta

import structlog

from src.models.config import TombstoneConfig
from src.models.delta import SyncDelta
from src.storage.entity_store import EntityStore
from src.sync.conflict_resolver import parse_timestamp

log = structlog.stdlib.get_logger()


class IncrementalSyncProducer:
    """Computes changed entities and tombstones since a watermark."""

    def __init__(
        self,
        store: EntityStore,
        entity_types: list[str],
        tombstone_config: TombstoneConfig | None = None,
    ):
        """
        Initialize incremental sync producer.

        Args:
            store: Entity store to read from
            entity_types: Entity types included in every delta
            tombstone_config: Tombstone retention settings
        """
        self._store = store
        self._entity_types = list(entity_types)
        self._tombstones = tombstone_config or TombstoneConfig()

    @property
    def retention(self) -> timedelta | None:
        if self._tombstones.retention_days is None:
            return None
        return timedelta(days=self._tombstones.retention_days)

    async def produce(self, user_id: str, watermark: datetime | None = None) -> SyncDelta:
        """
        Build the delta a user has not yet observed.

        The next watermark is taken from the store clock before any read, so a
        write committing while the reads run is either part of this delta or
        newer than the returned watermark. It may be delivered twice, never
        skipped. The returned watermark never precedes the one received, even
        when a client echoes a value ahead of the store clock.

        Args:
            user_id: User whose entities and tombstones are returned
            watermark: Watermark from the previous call; None means full history

        Returns:
            SyncDelta grouped by entity type, with the next watermark
        """
        since = parse_timestamp(watermark) if watermark is not None else None
        next_watermark = self._store.now()
        if since is not None and since > next_watermark:
            log.warning(
                "watermark_ahead_of_store_clock",
                user_id=user_id,
                watermark=since,
                store_time=next_watermark,
            )
            next_watermark = since

        log.info(
            "incremental_sync_started",
            user_id=user_id,
            watermark=since,
            next_watermark=next_watermark,
        )

        entities: dict[str, list[dict]] = {}
        for entity_type in self._entity_types:
            entities[entity_type] = await self._store.find_changed_since(
                entity_type, since, owner_id=user_id
            )

        deleted: dict[str, list[str]] = {entity_type: [] for entity_type in self._entity_types}
        for tombstone in await self._store.find_tombstones_since(since, owner_id=user_id):
            deleted.setdefault(tombstone.entity_type, []).append(tombstone.entity_id)

        delta = SyncDelta(
            entities=entities,
            deleted=deleted,
            watermark=next_watermark,
            full_resync_required=self._predates_retention(since, next_watermark),
        )

        log.info(
            "incremental_sync_completed",
            user_id=user_id,
            total_changes=delta.total_changes,
            full_resync_required=delta.full_resync_required,
        )
        return delta

    def _predates_retention(self, since: datetime | None, now: datetime) -> bool:
        retention = self.retention
        if since is None or retention is None:
            return False
        return since < now - retention

    async def prune_tombstones(self, now: datetime | None = None) -> int:
        """
        Delete tombstones older than the retention window.

        Args:
            now: Reference time (store clock if None)

        Returns:
            Number of tombstones removed; 0 when retention is unlimited
        """
        retention = self.retention
        if retention is None:
            log.debug("tombstone_pruning_skipped", reason="unlimited_retention")
            return 0

        cutoff = (now or self._store.now()) - retention
        removed = await self._store.prune_tombstones(cutoff)
        log.info("tombstones_pruned", removed=removed, cutoff=cutoff)
        return removed
