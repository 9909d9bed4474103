"""Entity store interface and in-memory implementation for sync persistence."""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog

from src.models.errors import ConcurrentModificationError, StorageError
from src.models.records import ConflictRecord, DeletionTombstone, DeviceRecord

log = structlog.stdlib.get_logger()


class StoreTransaction(ABC):
    """Unit of work for a single operation.

    Writes are only visible to other readers once the transaction commits.
    """

    @abstractmethod
    async def get(self, entity_type: str, entity_id: str) -> dict[str, Any] | None:
        """Read an entity, including writes staged in this transaction."""
        pass

    @abstractmethod
    async def insert(self, entity_type: str, entity: dict[str, Any]) -> dict[str, Any]:
        """Stage a new entity. createdAt and updatedAt are stamped at commit."""
        pass

    @abstractmethod
    async def update(self, entity_type: str, entity: dict[str, Any]) -> dict[str, Any] | None:
        """Stage a replacement of an existing entity. Returns None if it does not exist."""
        pass

    @abstractmethod
    async def delete(self, entity_type: str, entity_id: str) -> int:
        """Stage a deletion and its tombstone. Returns the number of matched rows."""
        pass


class EntityStore(ABC):
    """Abstract persistence contract consumed by the sync engine.

    Implementations must stamp updatedAt from a clock that never goes backwards
    and must make committed writes visible atomically, so a reader never
    observes a write whose updatedAt precedes an already issued watermark.
    """

    @abstractmethod
    async def start(self) -> None:
        """Open connections and prepare the store."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release connections held by the store."""
        pass

    @abstractmethod
    def now(self) -> datetime:
        """Current store time, strictly later than any previously returned value."""
        pass

    @abstractmethod
    def transaction(self) -> Any:
        """
        Async context manager yielding a StoreTransaction. Commits on clean exit.

        Raises:
            ConcurrentModificationError: At commit, if an entity read through the
                transaction was changed by another commit in the meantime
        """
        pass

    @abstractmethod
    async def find_by_id(self, entity_type: str, entity_id: str) -> dict[str, Any] | None:
        """Read a committed entity."""
        pass

    @abstractmethod
    async def entity_exists(self, entity_id: str) -> bool:
        """Check if any entity type holds an entity with this id."""
        pass

    @abstractmethod
    async def find_changed_since(
        self, entity_type: str, since: datetime | None, owner_id: str | None = None
    ) -> list[dict[str, Any]]:
        """Entities of a type whose updatedAt is strictly after since (all if None)."""
        pass

    @abstractmethod
    async def find_tombstones_since(
        self, since: datetime | None, owner_id: str | None = None
    ) -> list[DeletionTombstone]:
        """Tombstones created strictly after since (all if None)."""
        pass

    @abstractmethod
    async def prune_tombstones(self, before: datetime) -> int:
        """Delete tombstones created before a cutoff. Returns the number removed."""
        pass

    @abstractmethod
    async def save_conflict(self, record: ConflictRecord) -> ConflictRecord:
        """Persist a new conflict record."""
        pass

    @abstractmethod
    async def update_conflict(self, record: ConflictRecord) -> ConflictRecord:
        """Replace an existing conflict record."""
        pass

    @abstractmethod
    async def get_conflict(self, conflict_id: str) -> ConflictRecord | None:
        """Read a conflict record."""
        pass

    @abstractmethod
    async def list_conflicts(self, since: datetime | None = None) -> list[ConflictRecord]:
        """Conflict records detected at or after since (all if None)."""
        pass

    @abstractmethod
    async def get_device(self, user_id: str, device_id: str) -> DeviceRecord | None:
        """Read a device record."""
        pass

    @abstractmethod
    async def upsert_device(self, record: DeviceRecord) -> DeviceRecord:
        """Insert or replace a device record."""
        pass


class _InMemoryTransaction(StoreTransaction):
    """Buffers writes and validates read versions at commit (optimistic locking)."""

    def __init__(self, store: "InMemoryEntityStore"):
        self._store = store
        self._read_versions: dict[tuple[str, str], int | None] = {}
        self._writes: dict[tuple[str, str], dict[str, Any] | None] = {}
        self._inserts: set[tuple[str, str]] = set()

    def _track(self, key: tuple[str, str]) -> dict[str, Any] | None:
        committed = self._store._entities.get(key[0], {}).get(key[1])
        if key not in self._read_versions:
            self._read_versions[key] = committed.get("version") if committed else None
        return committed

    async def get(self, entity_type: str, entity_id: str) -> dict[str, Any] | None:
        key = (entity_type, entity_id)
        committed = self._track(key)
        if key in self._writes:
            staged = self._writes[key]
            return dict(staged) if staged is not None else None
        return dict(committed) if committed is not None else None

    async def insert(self, entity_type: str, entity: dict[str, Any]) -> dict[str, Any]:
        key = (entity_type, entity["id"])
        if await self.get(entity_type, entity["id"]) is not None:
            raise StorageError(f"Entity {entity_type} with id {entity['id']} already exists")
        self._writes[key] = entity
        self._inserts.add(key)
        return entity

    async def update(self, entity_type: str, entity: dict[str, Any]) -> dict[str, Any] | None:
        key = (entity_type, entity["id"])
        if await self.get(entity_type, entity["id"]) is None:
            return None
        self._writes[key] = entity
        return entity

    async def delete(self, entity_type: str, entity_id: str) -> int:
        key = (entity_type, entity_id)
        if await self.get(entity_type, entity_id) is None:
            return 0
        self._writes[key] = None
        return 1

    def commit(self) -> None:
        """Apply staged writes. Caller must hold the store lock."""
        entities = self._store._entities

        for (entity_type, entity_id), read_version in self._read_versions.items():
            current = entities.get(entity_type, {}).get(entity_id)
            current_version = current.get("version") if current else None
            if current_version != read_version:
                raise ConcurrentModificationError(
                    entity_type, entity_id, read_version, current_version
                )

        for (entity_type, entity_id), staged in self._writes.items():
            table = entities.setdefault(entity_type, {})
            stamp = self._store.now()

            if staged is None:
                removed = table.pop(entity_id)
                self._store._tombstones[(entity_type, entity_id)] = DeletionTombstone(
                    entity_id=entity_id,
                    entity_type=entity_type,
                    deleted_at=stamp,
                    owner_id=removed.get("ownerId"),
                )
                continue

            if (entity_type, entity_id) in self._inserts:
                staged["createdAt"] = stamp
                # a re-created id supersedes its earlier deletion
                self._store._tombstones.pop((entity_type, entity_id), None)
            staged["updatedAt"] = stamp
            table[entity_id] = dict(staged)


class InMemoryEntityStore(EntityStore):
    """Process-local entity store.

    Suitable for tests, the replay CLI and single-process deployments. All
    committed state lives in dictionaries guarded by one asyncio lock.
    """

    def __init__(self) -> None:
        self._entities: dict[str, dict[str, dict[str, Any]]] = {}
        self._tombstones: dict[tuple[str, str], DeletionTombstone] = {}
        self._conflicts: dict[str, ConflictRecord] = {}
        self._devices: dict[tuple[str, str], DeviceRecord] = {}
        self._lock = asyncio.Lock()
        self._last_tick: datetime | None = None
        self._started = False

    async def start(self) -> None:
        self._started = True
        log.info("entity_store_started", backend="memory")

    async def close(self) -> None:
        self._started = False
        log.info("entity_store_closed", backend="memory")

    def _ensure_started(self) -> None:
        if not self._started:
            raise StorageError("Entity store is not started")

    def now(self) -> datetime:
        tick = datetime.now(timezone.utc)
        if self._last_tick is not None and tick <= self._last_tick:
            tick = self._last_tick + timedelta(microseconds=1)
        self._last_tick = tick
        return tick

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[StoreTransaction]:
        self._ensure_started()
        tx = _InMemoryTransaction(self)
        yield tx
        async with self._lock:
            tx.commit()

    async def find_by_id(self, entity_type: str, entity_id: str) -> dict[str, Any] | None:
        self._ensure_started()
        entity = self._entities.get(entity_type, {}).get(entity_id)
        return dict(entity) if entity is not None else None

    async def entity_exists(self, entity_id: str) -> bool:
        self._ensure_started()
        return any(entity_id in table for table in self._entities.values())

    async def find_changed_since(
        self, entity_type: str, since: datetime | None, owner_id: str | None = None
    ) -> list[dict[str, Any]]:
        self._ensure_started()
        async with self._lock:
            changed = [
                dict(entity)
                for entity in self._entities.get(entity_type, {}).values()
                if (since is None or entity["updatedAt"] > since)
                and (owner_id is None or entity.get("ownerId") == owner_id)
            ]
        changed.sort(key=lambda entity: entity["updatedAt"])
        return changed

    async def find_tombstones_since(
        self, since: datetime | None, owner_id: str | None = None
    ) -> list[DeletionTombstone]:
        self._ensure_started()
        async with self._lock:
            tombstones = [
                tombstone
                for tombstone in self._tombstones.values()
                if (since is None or tombstone.deleted_at > since)
                and (owner_id is None or tombstone.owner_id == owner_id)
            ]
        tombstones.sort(key=lambda tombstone: tombstone.deleted_at)
        return tombstones

    async def prune_tombstones(self, before: datetime) -> int:
        self._ensure_started()
        async with self._lock:
            expired = [key for key, t in self._tombstones.items() if t.deleted_at < before]
            for key in expired:
                del self._tombstones[key]
        return len(expired)

    async def save_conflict(self, record: ConflictRecord) -> ConflictRecord:
        self._ensure_started()
        if record.id in self._conflicts:
            raise StorageError(f"Conflict record {record.id} already exists")
        self._conflicts[record.id] = record.model_copy(deep=True)
        return record

    async def update_conflict(self, record: ConflictRecord) -> ConflictRecord:
        self._ensure_started()
        if record.id not in self._conflicts:
            raise StorageError(f"Conflict record {record.id} not found")
        self._conflicts[record.id] = record.model_copy(deep=True)
        return record

    async def get_conflict(self, conflict_id: str) -> ConflictRecord | None:
        self._ensure_started()
        record = self._conflicts.get(conflict_id)
        return record.model_copy(deep=True) if record is not None else None

    async def list_conflicts(self, since: datetime | None = None) -> list[ConflictRecord]:
        self._ensure_started()
        records = [
            record.model_copy(deep=True)
            for record in self._conflicts.values()
            if since is None or record.detected_at >= since
        ]
        records.sort(key=lambda record: record.detected_at)
        return records

    async def get_device(self, user_id: str, device_id: str) -> DeviceRecord | None:
        self._ensure_started()
        record = self._devices.get((user_id, device_id))
        return record.model_copy() if record is not None else None

    async def upsert_device(self, record: DeviceRecord) -> DeviceRecord:
        self._ensure_started()
        self._devices[(record.user_id, record.device_id)] = record.model_copy()
        return record
