"""Conflict detection and strategy-driven resolution for concurrent edits."""

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Literal

import structlog

from src.models.config import ConflictConfig
from src.models.delta import ConflictMetrics
from src.models.errors import EntityNotFoundError, OperationValidationError, StorageError
from src.models.records import (
    ConflictRecord,
    ConflictResolution,
    ConflictStatus,
    ResolutionStrategy,
)
from src.storage.entity_store import EntityStore
from src.sync.device_registry import DeviceRegistry
from src.sync.handlers import WriteContext
from src.utils.retry import exponential_backoff_retry

log = structlog.stdlib.get_logger()


def parse_timestamp(value: Any) -> datetime:
    """
    Parse a client timestamp into an aware UTC datetime.

    Naive values are taken as UTC.

    Raises:
        ValueError: If the value is not a datetime or ISO-8601 string
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    else:
        raise ValueError(f"unsupported timestamp value: {value!r}")

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed


class ConflictDetector:
    """Compares the stored version marker with the version the client last observed."""

    def detect(self, current: dict[str, Any], payload: dict[str, Any]) -> bool:
        """
        Check if the stored entity changed after the client observed it.

        The client marker is the payload's version counter, or its updatedAt
        timestamp when no version is sent. A payload with neither marker is an
        unconditional write.

        Args:
            current: Stored entity
            payload: Incoming payload

        Returns:
            True if the stored version is strictly newer than the observed one

        Raises:
            OperationValidationError: If the payload carries a malformed marker
        """
        observed_version = payload.get("version")
        if observed_version is not None:
            if isinstance(observed_version, bool) or not isinstance(observed_version, int):
                raise OperationValidationError("version must be an integer")
            return current.get("version", 0) > observed_version

        observed_at = payload.get("updatedAt")
        if observed_at is not None:
            try:
                observed = parse_timestamp(observed_at)
            except ValueError as e:
                raise OperationValidationError(f"updatedAt is not a valid timestamp: {e}") from e
            return current["updatedAt"] > observed

        return False


class ConflictResolver:
    """Resolves detected conflicts and keeps the conflict audit trail."""

    def __init__(
        self,
        store: EntityStore,
        device_registry: DeviceRegistry,
        config: ConflictConfig | None = None,
    ):
        """
        Initialize conflict resolver.

        Args:
            store: Entity store receiving conflict records
            device_registry: Source of device priorities
            config: Strategy selection per entity type
        """
        self._store = store
        self._devices = device_registry
        self._config = config or ConflictConfig()

    async def resolve(
        self,
        entity_type: str,
        current: dict[str, Any],
        payload: dict[str, Any],
        context: WriteContext,
    ) -> ConflictRecord:
        """
        Record a conflict and decide which version prevails.

        A pending record is persisted before any decision, so every detected
        conflict leaves an audit entry. MANUAL leaves it pending; the other
        strategies attach their resolution.

        Args:
            entity_type: Entity type in conflict
            current: Stored (local) version
            payload: Incoming (remote) version
            context: Writer of the incoming version

        Returns:
            The conflict record; resolution is None while pending
        """
        strategy = self._config.strategy_for(entity_type)
        record = ConflictRecord(
            id=str(uuid.uuid4()),
            entity_type=entity_type,
            entity_id=current["id"],
            device_id=context.device_id,
            user_id=context.user_id,
            strategy=strategy,
            local_version=dict(current),
            remote_version=dict(payload),
            detected_at=self._store.now(),
        )

        log.info(
            "conflict_detected",
            conflict_id=record.id,
            entity_type=entity_type,
            entity_id=record.entity_id,
            device_id=context.device_id,
            strategy=strategy.value,
        )
        await self._audit(self._store.save_conflict, record)

        if strategy == ResolutionStrategy.MANUAL:
            log.info("conflict_left_pending", conflict_id=record.id, entity_id=record.entity_id)
            return record

        if strategy == ResolutionStrategy.DEVICE_PRIORITY:
            resolution = await self._resolve_device_priority(current, context)
        else:
            resolution = self._resolve_last_write_wins(current, context)

        record = record.model_copy(
            update={
                "resolution": resolution,
                "resolved_at": self._store.now(),
                "status": ConflictStatus.RESOLVED,
            }
        )
        await self._audit(self._store.update_conflict, record)

        log.info(
            "conflict_resolved",
            conflict_id=record.id,
            strategy=strategy.value,
            winner=resolution.winner,
            details=resolution.details,
        )
        return record

    def _resolve_last_write_wins(
        self, current: dict[str, Any], context: WriteContext
    ) -> ConflictResolution:
        local_ts = current.get("clientUpdatedAt") or current["updatedAt"]
        remote_ts = context.write_timestamp
        winner: Literal["local", "remote"] = "remote" if remote_ts > local_ts else "local"

        return ConflictResolution(
            strategy=ResolutionStrategy.LAST_WRITE_WINS,
            winner=winner,
            local_timestamp=local_ts,
            remote_timestamp=remote_ts,
            details=f"{winner} version is newer" if local_ts != remote_ts else "tie keeps local",
        )

    async def _resolve_device_priority(
        self, current: dict[str, Any], context: WriteContext
    ) -> ConflictResolution:
        local_priority = await self._priority(
            current.get("lastModifiedByUser") or current.get("ownerId"),
            current.get("lastModifiedBy"),
        )
        remote_priority = await self._priority(context.user_id, context.device_id)

        if local_priority == remote_priority:
            fallback = self._resolve_last_write_wins(current, context)
            return fallback.model_copy(
                update={
                    "strategy": ResolutionStrategy.DEVICE_PRIORITY,
                    "local_priority": local_priority,
                    "remote_priority": remote_priority,
                    "details": f"equal priority {local_priority}, {fallback.details}",
                }
            )

        winner: Literal["local", "remote"] = (
            "remote" if remote_priority > local_priority else "local"
        )
        return ConflictResolution(
            strategy=ResolutionStrategy.DEVICE_PRIORITY,
            winner=winner,
            local_priority=local_priority,
            remote_priority=remote_priority,
            details=f"priority {remote_priority} vs stored {local_priority}",
        )

    async def _priority(self, user_id: str | None, device_id: str | None) -> int:
        if not user_id or not device_id:
            return 0
        device = await self._devices.get(user_id, device_id)
        return device.priority if device is not None else 0

    async def _audit(self, write: Any, record: ConflictRecord) -> None:
        """Persist a conflict record outside the write's transaction, best effort."""

        @exponential_backoff_retry(max_retries=2, base_delay=0.05, exceptions=(StorageError,))
        async def _write() -> None:
            await write(record)

        try:
            await _write()
        except StorageError as e:
            log.error(
                "conflict_audit_write_failed",
                conflict_id=record.id,
                entity_type=record.entity_type,
                entity_id=record.entity_id,
                error=str(e),
            )

    async def resolve_manually(
        self,
        conflict_id: str,
        winner: Literal["local", "remote"],
        details: str = "",
    ) -> ConflictRecord:
        """
        Attach an out-of-band decision to a pending conflict.

        The decision is recorded only; applying the winning version is up to the
        client, which resubmits it against the current version.

        Raises:
            EntityNotFoundError: If the conflict record does not exist
            OperationValidationError: If the conflict is already resolved
        """
        record = await self._store.get_conflict(conflict_id)
        if record is None:
            raise EntityNotFoundError("ConflictRecord", conflict_id)
        if record.status == ConflictStatus.RESOLVED:
            raise OperationValidationError(f"Conflict {conflict_id} is already resolved")

        record = record.model_copy(
            update={
                "resolution": ConflictResolution(
                    strategy=record.strategy,
                    winner=winner,
                    details=details or "resolved manually",
                ),
                "resolved_at": self._store.now(),
                "status": ConflictStatus.RESOLVED,
            }
        )
        await self._store.update_conflict(record)
        log.info("conflict_resolved_manually", conflict_id=conflict_id, winner=winner)
        return record

    async def metrics(self, lookback: timedelta | None = None) -> ConflictMetrics:
        """Summarize conflict records detected within the lookback window."""
        since = self._store.now() - lookback if lookback is not None else None
        records = await self._store.list_conflicts(since)

        resolved = sum(1 for r in records if r.status == ConflictStatus.RESOLVED)
        strategy_counts: dict[str, int] = {}
        for record in records:
            key = record.strategy.value
            strategy_counts[key] = strategy_counts.get(key, 0) + 1

        return ConflictMetrics(
            total_conflicts=len(records),
            resolved_conflicts=resolved,
            pending_conflicts=len(records) - resolved,
            resolution_rate=resolved / len(records) if records else 0.0,
            strategy_counts=strategy_counts,
            since=since,
        )
