"""Synchronization coordinator wiring the batch and incremental sync paths."""

import time
from collections.abc import Sequence
from datetime import datetime, timedelta, timezone
from typing import Any, Literal

import structlog

from src.models.config import AppConfig
from src.models.delta import ConflictMetrics, SyncDelta
from src.models.errors import CyclicDependencyError, OperationValidationError
from src.models.operation import (
    BatchSyncOptions,
    BatchSyncResponse,
    FailedOperation,
    SyncOperation,
    SyncResult,
)
from src.models.records import ConflictRecord, DeviceRecord
from src.storage.cache import CacheManager
from src.storage.entity_store import EntityStore
from src.sync.batch_executor import BatchExecutionReport, ConcurrentBatchExecutor
from src.sync.conflict_resolver import ConflictDetector, ConflictResolver
from src.sync.dependency_sorter import DependencyGraphSorter
from src.sync.device_registry import DeviceRegistry
from src.sync.handlers import EntityHandlerRegistry, build_default_registry
from src.sync.incremental_sync import IncrementalSyncProducer
from src.utils.logging_config import bind_sync_context

log = structlog.stdlib.get_logger()


class SyncCoordinator:
    """Orchestrates batch synchronization and incremental delta delivery."""

    def __init__(
        self,
        store: EntityStore,
        registry: EntityHandlerRegistry | None = None,
        config: AppConfig | None = None,
        cache: CacheManager | None = None,
    ):
        """
        Initialize sync coordinator.

        Args:
            store: Entity store shared by all components
            registry: Entity handlers (default journal entity types if None)
            config: Application configuration (defaults if None)
            cache: Optional cache manager; its lifecycle follows the coordinator
        """
        self._config = config or AppConfig()
        self._store = store
        self._cache = cache
        self._registry = registry or build_default_registry()

        engine = self._config.engine
        self._sorter = DependencyGraphSorter()
        self._devices = DeviceRegistry(
            store, cache=cache, cache_ttl_seconds=self._config.cache.device_ttl_seconds
        )
        self._resolver = ConflictResolver(store, self._devices, self._config.conflicts)
        self._executor = ConcurrentBatchExecutor(
            store,
            self._registry,
            self._resolver,
            detector=ConflictDetector(),
            max_concurrency=engine.max_concurrency,
            timeout_seconds=engine.operation_timeout_seconds,
            verify_external_dependencies=engine.verify_external_dependencies,
            commit_retries=engine.commit_retries,
        )
        self._producer = IncrementalSyncProducer(
            store, self._registry.entity_types, self._config.tombstones
        )

        log.info(
            "sync_coordinator_initialized",
            entity_types=self._registry.entity_types,
            max_concurrency=engine.max_concurrency,
            cache_enabled=cache is not None,
        )

    async def start(self) -> None:
        """Start the store and cache."""
        await self._store.start()
        if self._cache is not None:
            await self._cache.start()
        log.info("sync_coordinator_started")

    async def close(self) -> None:
        """Wait for detached applies, then close the cache and store."""
        await self._executor.drain()
        if self._cache is not None:
            await self._cache.close()
        await self._store.close()
        log.info("sync_coordinator_closed")

    async def __aenter__(self) -> "SyncCoordinator":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    @property
    def devices(self) -> DeviceRegistry:
        return self._devices

    async def register_device(
        self,
        user_id: str,
        device_id: str,
        *,
        name: str | None = None,
        device_type: str | None = None,
        priority: int | None = None,
    ) -> DeviceRecord:
        """Register a device or update its metadata."""
        return await self._devices.touch(
            user_id, device_id, name=name, device_type=device_type, priority=priority
        )

    async def batch_sync(
        self,
        user_id: str,
        device_id: str,
        operations: Sequence[SyncOperation],
        options: BatchSyncOptions | None = None,
    ) -> BatchSyncResponse:
        """
        Apply a client batch with dependency ordering and per-operation isolation.

        A non-empty failed list is a normal outcome; callers must inspect the
        per-operation results.

        Args:
            user_id: Submitting user
            device_id: Submitting device
            operations: Operations in any order
            options: Per-call options

        Returns:
            BatchSyncResponse with successful and failed operations

        Raises:
            CyclicDependencyError: If no safe order exists; nothing is applied
            OperationValidationError: If operation ids repeat or the batch is too large
        """
        with bind_sync_context(user_id, device_id):
            return await self._batch_sync(user_id, device_id, operations, options)

    async def _batch_sync(
        self,
        user_id: str,
        device_id: str,
        operations: Sequence[SyncOperation],
        options: BatchSyncOptions | None,
    ) -> BatchSyncResponse:
        started = time.perf_counter()
        options = options or BatchSyncOptions()
        log.info(
            "batch_sync_started",
            user_id=user_id,
            device_id=device_id,
            operation_count=len(operations),
        )

        await self._devices.touch(user_id, device_id)
        self._validate_batch(operations)

        try:
            ordered = self._sorter.sort(operations)
        except CyclicDependencyError as e:
            log.error(
                "batch_sync_rejected",
                user_id=user_id,
                operation_id=e.operation_id,
                error=str(e),
            )
            raise

        external = self._sorter.external_dependencies(operations)
        if external:
            log.debug("external_dependencies_referenced", dependency_ids=sorted(external))

        report = await self._executor.execute(
            ordered,
            user_id=user_id,
            device_id=device_id,
            max_concurrency=options.max_concurrency,
            timeout_seconds=options.timeout_seconds,
            skip_validation=options.skip_validation,
        )

        response = self._build_response(
            operations, report, options, (time.perf_counter() - started) * 1000
        )
        log.info(
            "batch_sync_completed",
            user_id=user_id,
            device_id=device_id,
            successful=len(response.successful),
            failed=len(response.failed),
            duration_ms=round(response.duration_ms, 2),
        )
        return response

    def _validate_batch(self, operations: Sequence[SyncOperation]) -> None:
        limit = self._config.engine.max_batch_operations
        if len(operations) > limit:
            raise OperationValidationError(
                f"Too many operations in one batch: {len(operations)} (maximum {limit})"
            )

        seen: set[str] = set()
        duplicates = sorted({op.id for op in operations if op.id in seen or seen.add(op.id)})
        if duplicates:
            raise OperationValidationError(
                f"Operation ids must be unique within a batch: {', '.join(duplicates)}"
            )

    def _build_response(
        self,
        operations: Sequence[SyncOperation],
        report: BatchExecutionReport,
        options: BatchSyncOptions,
        duration_ms: float,
    ) -> BatchSyncResponse:
        successful: list[SyncResult] = []
        failed: list[FailedOperation] = []

        for result in report.results:
            if result.success:
                successful.append(
                    SyncResult(
                        id=result.operation_id,
                        data=result.data,
                        processing_time_ms=result.processing_time_ms,
                        entity_type=result.entity_type,
                        conflict_id=result.conflict_id,
                    )
                )
            else:
                failed.append(
                    FailedOperation(
                        id=result.operation_id,
                        error=result.error or "",
                        error_code=result.error_code or "SYNC_ERROR",
                        entity_type=result.entity_type,
                        operation_kind=result.kind,
                        conflict_id=result.conflict_id,
                    )
                )

        total = len(operations)
        success_rate = len(successful) / total if total else 0.0
        engine = self._config.engine

        return BatchSyncResponse(
            successful=successful,
            failed=failed,
            processed=total,
            duration_ms=duration_ms,
            timestamp=datetime.now(timezone.utc),
            success_rate=success_rate,
            performance_metrics={
                "total_operations": total,
                "duration_ms": round(duration_ms, 3),
                "throughput": round(total / (duration_ms / 1000), 2) if duration_ms > 0 else 0.0,
                "success_rate": round(success_rate, 4),
                "success_count": len(successful),
                "fail_count": len(failed),
                "window_count": report.window_count,
                "peak_in_flight": report.peak_in_flight,
                "conflicts_detected": report.conflicts_detected,
                "batch_size": options.batch_size or engine.batch_size,
                "max_concurrency": options.max_concurrency or engine.max_concurrency,
            },
        )

    async def incremental_sync(
        self, user_id: str, device_id: str, watermark: datetime | None = None
    ) -> SyncDelta:
        """
        Return everything the device has not observed since its watermark.

        Args:
            user_id: Requesting user
            device_id: Requesting device
            watermark: Watermark echoed from the previous call, None for full history

        Returns:
            SyncDelta with the next watermark
        """
        with bind_sync_context(user_id, device_id):
            await self._devices.touch(user_id, device_id)
            return await self._producer.produce(user_id, watermark)

    async def resolve_conflict(
        self,
        conflict_id: str,
        winner: Literal["local", "remote"],
        details: str = "",
    ) -> ConflictRecord:
        """Attach an out-of-band resolution to a pending conflict."""
        return await self._resolver.resolve_manually(conflict_id, winner, details)

    async def conflict_metrics(self, lookback: timedelta | None = None) -> ConflictMetrics:
        """Summarize conflicts detected within the lookback window."""
        return await self._resolver.metrics(lookback)

    async def prune_tombstones(self) -> int:
        """Apply the tombstone retention policy."""
        return await self._producer.prune_tombstones()
