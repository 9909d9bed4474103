"""Windowed concurrent application of sorted batch operations."""

import asyncio
import re
import time
from collections.abc import Sequence
from datetime import datetime
from typing import Any

import structlog
from pydantic import BaseModel, Field

from src.models.errors import (
    ConcurrentModificationError,
    ConflictRejectedError,
    DependencyUnmetError,
    EntityNotFoundError,
    OperationTimeoutError,
    OperationValidationError,
    StorageError,
    SyncError,
)
from src.models.operation import OperationKind, OperationResult, SyncOperation
from src.storage.entity_store import EntityStore
from src.sync.conflict_resolver import ConflictDetector, ConflictResolver, parse_timestamp
from src.sync.handlers import EntityHandler, EntityHandlerRegistry, WriteContext

log = structlog.stdlib.get_logger()

# "$ref:op1" or "$ref:op1.field" inside a payload names a field of a dependency's result.
REFERENCE_PATTERN = re.compile(r"^\$ref:([^.\s]+)(?:\.(\w+))?$")


class BatchExecutionReport(BaseModel):
    """Per-operation results plus execution statistics."""

    results: list[OperationResult] = Field(default_factory=list)
    duration_ms: float = Field(default=0.0, ge=0.0)
    window_count: int = Field(default=0, ge=0)
    peak_in_flight: int = Field(default=0, ge=0)
    conflicts_detected: int = Field(default=0, ge=0)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed(self) -> int:
        return len(self.results) - self.succeeded


def plan_windows(
    operations: Sequence[SyncOperation], max_concurrency: int
) -> list[list[SyncOperation]]:
    """
    Split sorted operations into windows applied one after another.

    A window closes when it holds max_concurrency operations or when the next
    operation depends on one already inside it, so every in-batch dependency
    lies in an earlier window.

    Args:
        operations: Operations in dependency order
        max_concurrency: Largest window size

    Returns:
        Windows in execution order
    """
    if max_concurrency < 1:
        raise ValueError("max_concurrency must be at least 1")

    windows: list[list[SyncOperation]] = []
    current: list[SyncOperation] = []
    current_ids: set[str] = set()

    for op in operations:
        depends_on_current = any(dep in current_ids for dep in op.dependencies)
        if current and (len(current) >= max_concurrency or depends_on_current):
            windows.append(current)
            current, current_ids = [], set()
        current.append(op)
        current_ids.add(op.id)

    if current:
        windows.append(current)
    return windows


class _BatchState:
    """Mutable bookkeeping for one execute() call."""

    def __init__(self, operations: Sequence[SyncOperation], received_at: datetime):
        self.batch_ids = {op.id for op in operations}
        self.succeeded: dict[str, dict[str, Any]] = {}
        self.received_at = received_at
        self.in_flight = 0
        self.peak_in_flight = 0
        self.conflicts = 0


class ConcurrentBatchExecutor:
    """Applies sorted operations window by window with per-operation isolation."""

    def __init__(
        self,
        store: EntityStore,
        registry: EntityHandlerRegistry,
        resolver: ConflictResolver,
        detector: ConflictDetector | None = None,
        max_concurrency: int = 10,
        timeout_seconds: float = 30.0,
        verify_external_dependencies: bool = False,
        commit_retries: int = 3,
    ):
        """
        Initialize batch executor.

        Args:
            store: Entity store; each operation runs in its own transaction
            registry: Handlers per entity type
            resolver: Conflict resolver consulted before UPDATE and DELETE
            detector: Conflict detector (default ConflictDetector)
            max_concurrency: Default window size
            timeout_seconds: Default per-operation deadline
            verify_external_dependencies: Require dependency ids outside the
                batch to name stored entities
            commit_retries: Re-applies of an operation whose commit lost a race
                with another write to the same entity; each re-apply reads the
                committed version and goes through conflict detection again
        """
        self._store = store
        self._registry = registry
        self._resolver = resolver
        self._detector = detector or ConflictDetector()
        self._max_concurrency = max_concurrency
        self._timeout = timeout_seconds
        self._verify_external = verify_external_dependencies
        self._commit_retries = commit_retries
        # Applies that outlived their deadline keep running; hold references until done.
        self._detached: set[asyncio.Task] = set()

    async def execute(
        self,
        operations: Sequence[SyncOperation],
        *,
        user_id: str,
        device_id: str,
        max_concurrency: int | None = None,
        timeout_seconds: float | None = None,
        skip_validation: bool = False,
    ) -> BatchExecutionReport:
        """
        Apply operations in dependency order, each exactly once.

        Operations inside a window run concurrently; the next window starts only
        after every operation of the current one has finished. A failure never
        aborts siblings; dependents report DependencyUnmetError.

        Args:
            operations: Operations already sorted by DependencyGraphSorter
            user_id: Submitting user
            device_id: Submitting device
            max_concurrency: Window size override
            timeout_seconds: Per-operation deadline override
            skip_validation: Skip structural payload validation

        Returns:
            BatchExecutionReport with one result per operation, in input order
        """
        started = time.perf_counter()
        limit = max_concurrency or self._max_concurrency
        timeout = timeout_seconds or self._timeout
        state = _BatchState(operations, self._store.now())
        windows = plan_windows(operations, limit)

        log.info(
            "batch_execution_started",
            operation_count=len(operations),
            window_count=len(windows),
            max_concurrency=limit,
            timeout_seconds=timeout,
        )

        results: dict[str, OperationResult] = {}
        for index, window in enumerate(windows):
            window_results = await asyncio.gather(
                *(
                    self._run(op, state, user_id, device_id, timeout, skip_validation)
                    for op in window
                )
            )
            for result in window_results:
                results[result.operation_id] = result

            log.debug(
                "window_completed",
                window=index,
                size=len(window),
                succeeded=sum(1 for r in window_results if r.success),
            )

        report = BatchExecutionReport(
            results=[results[op.id] for op in operations],
            duration_ms=(time.perf_counter() - started) * 1000,
            window_count=len(windows),
            peak_in_flight=state.peak_in_flight,
            conflicts_detected=state.conflicts,
        )

        log.info(
            "batch_execution_completed",
            succeeded=report.succeeded,
            failed=report.failed,
            conflicts=report.conflicts_detected,
            duration_ms=round(report.duration_ms, 2),
        )
        return report

    async def _run(
        self,
        op: SyncOperation,
        state: _BatchState,
        user_id: str,
        device_id: str,
        timeout: float,
        skip_validation: bool,
    ) -> OperationResult:
        started = time.perf_counter()
        conflict_id: str | None = None

        try:
            await self._check_dependencies(op, state)
            handler = self._registry.get(op.entity_type)

            try:
                payload = op.decode_payload()
            except ValueError as e:
                raise OperationValidationError(str(e)) from e

            payload = self._resolve_references(payload, op, state)
            if not skip_validation:
                handler.validate(op.kind, payload)

            context = WriteContext(
                user_id=user_id,
                device_id=device_id,
                write_timestamp=(
                    parse_timestamp(op.timestamp) if op.timestamp else state.received_at
                ),
            )
            entity, conflict_id = await self._apply_with_timeout(
                op, handler, payload, context, state, timeout
            )

        except SyncError as e:
            if isinstance(e, ConflictRejectedError):
                conflict_id = e.conflict_id
            return self._failure(op, e, started, conflict_id)
        except Exception as e:
            log.exception("operation_storage_failure", operation_id=op.id)
            error = StorageError(f"Storage failure: {e}")
            error.__cause__ = e
            return self._failure(op, error, started, conflict_id)

        state.succeeded[op.id] = entity
        log.debug(
            "operation_applied",
            operation_id=op.id,
            entity_type=op.entity_type,
            kind=op.kind.value,
            entity_id=entity.get("id"),
        )
        return OperationResult(
            operation_id=op.id,
            entity_type=op.entity_type,
            kind=op.kind,
            success=True,
            data=entity,
            processing_time_ms=(time.perf_counter() - started) * 1000,
            conflict_id=conflict_id,
        )

    def _failure(
        self, op: SyncOperation, error: SyncError, started: float, conflict_id: str | None
    ) -> OperationResult:
        log.warning(
            "operation_failed",
            operation_id=op.id,
            entity_type=op.entity_type,
            kind=op.kind.value,
            error_code=error.code,
            error=str(error),
        )
        return OperationResult(
            operation_id=op.id,
            entity_type=op.entity_type,
            kind=op.kind,
            success=False,
            error=str(error),
            error_code=error.code,
            processing_time_ms=(time.perf_counter() - started) * 1000,
            conflict_id=conflict_id,
        )

    async def _check_dependencies(self, op: SyncOperation, state: _BatchState) -> None:
        missing: list[str] = []
        for dep in op.dependencies:
            if dep in state.batch_ids:
                if dep not in state.succeeded:
                    missing.append(dep)
            elif self._verify_external and not await self._store.entity_exists(dep):
                missing.append(dep)

        if missing:
            raise DependencyUnmetError(op.id, missing)

    def _resolve_references(self, value: Any, op: SyncOperation, state: _BatchState) -> Any:
        if isinstance(value, dict):
            return {k: self._resolve_references(v, op, state) for k, v in value.items()}
        if isinstance(value, list):
            return [self._resolve_references(v, op, state) for v in value]
        if not isinstance(value, str):
            return value

        match = REFERENCE_PATTERN.match(value)
        if match is None:
            return value

        ref_id, field = match.group(1), match.group(2) or "id"
        if ref_id not in op.dependencies:
            raise OperationValidationError(
                f"Reference to {ref_id} requires it to be listed as a dependency"
            )
        result = state.succeeded.get(ref_id)
        if result is None or field not in result:
            raise OperationValidationError(f"Reference {value} cannot be resolved")
        return result[field]

    async def _apply_with_timeout(
        self,
        op: SyncOperation,
        handler: EntityHandler,
        payload: dict[str, Any],
        context: WriteContext,
        state: _BatchState,
        timeout: float,
    ) -> tuple[dict[str, Any], str | None]:
        task = asyncio.ensure_future(self._apply(op, handler, payload, context, state))
        try:
            # shield: a timeout abandons the wait, never the issued storage call
            return await asyncio.wait_for(asyncio.shield(task), timeout)
        except asyncio.TimeoutError:
            if task.done():
                raise
            self._detach(op, task)
            raise OperationTimeoutError(op.id, timeout) from None

    def _detach(self, op: SyncOperation, task: asyncio.Task) -> None:
        self._detached.add(task)

        def _finished(done: asyncio.Task) -> None:
            self._detached.discard(done)
            error = None if done.cancelled() else done.exception()
            log.info(
                "timed_out_operation_finished",
                operation_id=op.id,
                committed=not done.cancelled() and error is None,
                error=str(error) if error else None,
            )

        task.add_done_callback(_finished)

    async def _apply(
        self,
        op: SyncOperation,
        handler: EntityHandler,
        payload: dict[str, Any],
        context: WriteContext,
        state: _BatchState,
    ) -> tuple[dict[str, Any], str | None]:
        state.in_flight += 1
        state.peak_in_flight = max(state.peak_in_flight, state.in_flight)

        attempt = 0
        try:
            while True:
                try:
                    return await self._apply_once(op, handler, payload, context, state)
                except ConcurrentModificationError as e:
                    attempt += 1
                    if attempt > self._commit_retries:
                        raise
                    # the next attempt reads the committed version and runs conflict detection again
                    log.info(
                        "operation_commit_raced",
                        operation_id=op.id,
                        entity_type=e.entity_type,
                        entity_id=e.entity_id,
                        attempt=attempt,
                        current_version=e.current_version,
                    )
        finally:
            state.in_flight -= 1

    async def _apply_once(
        self,
        op: SyncOperation,
        handler: EntityHandler,
        payload: dict[str, Any],
        context: WriteContext,
        state: _BatchState,
    ) -> tuple[dict[str, Any], str | None]:
        conflict_id: str | None = None

        async with self._store.transaction() as tx:
            if op.kind == OperationKind.CREATE:
                entity = await handler.create(tx, payload, context)
            else:
                entity_id = payload.get("id")
                if not isinstance(entity_id, str) or not entity_id:
                    raise OperationValidationError(f"{op.kind.value} requires a string id")

                current = await tx.get(op.entity_type, entity_id)
                if current is None:
                    raise EntityNotFoundError(op.entity_type, entity_id)

                if self._detector.detect(current, payload):
                    state.conflicts += 1
                    record = await self._resolver.resolve(
                        op.entity_type, current, payload, context
                    )
                    conflict_id = record.id
                    if record.resolution is None or not record.resolution.incoming_accepted:
                        details = record.resolution.details if record.resolution else "pending"
                        raise ConflictRejectedError(
                            op.entity_type, entity_id, record.id, details
                        )

                if op.kind == OperationKind.UPDATE:
                    entity = await handler.update(tx, current, payload, context)
                else:
                    entity = await handler.delete(tx, entity_id)

        return dict(entity), conflict_id

    async def drain(self) -> None:
        """Wait for applies that outlived their deadline."""
        if self._detached:
            await asyncio.gather(*self._detached, return_exceptions=True)
