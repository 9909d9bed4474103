"""Synchronization components for batch sync and incremental deltas."""

from src.models.errors import (
    ConcurrentModificationError,
    ConflictRejectedError,
    CyclicDependencyError,
    DependencyUnmetError,
    EntityNotFoundError,
    OperationTimeoutError,
    OperationValidationError,
    StorageError,
    SyncError,
)
from src.sync.batch_executor import BatchExecutionReport, ConcurrentBatchExecutor
from src.sync.conflict_resolver import ConflictDetector, ConflictResolver
from src.sync.dependency_sorter import DependencyGraphSorter
from src.sync.device_registry import DeviceRegistry
from src.sync.handlers import EntityHandler, EntityHandlerRegistry, build_default_registry
from src.sync.incremental_sync import IncrementalSyncProducer
from src.sync.sync_coordinator import SyncCoordinator

__all__ = [
    "BatchExecutionReport",
    "ConcurrentBatchExecutor",
    "ConcurrentModificationError",
    "ConflictDetector",
    "ConflictRejectedError",
    "ConflictResolver",
    "CyclicDependencyError",
    "DependencyGraphSorter",
    "DependencyUnmetError",
    "DeviceRegistry",
    "EntityHandler",
    "EntityHandlerRegistry",
    "EntityNotFoundError",
    "IncrementalSyncProducer",
    "OperationTimeoutError",
    "OperationValidationError",
    "StorageError",
    "SyncCoordinator",
    "SyncError",
    "build_default_registry",
]
