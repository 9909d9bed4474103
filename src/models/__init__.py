"""Data models for the sync engine."""

from src.models.config import (
    AppConfig,
    CacheConfig,
    ConflictConfig,
    EngineConfig,
    LoggingConfig,
    TombstoneConfig,
)
from src.models.delta import ConflictMetrics, SyncDelta
from src.models.operation import (
    BatchSyncOptions,
    BatchSyncResponse,
    FailedOperation,
    OperationKind,
    OperationResult,
    SyncOperation,
    SyncResult,
)
from src.models.records import (
    ConflictRecord,
    ConflictResolution,
    ConflictStatus,
    DeletionTombstone,
    DeviceRecord,
    ResolutionStrategy,
)

__all__ = [
    "AppConfig",
    "BatchSyncOptions",
    "BatchSyncResponse",
    "CacheConfig",
    "ConflictConfig",
    "ConflictMetrics",
    "ConflictRecord",
    "ConflictResolution",
    "ConflictStatus",
    "DeletionTombstone",
    "DeviceRecord",
    "EngineConfig",
    "FailedOperation",
    "LoggingConfig",
    "OperationKind",
    "OperationResult",
    "ResolutionStrategy",
    "SyncDelta",
    "SyncOperation",
    "SyncResult",
    "TombstoneConfig",
]
