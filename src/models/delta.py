"""Data models for incremental sync responses and conflict metrics."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class SyncDelta(BaseModel):
    """Changes a client has not yet observed, bounded by its watermark."""

    entities: dict[str, list[dict[str, Any]]] = Field(
        default_factory=dict, description="Created or updated entities keyed by entity type"
    )
    deleted: dict[str, list[str]] = Field(
        default_factory=dict, description="Deleted entity ids keyed by entity type"
    )
    watermark: datetime = Field(default=..., description="Watermark for the next call")
    full_resync_required: bool = Field(
        default=False,
        description="True if the client watermark predates the tombstone retention horizon",
    )

    @property
    def has_changes(self) -> bool:
        """Check if there are any changes to deliver."""
        return any(self.entities.values()) or any(self.deleted.values())

    @property
    def total_changes(self) -> int:
        """Get total number of changed and deleted entities."""
        return sum(len(v) for v in self.entities.values()) + sum(
            len(v) for v in self.deleted.values()
        )


class ConflictMetrics(BaseModel):
    """Aggregate view over conflict records in a lookback window."""

    total_conflicts: int = Field(default=0, ge=0)
    resolved_conflicts: int = Field(default=0, ge=0)
    pending_conflicts: int = Field(default=0, ge=0)
    resolution_rate: float = Field(default=0.0, ge=0.0, le=1.0)
    strategy_counts: dict[str, int] = Field(default_factory=dict)
    since: datetime | None = Field(default=None, description="Start of the lookback window")
