"""Pydantic models for persisted sync records: conflicts, devices and tombstones."""

from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field


class ResolutionStrategy(str, Enum):
    """Conflict resolution strategies selectable per entity type."""

    LAST_WRITE_WINS = "LAST_WRITE_WINS"
    DEVICE_PRIORITY = "DEVICE_PRIORITY"
    MANUAL = "MANUAL"


class ConflictStatus(str, Enum):
    """Lifecycle of a conflict record."""

    PENDING = "pending"
    RESOLVED = "resolved"


class ConflictResolution(BaseModel):
    """Outcome attached to a conflict record once it is resolved."""

    strategy: ResolutionStrategy = Field(default=..., description="Strategy that decided")
    winner: Literal["local", "remote"] = Field(
        default=..., description="local is the stored version, remote the incoming write"
    )
    local_timestamp: datetime | None = Field(default=None, description="Stored write time")
    remote_timestamp: datetime | None = Field(default=None, description="Incoming write time")
    local_priority: int | None = Field(default=None, description="Stored writer device priority")
    remote_priority: int | None = Field(
        default=None, description="Submitting device priority"
    )
    details: str = Field(default="", description="Human readable explanation")

    @property
    def incoming_accepted(self) -> bool:
        """Check if the incoming write prevailed."""
        return self.winner == "remote"


class ConflictRecord(BaseModel):
    """Append-only audit entry for a detected conflict."""

    id: str = Field(default=..., description="Unique conflict identifier")
    entity_type: str = Field(default=..., description="Entity type in conflict")
    entity_id: str = Field(default=..., description="Entity identifier in conflict")
    device_id: str = Field(default=..., description="Device that submitted the incoming write")
    user_id: str = Field(default=..., description="User that submitted the incoming write")
    strategy: ResolutionStrategy = Field(default=..., description="Strategy configured")
    local_version: dict[str, Any] = Field(default=..., description="Stored version snapshot")
    remote_version: dict[str, Any] = Field(default=..., description="Incoming version snapshot")
    detected_at: datetime = Field(default=..., description="Detection timestamp")
    resolution: ConflictResolution | None = Field(
        default=None, description="Resolution outcome, None until resolved"
    )
    resolved_at: datetime | None = Field(default=None, description="Resolution timestamp")
    status: ConflictStatus = Field(default=ConflictStatus.PENDING, description="Record status")


class DeviceRecord(BaseModel):
    """Per-device metadata used as a conflict tie-break input."""

    device_id: str = Field(default=..., description="Client device identifier")
    user_id: str = Field(default=..., description="Owning user identifier")
    name: str = Field(default="", description="Display name")
    device_type: str = Field(default="unknown", description="Device type (ios, android, web)")
    priority: int = Field(default=0, description="Priority used by DEVICE_PRIORITY")
    last_seen: datetime = Field(default=..., description="Last sync interaction")

    model_config = {
        "json_schema_extra": {
            "example": {
                "device_id": "iphone-7F3A",
                "user_id": "user-42",
                "name": "Anna's iPhone",
                "device_type": "ios",
                "priority": 5,
                "last_seen": "2024-06-01T08:15:00Z",
            }
        }
    }


class DeletionTombstone(BaseModel):
    """Marker recording a deletion so other devices can purge the entity."""

    entity_id: str = Field(default=..., description="Deleted entity identifier")
    entity_type: str = Field(default=..., description="Deleted entity type")
    deleted_at: datetime = Field(default=..., description="Deletion timestamp")
    owner_id: str | None = Field(default=None, description="Owner of the deleted entity")
