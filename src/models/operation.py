"""Pydantic models for batch sync requests and responses."""

import json
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator


class OperationKind(str, Enum):
    """Kind of write carried by a sync operation."""

    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class SyncOperation(BaseModel):
    """A single client-submitted write inside a batch."""

    id: str = Field(default=..., min_length=1, description="Identifier unique within the batch")
    kind: OperationKind = Field(default=..., description="CREATE, UPDATE or DELETE")
    entity_type: str = Field(default=..., min_length=1, description="Target entity type")
    data: str | dict[str, Any] = Field(
        default=..., description="Entity payload, JSON-serialized or already decoded"
    )
    dependencies: list[str] = Field(
        default_factory=list, description="Operation ids this operation depends on"
    )
    timestamp: datetime | None = Field(
        default=None, description="Client submission time of the write"
    )

    @field_validator("dependencies")
    @classmethod
    def dedupe_dependencies(cls, v: list[str]) -> list[str]:
        """Drop repeated dependency ids while keeping their order."""
        return list(dict.fromkeys(v))

    def decode_payload(self) -> dict[str, Any]:
        """
        Decode the operation payload into a dictionary.

        Returns:
            A fresh dictionary holding the payload fields

        Raises:
            ValueError: If the payload is not valid JSON or not a JSON object
        """
        if isinstance(self.data, dict):
            return dict(self.data)

        try:
            decoded = json.loads(self.data)
        except json.JSONDecodeError as e:
            raise ValueError(f"payload is not valid JSON: {e.msg}") from e

        if not isinstance(decoded, dict):
            raise ValueError("payload must be a JSON object")
        return decoded

    model_config = {
        "json_schema_extra": {
            "example": {
                "id": "op2",
                "kind": "CREATE",
                "entity_type": "Memory",
                "data": '{"title": "Day1", "tripId": "$ref:op1"}',
                "dependencies": ["op1"],
                "timestamp": "2024-06-01T08:15:00Z",
            }
        }
    }


class BatchSyncOptions(BaseModel):
    """Per-call options for a batch sync."""

    batch_size: int | None = Field(default=None, ge=1, description="Batch size hint")
    max_concurrency: int | None = Field(
        default=None, ge=1, le=100, description="Override for concurrent applies per window"
    )
    timeout_seconds: float | None = Field(
        default=None, gt=0.0, description="Override for the per-operation deadline"
    )
    skip_validation: bool = Field(default=False, description="Skip structural payload checks")


class OperationResult(BaseModel):
    """Outcome of a single operation."""

    operation_id: str = Field(default=..., description="Operation identifier")
    entity_type: str = Field(default=..., description="Target entity type")
    kind: OperationKind = Field(default=..., description="Operation kind")
    success: bool = Field(default=..., description="True if the write was applied")
    data: dict[str, Any] | None = Field(default=None, description="Resulting entity payload")
    error: str | None = Field(default=None, description="Error message for failures")
    error_code: str | None = Field(default=None, description="Stable error code for failures")
    processing_time_ms: float = Field(default=0.0, ge=0.0, description="Apply duration")
    conflict_id: str | None = Field(
        default=None, description="Conflict record created while applying, if any"
    )


class SyncResult(BaseModel):
    """A successful operation in a batch response."""

    id: str = Field(default=..., description="Operation identifier")
    status: str = Field(default="success", description="Result status")
    data: dict[str, Any] | None = Field(default=None, description="Resulting entity payload")
    processing_time_ms: float = Field(default=0.0, ge=0.0, description="Apply duration")
    entity_type: str = Field(default=..., description="Target entity type")
    conflict_id: str | None = Field(default=None, description="Resolved conflict, if any")


class FailedOperation(BaseModel):
    """A failed operation in a batch response."""

    id: str = Field(default=..., description="Operation identifier")
    error: str = Field(default=..., description="Error message")
    error_code: str = Field(default=..., description="Stable error code")
    entity_type: str = Field(default=..., description="Target entity type")
    operation_kind: OperationKind = Field(default=..., description="Operation kind")
    conflict_id: str | None = Field(
        default=None, description="Conflict record that rejected the write, if any"
    )


class BatchSyncResponse(BaseModel):
    """Response of a batch sync call."""

    successful: list[SyncResult] = Field(default_factory=list)
    failed: list[FailedOperation] = Field(default_factory=list)
    processed: int = Field(default=0, ge=0, description="Operations processed")
    duration_ms: float = Field(default=0.0, ge=0.0, description="Total call duration")
    timestamp: datetime = Field(default=..., description="Response timestamp")
    success_rate: float = Field(default=0.0, ge=0.0, le=1.0)
    performance_metrics: dict[str, Any] | None = Field(
        default=None, description="Free-form performance metrics"
    )

    @property
    def has_failures(self) -> bool:
        """Check if any operation failed."""
        return bool(self.failed)
