"""Entity handlers: per-entity-type validate/create/update/delete."""

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import structlog

from src.models.errors import EntityNotFoundError, OperationValidationError
from src.models.operation import OperationKind
from src.storage.entity_store import StoreTransaction

log = structlog.stdlib.get_logger()

# Fields owned by the engine. Client values for these are never written.
SYSTEM_FIELDS: frozenset[str] = frozenset(
    {
        "createdAt",
        "updatedAt",
        "version",
        "ownerId",
        "lastModifiedBy",
        "lastModifiedByUser",
        "clientUpdatedAt",
    }
)

# Entity types of the journal domain and the fields a CREATE must carry.
DEFAULT_ENTITY_TYPES: dict[str, tuple[str, ...]] = {
    "Trip": ("name",),
    "Memory": ("title", "tripId"),
    "Tag": ("name",),
    "TagCategory": ("name",),
    "MediaItem": ("memoryId", "mediaType"),
    "GPXTrack": ("name", "tripId"),
    "BucketListItem": ("name",),
}


@dataclass(frozen=True)
class WriteContext:
    """Who is writing, from where, and when the client made the change."""

    user_id: str
    device_id: str
    write_timestamp: datetime


class EntityHandler:
    """Applies writes for one entity type.

    Validation is structural only; per-field shape checks belong to the caller.
    """

    def __init__(self, entity_type: str, required_fields: tuple[str, ...] = ()):
        self.entity_type = entity_type
        self.required_fields = required_fields

    def validate(self, kind: OperationKind, payload: dict[str, Any]) -> None:
        """
        Check that a payload can be applied for the given operation kind.

        Args:
            kind: Operation kind
            payload: Decoded payload

        Raises:
            OperationValidationError: If the payload is malformed
        """
        if kind in (OperationKind.UPDATE, OperationKind.DELETE):
            if not isinstance(payload.get("id"), str) or not payload["id"]:
                raise OperationValidationError(
                    f"{kind.value} {self.entity_type} requires a string id"
                )
            return

        if "id" in payload and (not isinstance(payload["id"], str) or not payload["id"]):
            raise OperationValidationError(f"CREATE {self.entity_type} id must be a string")

        missing = [field for field in self.required_fields if payload.get(field) in (None, "")]
        if missing:
            raise OperationValidationError(
                f"CREATE {self.entity_type} missing required fields: {', '.join(missing)}"
            )

    async def create(
        self, tx: StoreTransaction, payload: dict[str, Any], context: WriteContext
    ) -> dict[str, Any]:
        """Insert a new entity. Uses the client-supplied id when present."""
        entity = self._client_fields(payload)
        entity["id"] = payload.get("id") or str(uuid.uuid4())
        entity["version"] = 1
        entity["ownerId"] = context.user_id
        entity["lastModifiedBy"] = context.device_id
        entity["lastModifiedByUser"] = context.user_id
        entity["clientUpdatedAt"] = context.write_timestamp
        return await tx.insert(self.entity_type, entity)

    async def update(
        self,
        tx: StoreTransaction,
        current: dict[str, Any],
        payload: dict[str, Any],
        context: WriteContext,
    ) -> dict[str, Any]:
        """Apply the payload fields on top of the stored entity."""
        entity = {**current, **self._client_fields(payload)}
        entity["id"] = current["id"]
        entity["version"] = current.get("version", 0) + 1
        entity["lastModifiedBy"] = context.device_id
        entity["lastModifiedByUser"] = context.user_id
        entity["clientUpdatedAt"] = context.write_timestamp

        updated = await tx.update(self.entity_type, entity)
        if updated is None:
            raise EntityNotFoundError(self.entity_type, current["id"])
        return updated

    async def delete(self, tx: StoreTransaction, entity_id: str) -> dict[str, Any]:
        """Delete an entity. Zero matched rows is a failure, not a no-op."""
        affected = await tx.delete(self.entity_type, entity_id)
        if affected == 0:
            raise EntityNotFoundError(self.entity_type, entity_id)
        return {"id": entity_id, "deleted": True}

    @staticmethod
    def _client_fields(payload: dict[str, Any]) -> dict[str, Any]:
        return {key: value for key, value in payload.items() if key not in SYSTEM_FIELDS}


class EntityHandlerRegistry:
    """Maps entity types to their handlers. Built once at startup."""

    def __init__(self, handlers: list[EntityHandler] | None = None):
        self._handlers: dict[str, EntityHandler] = {}
        for handler in handlers or []:
            self.register(handler)

    def register(self, handler: EntityHandler) -> None:
        if handler.entity_type in self._handlers:
            raise ValueError(f"Handler already registered for {handler.entity_type}")
        self._handlers[handler.entity_type] = handler

    def get(self, entity_type: str) -> EntityHandler:
        """
        Look up the handler for an entity type.

        Raises:
            OperationValidationError: If the entity type is not registered
        """
        handler = self._handlers.get(entity_type)
        if handler is None:
            raise OperationValidationError(f"Unknown entity type: {entity_type}")
        return handler

    @property
    def entity_types(self) -> list[str]:
        return list(self._handlers)

    def __contains__(self, entity_type: object) -> bool:
        return entity_type in self._handlers


def build_default_registry(
    entity_types: dict[str, tuple[str, ...]] | None = None,
) -> EntityHandlerRegistry:
    """Build a registry with one handler per journal entity type."""
    types = DEFAULT_ENTITY_TYPES if entity_types is None else entity_types
    registry = EntityHandlerRegistry(
        [EntityHandler(entity_type, required) for entity_type, required in types.items()]
    )
    log.info("entity_handler_registry_built", entity_types=registry.entity_types)
    return registry
