"""Tests for entity handlers and the handler registry."""

from datetime import datetime, timezone

import pytest

from src.models.errors import EntityNotFoundError, OperationValidationError
from src.models.operation import OperationKind
from src.sync.handlers import (
    DEFAULT_ENTITY_TYPES,
    EntityHandler,
    EntityHandlerRegistry,
    WriteContext,
    build_default_registry,
)

CONTEXT = WriteContext(
    user_id="user-1",
    device_id="phone",
    write_timestamp=datetime(2024, 6, 1, tzinfo=timezone.utc),
)


def test_default_registry_covers_journal_entity_types():
    registry = build_default_registry()

    assert sorted(registry.entity_types) == sorted(DEFAULT_ENTITY_TYPES)
    assert "Memory" in registry
    assert registry.get("Memory").required_fields == ("title", "tripId")


def test_unknown_entity_type_is_a_validation_error():
    with pytest.raises(OperationValidationError, match="Spaceship"):
        build_default_registry().get("Spaceship")


def test_duplicate_registration_is_rejected():
    registry = EntityHandlerRegistry([EntityHandler("Trip", ("name",))])

    with pytest.raises(ValueError):
        registry.register(EntityHandler("Trip"))


@pytest.mark.parametrize(
    "kind, payload",
    [
        (OperationKind.UPDATE, {"name": "x"}),
        (OperationKind.DELETE, {"id": 42}),
        (OperationKind.CREATE, {"name": ""}),
        (OperationKind.CREATE, {"id": 7, "name": "x"}),
    ],
)
def test_structural_validation(kind: OperationKind, payload: dict):
    with pytest.raises(OperationValidationError):
        EntityHandler("Trip", ("name",)).validate(kind, payload)


async def test_client_cannot_write_system_fields(store):
    handler = EntityHandler("Trip", ("name",))
    payload = {"name": "Iceland", "version": 99, "ownerId": "intruder", "createdAt": "1970"}

    async with store.transaction() as tx:
        created = await handler.create(tx, payload, CONTEXT)

    assert created["version"] == 1
    assert created["ownerId"] == "user-1"
    assert created["createdAt"] != "1970"
    assert created["clientUpdatedAt"] == CONTEXT.write_timestamp


async def test_update_merges_and_bumps_version(store):
    handler = EntityHandler("Trip", ("name",))
    async with store.transaction() as tx:
        created = await handler.create(tx, {"id": "t1", "name": "Iceland", "days": 5}, CONTEXT)

    tablet = WriteContext("user-1", "tablet", datetime(2024, 6, 2, tzinfo=timezone.utc))
    async with store.transaction() as tx:
        current = await tx.get("Trip", "t1")
        updated = await handler.update(tx, current, {"id": "t1", "name": "Norway"}, tablet)

    assert updated["name"] == "Norway"
    assert updated["days"] == 5
    assert updated["version"] == 2
    assert updated["lastModifiedBy"] == "tablet"
    assert updated["createdAt"] == created["createdAt"]
    assert updated["updatedAt"] > created["updatedAt"]


async def test_delete_of_missing_entity_raises_not_found(store):
    async with store.transaction() as tx:
        with pytest.raises(EntityNotFoundError):
            await EntityHandler("Trip").delete(tx, "missing")
