"""Property-based tests for incremental sync deltas and watermarks.

A client that applies each delta and echoes the returned watermark must end
up with exactly the server's state for its user.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import structlog
from hypothesis import given, settings
from hypothesis import strategies as st

from src.models.config import AppConfig, TombstoneConfig
from src.models.operation import OperationKind, SyncOperation
from src.storage.entity_store import InMemoryEntityStore
from src.sync.incremental_sync import IncrementalSyncProducer
from src.sync.sync_coordinator import SyncCoordinator

log = structlog.stdlib.get_logger()

action_strategy = st.lists(
    st.tuples(
        st.sampled_from(["create", "update", "delete"]),
        st.integers(min_value=0, max_value=5),
    ),
    min_size=1,
    max_size=25,
)


class InterleavingStore(InMemoryEntityStore):
    """Store that lets one write commit between the entity reads of a delta."""

    def __init__(self):
        super().__init__()
        self.during_read = None

    async def find_changed_since(self, entity_type, since, owner_id=None):
        changed = await super().find_changed_since(entity_type, since, owner_id)
        if entity_type == "Tag" and self.during_read is not None:
            write, self.during_read = self.during_read, None
            await write()
        return changed


def _tag_op(op_id: str, kind: OperationKind, tag_id: str, name: str = "tag") -> SyncOperation:
    data = {"id": tag_id} if kind == OperationKind.DELETE else {"id": tag_id, "name": name}
    return SyncOperation(id=op_id, kind=kind, entity_type="Tag", data=data)


def _apply_delta(replica: dict, delta) -> None:
    for entity in delta.entities.get("Tag", []):
        replica[entity["id"]] = entity
    for entity_id in delta.deleted.get("Tag", []):
        replica.pop(entity_id, None)


async def _replay_with_client(actions: list[tuple[str, int]], sync_every: int):
    store = InMemoryEntityStore()
    replica: dict[str, dict] = {}
    watermarks: list[datetime] = []
    watermark = None

    async with SyncCoordinator(store) as coordinator:
        for step, (action, slot) in enumerate(actions):
            tag_id = f"tag-{slot}"
            kind = {
                "create": OperationKind.CREATE,
                "update": OperationKind.UPDATE,
                "delete": OperationKind.DELETE,
            }[action]
            # Failures (duplicate create, missing update/delete target) are part of the workload.
            await coordinator.batch_sync(
                "user-1", "writer", [_tag_op(f"op{step}", kind, tag_id, f"name-{step}")]
            )

            if step % sync_every == 0:
                delta = await coordinator.incremental_sync("user-1", "reader", watermark)
                _apply_delta(replica, delta)
                watermark = delta.watermark
                watermarks.append(watermark)

        delta = await coordinator.incremental_sync("user-1", "reader", watermark)
        _apply_delta(replica, delta)
        watermarks.append(delta.watermark)

        server = {entity["id"]: entity for entity in await store.find_changed_since("Tag", None)}
    return replica, server, watermarks


@given(action_strategy, st.integers(min_value=1, max_value=4))
@settings(max_examples=50, deadline=None)
def test_client_replica_converges_to_server_state(actions, sync_every: int):
    """For any interleaving of writes and syncs, the replica equals the server state."""
    log.info(
        "test_client_replica_converges_to_server_state",
        actions=len(actions),
        sync_every=sync_every,
    )

    replica, server, watermarks = asyncio.run(_replay_with_client(actions, sync_every))

    assert replica == server, f"Replica diverged: {sorted(replica)} vs {sorted(server)}"
    assert watermarks == sorted(watermarks), "Watermarks must never go backwards"
    assert len(set(watermarks)) == len(watermarks), "Watermarks must strictly increase"


async def test_delta_round_trip(coordinator):
    """Create, observe, update and delete: each delta holds exactly what changed."""
    created = await coordinator.batch_sync(
        "user-1",
        "phone",
        [
            _tag_op("op1", OperationKind.CREATE, "tag-1"),
            _tag_op("op2", OperationKind.CREATE, "tag-2"),
        ],
    )
    assert not created.has_failures

    full = await coordinator.incremental_sync("user-1", "phone", None)
    assert sorted(e["id"] for e in full.entities["Tag"]) == ["tag-1", "tag-2"]
    assert full.deleted["Tag"] == []

    quiet = await coordinator.incremental_sync("user-1", "phone", full.watermark)
    assert not quiet.has_changes
    assert quiet.watermark > full.watermark

    await coordinator.batch_sync(
        "user-1",
        "tablet",
        [
            _tag_op("op3", OperationKind.UPDATE, "tag-1", "renamed"),
            _tag_op("op4", OperationKind.DELETE, "tag-2"),
        ],
    )

    delta = await coordinator.incremental_sync("user-1", "phone", quiet.watermark)
    assert [e["name"] for e in delta.entities["Tag"]] == ["renamed"]
    assert delta.deleted["Tag"] == ["tag-2"]
    assert delta.total_changes == 2
    assert set(delta.entities) == set(delta.deleted)


async def test_delta_only_contains_callers_entities(coordinator):
    create_mine = _tag_op("op1", OperationKind.CREATE, "mine")
    create_theirs = _tag_op("op1", OperationKind.CREATE, "theirs")
    delete_theirs = _tag_op("op2", OperationKind.DELETE, "theirs")
    await coordinator.batch_sync("user-1", "phone", [create_mine])
    await coordinator.batch_sync("user-2", "laptop", [create_theirs])
    await coordinator.batch_sync("user-2", "laptop", [delete_theirs])

    delta = await coordinator.incremental_sync("user-1", "phone", None)

    assert [e["id"] for e in delta.entities["Tag"]] == ["mine"]
    assert delta.deleted["Tag"] == []


async def test_iso_string_watermark_is_accepted(coordinator):
    await coordinator.batch_sync("user-1", "phone", [_tag_op("op1", OperationKind.CREATE, "tag-1")])
    first = await coordinator.incremental_sync("user-1", "phone", None)

    again = await coordinator.incremental_sync("user-1", "phone", first.watermark.isoformat())

    assert not again.has_changes


async def test_tombstones_pruned_after_retention(store):
    producer = IncrementalSyncProducer(store, ["Tag"], TombstoneConfig(retention_days=7))
    async with store.transaction() as tx:
        await tx.insert("Tag", {"id": "old", "name": "x", "ownerId": "user-1"})
    async with store.transaction() as tx:
        await tx.delete("Tag", "old")

    assert await producer.prune_tombstones() == 0
    assert await producer.prune_tombstones(now=store.now() + timedelta(days=8)) == 1
    assert await store.find_tombstones_since(None) == []


async def test_unlimited_retention_never_prunes(store):
    producer = IncrementalSyncProducer(store, ["Tag"])
    async with store.transaction() as tx:
        await tx.insert("Tag", {"id": "old", "name": "x", "ownerId": "user-1"})
    async with store.transaction() as tx:
        await tx.delete("Tag", "old")

    assert producer.retention is None
    assert await producer.prune_tombstones(now=store.now() + timedelta(days=3650)) == 0
    assert len(await store.find_tombstones_since(None)) == 1


async def test_stale_watermark_requires_full_resync():
    config = AppConfig(tombstones=TombstoneConfig(retention_days=30))
    async with SyncCoordinator(InMemoryEntityStore(), config=config) as coordinator:
        fresh = await coordinator.incremental_sync("user-1", "phone", None)
        recent = await coordinator.incremental_sync(
            "user-1", "phone", fresh.watermark - timedelta(days=29)
        )
        stale = await coordinator.incremental_sync(
            "user-1", "phone", fresh.watermark - timedelta(days=31)
        )
        assert await coordinator.prune_tombstones() == 0

    assert not fresh.full_resync_required
    assert not recent.full_resync_required
    assert stale.full_resync_required


async def test_incremental_sync_registers_device(coordinator):
    await coordinator.incremental_sync("user-1", "new-phone", None)

    device = await coordinator.devices.get("user-1", "new-phone")

    assert device is not None
    assert device.priority == 0


async def test_write_committed_during_delta_read_arrives_with_next_watermark():
    store = InterleavingStore()
    async with SyncCoordinator(store) as coordinator:
        await coordinator.batch_sync(
            "user-1", "writer", [_tag_op("op1", OperationKind.CREATE, "tag-before")]
        )

        async def write_during_read():
            response = await coordinator.batch_sync(
                "user-1", "writer", [_tag_op("op2", OperationKind.CREATE, "tag-during")]
            )
            assert not response.has_failures

        store.during_read = write_during_read
        first = await coordinator.incremental_sync("user-1", "reader", None)

        assert store.during_read is None, "write should have run inside the delta read"
        assert [e["id"] for e in first.entities["Tag"]] == ["tag-before"]
        during = await store.find_by_id("Tag", "tag-during")
        assert during["updatedAt"] > first.watermark

        second = await coordinator.incremental_sync("user-1", "reader", first.watermark)

    assert [e["id"] for e in second.entities["Tag"]] == ["tag-during"]


@given(
    st.datetimes(
        min_value=datetime(2000, 1, 1),
        max_value=datetime(2100, 1, 1),
        timezones=st.just(timezone.utc),
    )
)
@settings(max_examples=30, deadline=None)
def test_returned_watermark_never_precedes_received_one(watermark: datetime):
    """For any echoed watermark, including one ahead of the store clock, the next is not older."""

    async def sync():
        async with SyncCoordinator(InMemoryEntityStore()) as coordinator:
            return await coordinator.incremental_sync("user-1", "reader", watermark)

    delta = asyncio.run(sync())

    assert delta.watermark >= watermark
