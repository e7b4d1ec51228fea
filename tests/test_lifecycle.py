"""Unit tests for the syncer lifecycle manager."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from prometheus_client import REGISTRY

from events import CrdChange, EventType
from fakes import make_descriptor
from lifecycle import SyncerManager
from policy import (
    ANNOTATION_FILTER_BY_ROBOT_NAME,
    ANNOTATION_SPEC_SOURCE,
    KindDescriptor,
    SpecSource,
)

NAME = "widgets.example.com"


class RecordingFactory:
    """Syncer factory returning mocks and recording the call order."""

    def __init__(self):
        self.built = []
        self.log = []
        self.fail_with = None

    def __call__(self, descriptor, policy):
        if self.fail_with is not None:
            raise self.fail_with
        syncer = MagicMock()
        syncer.descriptor = descriptor
        syncer.policy = policy
        index = len(self.built)
        syncer.start.side_effect = lambda: self.log.append(("start", index))

        async def stop():
            self.log.append(("stop", index))

        syncer.stop = AsyncMock(side_effect=stop)
        syncer.describe.return_value = {
            "name": descriptor.name,
            "state": "running",
            "policy": policy.describe(),
        }
        self.built.append(syncer)
        return syncer


def change(event_type, **annotations):
    return CrdChange(event_type, make_descriptor(**annotations))


CLOUD = {ANNOTATION_SPEC_SOURCE: "cloud"}
ROBOT = {ANNOTATION_SPEC_SOURCE: "robot"}


@pytest.fixture
def factory():
    return RecordingFactory()


@pytest.fixture
def manager(factory):
    return SyncerManager(factory)


def active_syncers():
    return REGISTRY.get_sample_value("cr_syncer_active_syncers")


@pytest.mark.asyncio
class TestHandle:
    """Tests for SyncerManager.handle."""

    async def test_added_starts_syncer(self, manager, factory):
        await manager.handle(change(EventType.ADDED, **CLOUD))

        assert NAME in manager
        assert len(factory.built) == 1
        factory.built[0].start.assert_called_once()
        assert factory.built[0].policy.spec_source is SpecSource.CLOUD
        assert active_syncers() == 1

    async def test_no_spec_source_is_skipped(self, manager, factory):
        await manager.handle(change(EventType.ADDED))

        assert NAME not in manager
        assert factory.built == []

    async def test_unsupported_spec_source_is_skipped(self, manager, factory):
        unsupported = {ANNOTATION_SPEC_SOURCE: "moon"}
        await manager.handle(change(EventType.ADDED, **unsupported))

        assert NAME not in manager
        assert factory.built == []

    async def test_invalid_annotation_is_skipped(self, manager, factory):
        await manager.handle(
            change(
                EventType.ADDED,
                **CLOUD,
                **{ANNOTATION_FILTER_BY_ROBOT_NAME: "maybe"},
            )
        )

        assert NAME not in manager

    async def test_modified_replaces_syncer(self, manager, factory):
        await manager.handle(change(EventType.ADDED, **CLOUD))
        await manager.handle(change(EventType.MODIFIED, **ROBOT))

        assert len(factory.built) == 2
        factory.built[0].stop.assert_awaited_once()
        assert manager.get(NAME) is factory.built[1]
        assert factory.built[1].policy.spec_source is SpecSource.ROBOT
        assert factory.log == [("start", 0), ("stop", 0), ("start", 1)]

    async def test_modified_to_unsynced_stops_syncer(self, manager, factory):
        await manager.handle(change(EventType.ADDED, **CLOUD))
        await manager.handle(change(EventType.MODIFIED))

        factory.built[0].stop.assert_awaited_once()
        assert NAME not in manager
        assert active_syncers() == 0

    async def test_deleted_stops_syncer(self, manager, factory):
        await manager.handle(change(EventType.ADDED, **CLOUD))
        await manager.handle(change(EventType.DELETED, **CLOUD))

        factory.built[0].stop.assert_awaited_once()
        assert len(manager) == 0
        assert len(factory.built) == 1

    async def test_deleted_unknown_kind(self, manager, factory):
        await manager.handle(change(EventType.DELETED, **CLOUD))
        assert len(manager) == 0

    async def test_duplicate_added_stops_previous_first(self, manager, factory):
        await manager.handle(change(EventType.ADDED, **CLOUD))
        await manager.handle(change(EventType.ADDED, **CLOUD))

        assert factory.log == [("start", 0), ("stop", 0), ("start", 1)]
        assert len(manager) == 1

    async def test_construction_failure_is_skipped(self, manager, factory):
        factory.fail_with = RuntimeError("bad kind")
        await manager.handle(change(EventType.ADDED, **CLOUD))
        assert NAME not in manager

        factory.fail_with = None
        other = KindDescriptor(
            name="gadgets.example.com",
            group="example.com",
            version="v1",
            plural="gadgets",
            kind="Gadget",
            annotations=dict(CLOUD),
        )
        await manager.handle(CrdChange(EventType.ADDED, other))
        assert "gadgets.example.com" in manager

    async def test_stop_failure_does_not_block_replacement(self, manager, factory):
        await manager.handle(change(EventType.ADDED, **CLOUD))
        factory.built[0].stop.side_effect = RuntimeError("stuck")

        await manager.handle(change(EventType.MODIFIED, **CLOUD))

        assert manager.get(NAME) is factory.built[1]


@pytest.mark.asyncio
class TestRun:
    """Tests for SyncerManager.run."""

    async def test_run_until_channel_closes(self, manager, factory):
        changes = asyncio.Queue()
        changes.put_nowait(change(EventType.ADDED, **CLOUD))
        changes.put_nowait(None)

        await asyncio.wait_for(manager.run(changes), 1)

        # Closing the channel stops every syncer.
        factory.built[0].stop.assert_awaited_once()
        assert len(manager) == 0
        assert manager.running is False

    async def test_cancel_stops_all(self, manager, factory):
        changes = asyncio.Queue()
        changes.put_nowait(change(EventType.ADDED, **CLOUD))
        task = asyncio.create_task(manager.run(changes))
        await asyncio.sleep(0.01)
        assert manager.running is True
        assert NAME in manager

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

        factory.built[0].stop.assert_awaited_once()
        assert len(manager) == 0

    async def test_snapshot(self, manager, factory):
        await manager.handle(change(EventType.ADDED, **CLOUD))

        snapshot = manager.snapshot()
        assert len(snapshot) == 1
        assert snapshot[0]["name"] == NAME
        assert snapshot[0]["policy"]["spec_source"] == "cloud"
