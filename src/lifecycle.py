"""
Syncer lifecycle manager.

Consumes CRD change records and keeps exactly one running syncer per
synced kind. Any change to a CRD tears its syncer down and builds a new
one from scratch: throwing away the informers (read: all cached data) is
heavyweight, but avoids partial reconfiguration when annotations change.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

from errors import SyncerError
from events import CrdChange, EventType, EventSubscription
from metrics import ACTIVE_SYNCERS
from policy import KindDescriptor, SyncPolicy

logger = logging.getLogger(__name__)

SyncerFactory = Callable[[KindDescriptor, SyncPolicy], Any]


class SyncerManager:
    """
    Single dispatch loop owning the registry of running syncers.

    The registry maps CRD names to syncers and is only mutated by
    ``run()``; everything else reads it through ``snapshot()``.
    """

    def __init__(self, syncer_factory: SyncerFactory):
        self._syncer_factory = syncer_factory
        self._syncers: Dict[str, Any] = {}
        self.running = False

    def __contains__(self, name: str) -> bool:
        return name in self._syncers

    def __len__(self) -> int:
        return len(self._syncers)

    def get(self, name: str) -> Optional[Any]:
        return self._syncers.get(name)

    def snapshot(self) -> List[Dict[str, Any]]:
        """Diagnostics view of the running syncers."""
        return [syncer.describe() for _, syncer in sorted(self._syncers.items())]

    async def run(self, changes: asyncio.Queue) -> None:
        """Process change records until the channel closes or on cancel."""
        logger.info("Starting syncer lifecycle manager")
        self.running = True
        try:
            async for change in EventSubscription(changes):
                await self.handle(change)
        finally:
            self.running = False
            await self.stop_all()
            logger.info("Syncer lifecycle manager stopped")

    async def handle(self, change: CrdChange) -> None:
        """Apply one change record to the registry."""
        name = change.name

        current = self._syncers.pop(name, None)
        if current is not None:
            if change.event_type is EventType.ADDED:
                logger.warning(f"Already had a running sync for freshly added {name}")
            try:
                await current.stop()
                logger.info(f"Stopped syncer for {name}")
            except Exception as e:
                logger.error(f"Error stopping syncer for {name}: {e}")
            ACTIVE_SYNCERS.set(len(self._syncers))

        if change.event_type is EventType.DELETED:
            return

        try:
            policy = SyncPolicy.from_descriptor(change.descriptor)
        except SyncerError as e:
            logger.warning(f"Skipping custom resource {name}: {e}")
            return
        if policy is None:
            logger.debug(f"Skipping custom resource {name}: no spec source")
            return

        try:
            syncer = self._syncer_factory(change.descriptor, policy)
            syncer.start()
        except Exception as e:
            logger.error(f"Skipping custom resource {name}: {e}")
            return

        self._syncers[name] = syncer
        ACTIVE_SYNCERS.set(len(self._syncers))

    async def stop_all(self) -> None:
        """Stop every running syncer."""
        while self._syncers:
            name, syncer = self._syncers.popitem()
            try:
                await syncer.stop()
            except Exception as e:
                logger.error(f"Error stopping syncer for {name}: {e}")
        ACTIVE_SYNCERS.set(0)
