"""
CRD discovery loop.

Watches CustomResourceDefinitions on the local cluster and turns every
observed change into a CrdChange record for the lifecycle manager.
"""

import asyncio
import logging
from typing import Any, Callable

from events import CrdChange
from informer import Informer
from kube import ClusterClient
from policy import KindDescriptor

logger = logging.getLogger(__name__)


class CrdDiscovery:
    """Streams CRD changes from the local cluster onto a queue."""

    def __init__(
        self,
        local: ClusterClient,
        cache_sync_timeout: float = 120,
        informer_factory: Callable[..., Any] = Informer,
    ):
        self.local = local
        self.cache_sync_timeout = cache_sync_timeout
        # No resync: every MODIFIED event restarts the kind's syncer.
        self._informer = informer_factory(
            local.crds(),
            name="customresourcedefinitions",
            resync_period=None,
        )
        self._started = False

    async def sync(self) -> None:
        """
        Start watching and wait for the CRD cache to fill.

        Raises:
            CacheSyncError: If the cache does not sync in time
        """
        logger.info("Syncing cache for CRDs")
        self._informer.start()
        self._started = True
        await self._informer.wait_for_sync(self.cache_sync_timeout)
        logger.info("CRD cache synced")

    async def run(self, changes: asyncio.Queue) -> None:
        """
        Emit a CrdChange for every CRD event until cancelled.

        The initial listing arrives as ADDED events. On exit the informer
        is stopped and a ``None`` sentinel closes the channel.
        """
        try:
            if not self._started:
                await self.sync()
            async for event in self._informer.events():
                descriptor = KindDescriptor.from_crd(event.obj)
                logger.debug(f"CRD {event.event_type.value}: {descriptor.name}")
                changes.put_nowait(CrdChange(event.event_type, descriptor))
        finally:
            self._informer.stop()
            changes.put_nowait(None)
