"""
Keyed work queue.

Keys are handed to a pool of asyncio workers. A key is never processed by
two workers at the same time: a key added while it is being processed is
marked dirty and processed again once the current run finishes. Keys that
are already waiting are coalesced.
"""

import asyncio
import logging
from typing import Awaitable, Callable, List, Set

logger = logging.getLogger(__name__)


class KeyedWorkQueue:
    """Serializes handler calls per key over a bounded worker pool."""

    def __init__(
        self,
        handler: Callable[[str], Awaitable[None]],
        workers: int = 4,
        name: str = "workqueue",
    ):
        self._handler = handler
        self._workers = workers
        self.name = name
        self._queue: asyncio.Queue = asyncio.Queue()
        self._queued: Set[str] = set()
        self._processing: Set[str] = set()
        self._dirty: Set[str] = set()
        self._tasks: List[asyncio.Task] = []

    def add(self, key: str) -> None:
        """Schedule ``key`` for processing."""
        if key in self._processing:
            self._dirty.add(key)
            return
        if key in self._queued:
            return
        self._queued.add(key)
        self._queue.put_nowait(key)

    def __len__(self) -> int:
        return len(self._queued)

    def start(self) -> None:
        for i in range(self._workers):
            self._tasks.append(
                asyncio.create_task(self._worker(), name=f"{self.name}-{i}")
            )

    async def stop(self) -> None:
        """Cancel all workers, aborting in-flight handlers."""
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        self._queued.clear()
        self._processing.clear()
        self._dirty.clear()

    async def _worker(self) -> None:
        while True:
            key = await self._queue.get()
            self._queued.discard(key)
            self._processing.add(key)
            try:
                await self._handler(key)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    f"Error processing {key} in {self.name}: {e}", exc_info=True
                )
            finally:
                self._processing.discard(key)
                if key in self._dirty:
                    self._dirty.discard(key)
                    self.add(key)
