"""
Informer - list+watch cache of one resource with periodic resync.

The Kubernetes client blocks, so list and watch calls run on a daemon
thread. Events are handed to the asyncio event loop through an unbounded
queue. Every resync period the collection is listed again and every live
object is redelivered as MODIFIED, which repairs missed events.
"""

import asyncio
import logging
import threading
import time
from typing import Any, Dict, List, Optional

from kubernetes import watch
from kubernetes.client.rest import ApiException

from errors import CacheSyncError, is_gone
from events import EventSubscription, EventType, WatchEvent, object_key

logger = logging.getLogger(__name__)


def _version(obj: Dict[str, Any]) -> str:
    return (obj.get("metadata") or {}).get("resourceVersion", "")


class Informer:
    """
    Cache of the objects of one ``ResourceClient``.

    Emits ADDED, MODIFIED and DELETED events for every change it observes,
    including the initial listing.
    """

    def __init__(
        self,
        resource,
        name: str,
        resync_period: Optional[int] = 300,
        watch_timeout: int = 300,
        retry_delay: float = 5.0,
    ):
        self.resource = resource
        self.name = name
        self.resync_period = resync_period
        self.watch_timeout = watch_timeout
        self.retry_delay = retry_delay

        self._cache: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._watcher: Optional[watch.Watch] = None
        self._thread: Optional[threading.Thread] = None

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queue: Optional[asyncio.Queue] = None
        self._synced: Optional[asyncio.Event] = None

    def start(self) -> None:
        """Start listing and watching. Must be called from the event loop."""
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._synced = asyncio.Event()
        self._thread = threading.Thread(
            target=self._run, name=f"informer-{self.name}", daemon=True
        )
        self._thread.start()

    async def wait_for_sync(self, timeout: float) -> None:
        """
        Block until the initial listing has been cached.

        Raises:
            CacheSyncError: If the cache is not synced within ``timeout``
        """
        try:
            await asyncio.wait_for(self._synced.wait(), timeout)
        except asyncio.TimeoutError:
            raise CacheSyncError(
                f"Timed out after {timeout}s waiting for {self.name} cache to sync"
            )

    def has_synced(self) -> bool:
        return self._synced is not None and self._synced.is_set()

    def events(self) -> EventSubscription[WatchEvent]:
        """Async iterator over observed events; ends when stopped."""
        return EventSubscription(self._queue)

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            return self._cache.get(key)

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._cache)

    def stop(self) -> None:
        """
        Stop watching. Must be called from the event loop.

        Stopping the watcher shuts down its open stream, so the watch
        thread exits without waiting for the watch timeout. A list call
        already in flight runs to completion.
        """
        if self._stop_event.is_set():
            return
        self._stop_event.set()
        if self._watcher is not None:
            self._watcher.stop()
        if self._queue is not None:
            self._queue.put_nowait(None)
        logger.debug(f"Stopped informer {self.name}")

    # Watch thread

    def _emit(self, event_type: EventType, obj: Dict[str, Any]) -> None:
        if self._stop_event.is_set():
            return
        try:
            self._loop.call_soon_threadsafe(
                self._queue.put_nowait, WatchEvent(event_type, obj)
            )
        except RuntimeError:
            # Event loop closed underneath us
            self._stop_event.set()

    def _mark_synced(self) -> None:
        if self._stop_event.is_set():
            return
        try:
            self._loop.call_soon_threadsafe(self._synced.set)
        except RuntimeError:
            self._stop_event.set()

    def _run(self) -> None:
        logger.info(f"Starting informer {self.name}")
        resync = False
        while not self._stop_event.is_set():
            try:
                resource_version = self._relist(redeliver=resync)
                resync = self._watch(resource_version)
            except ApiException as e:
                resync = False
                if self._stop_event.is_set():
                    break
                if is_gone(e):
                    logger.info(f"Watch of {self.name} expired, relisting")
                    continue
                logger.warning(
                    f"Error watching {self.name}: {e.status} {e.reason}, "
                    f"retrying in {self.retry_delay}s"
                )
                self._stop_event.wait(self.retry_delay)
            except Exception as e:
                resync = False
                if self._stop_event.is_set():
                    break
                logger.warning(
                    f"Error watching {self.name}: {e}, retrying in {self.retry_delay}s"
                )
                self._stop_event.wait(self.retry_delay)
        logger.info(f"Informer {self.name} stopped")

    def _relist(self, redeliver: bool = False) -> str:
        """
        List the collection, diff it against the cache and emit events.

        Known objects are emitted as MODIFIED when their resourceVersion
        changed, or unconditionally when ``redeliver`` is set (resync).
        """
        items, resource_version = self.resource.list()
        fresh = {object_key(obj): obj for obj in items}
        with self._lock:
            previous = self._cache
            self._cache = fresh

        for key, obj in fresh.items():
            if key not in previous:
                self._emit(EventType.ADDED, obj)
            elif redeliver or _version(previous[key]) != _version(obj):
                self._emit(EventType.MODIFIED, obj)
        for key, obj in previous.items():
            if key not in fresh:
                self._emit(EventType.DELETED, obj)

        self._mark_synced()
        logger.debug(f"Listed {len(fresh)} objects for {self.name}")
        return resource_version

    def _watch(self, resource_version: str) -> bool:
        """
        Watch until the next resync is due, reconnecting on timeouts.

        Returns True when the resync period elapsed, False when stopped.
        Without a resync period the watch only ends on stop or error.
        """
        deadline = None
        if self.resync_period:
            deadline = time.monotonic() + self.resync_period
        while not self._stop_event.is_set():
            timeout = self.watch_timeout
            if deadline is not None:
                remaining = int(deadline - time.monotonic())
                if remaining <= 0:
                    return True
                timeout = min(timeout, remaining)
            watcher = watch.Watch()
            self._watcher = watcher
            for event in self.resource.watch(watcher, resource_version, timeout):
                if self._stop_event.is_set():
                    watcher.stop()
                    return False
                event_type = event.get("type")
                obj = event.get("object")
                if event_type == "ERROR":
                    status = event.get("raw_object") or obj or {}
                    raise ApiException(
                        status=status.get("code"), reason=status.get("reason")
                    )
                if not isinstance(obj, dict):
                    continue
                rv = (obj.get("metadata") or {}).get("resourceVersion")
                if rv:
                    resource_version = rv
                if event_type == "BOOKMARK":
                    continue
                self._apply(EventType(event_type), obj)
        return False

    def _apply(self, event_type: EventType, obj: Dict[str, Any]) -> None:
        key = object_key(obj)
        with self._lock:
            if event_type is EventType.DELETED:
                self._cache.pop(key, None)
            else:
                self._cache[key] = obj
        self._emit(event_type, obj)
