"""
Bidirectional syncer for one custom resource kind.

The spec of an object is copied from the upstream cluster (the spec
source) to the downstream cluster, and its status is copied back from
downstream to upstream. Which cluster plays which role is decided by the
kind's SyncPolicy.

Both clusters are watched through informers. Every event enqueues the
object's key on a keyed work queue, so reconciliation of one object is
serialized while different objects reconcile concurrently. Reconciliation
is level-based: it compares the cached upstream and downstream objects and
writes whatever is needed to converge them.
"""

import asyncio
import copy
import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from kubernetes.client.rest import ApiException

from errors import (
    CacheSyncError,
    SyncerError,
    is_already_exists,
    is_conflict,
    is_not_found,
)
from informer import Informer
from kube import ClusterClient
from metrics import (
    LOCATION_LOCAL,
    LOCATION_REMOTE,
    SYNC_CONFLICTS,
    SYNC_ERRORS,
    SYNC_RESTARTS,
    SYNC_WRITES,
)
from policy import (
    ANNOTATION_REMOTE_RESOURCE_VERSION,
    LABEL_ROBOT_NAME,
    KindDescriptor,
    SyncPolicy,
    matches_robot,
    merge_status,
)
from workqueue import KeyedWorkQueue

logger = logging.getLogger(__name__)


class SyncerState(Enum):
    """Lifecycle states of a syncer."""

    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


def _labels(obj: Dict[str, Any]) -> Dict[str, str]:
    return dict((obj.get("metadata") or {}).get("labels") or {})


def _annotations(obj: Dict[str, Any]) -> Dict[str, str]:
    return dict((obj.get("metadata") or {}).get("annotations") or {})


def _resource_version(obj: Dict[str, Any]) -> str:
    return (obj.get("metadata") or {}).get("resourceVersion", "")


def is_mirror(obj: Dict[str, Any]) -> bool:
    """Whether a downstream object was written by the syncer."""
    return ANNOTATION_REMOTE_RESOURCE_VERSION in _annotations(obj)


class CRSyncer:
    """
    Syncs the objects of one custom resource kind between two clusters.

    Construction validates the descriptor and policy and raises
    SyncerError if the kind cannot be synced. ``start()`` runs the syncer
    in a background task, ``stop()`` tears it down.
    """

    def __init__(
        self,
        descriptor: KindDescriptor,
        policy: SyncPolicy,
        local: ClusterClient,
        remote: ClusterClient,
        robot_name: str = "",
        namespace: str = "default",
        conflict_error_limit: int = 5,
        resync_period: int = 300,
        watch_timeout: int = 300,
        cache_sync_timeout: float = 120,
        workers: int = 4,
        retry_delay: float = 5.0,
        informer_factory: Callable[..., Any] = Informer,
    ):
        descriptor.validate()
        if policy.filter_by_robot_name and not robot_name:
            raise SyncerError(
                f"{descriptor.name} filters by robot name but no robot name is set"
            )

        self.descriptor = descriptor
        self.policy = policy
        self.robot_name = robot_name
        self.conflict_error_limit = conflict_error_limit
        self.resync_period = resync_period
        self.watch_timeout = watch_timeout
        self.cache_sync_timeout = cache_sync_timeout
        self.workers = workers
        self.retry_delay = retry_delay
        self._informer_factory = informer_factory

        label_selector = None
        if policy.filter_by_robot_name:
            label_selector = f"{LABEL_ROBOT_NAME}={robot_name}"
        clusters = {LOCATION_LOCAL: local, LOCATION_REMOTE: remote}
        self.upstream = clusters[policy.upstream_location].resource(
            descriptor, namespace, label_selector
        )
        self.downstream = clusters[policy.downstream_location].resource(
            descriptor, namespace, label_selector
        )

        self.state = SyncerState.STARTING
        self.conflict_errors = 0
        self.restarts = 0

        self._restart_requested = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._upstream_informer = None
        self._downstream_informer = None
        self._queue: Optional[KeyedWorkQueue] = None
        self._consumers: List[asyncio.Task] = []

    @property
    def name(self) -> str:
        return self.descriptor.name

    def start(self) -> None:
        """Run the syncer in a background task."""
        self._task = asyncio.create_task(self.run(), name=f"syncer-{self.name}")

    async def stop(self) -> None:
        """Stop the syncer and release both watches."""
        if self._task is None:
            return
        if not self._task.done():
            self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None

    def describe(self) -> Dict[str, Any]:
        """Diagnostics snapshot."""
        return {
            "name": self.name,
            "state": self.state.value,
            "policy": self.policy.describe(),
            "conflict_errors": self.conflict_errors,
            "restarts": self.restarts,
            "upstream_objects": (
                len(self._upstream_informer.keys()) if self._upstream_informer else 0
            ),
            "downstream_objects": (
                len(self._downstream_informer.keys())
                if self._downstream_informer
                else 0
            ),
        }

    async def run(self) -> None:
        """Watch both clusters until cancelled, restarting on request."""
        logger.info(
            f"Starting syncer for {self.name} "
            f"({self.policy.upstream_location} -> {self.policy.downstream_location})"
        )
        try:
            while True:
                self.state = SyncerState.STARTING
                try:
                    await self._start_watches()
                except CacheSyncError as e:
                    logger.error(f"Syncer {self.name} failed to start: {e}")
                    await self._stop_watches()
                    await asyncio.sleep(self.retry_delay)
                    continue

                self.state = SyncerState.RUNNING
                await self._restart_requested.wait()

                logger.warning(
                    f"Restarting syncer for {self.name} after "
                    f"{self.conflict_errors} consecutive conflicts"
                )
                SYNC_RESTARTS.labels(kind=self.name).inc()
                self.restarts += 1
                await self._stop_watches()
                self.conflict_errors = 0
                self._restart_requested.clear()
        except Exception as e:
            logger.error(f"Syncer for {self.name} crashed: {e}", exc_info=True)
        finally:
            self.state = SyncerState.STOPPING
            await self._stop_watches()
            self.state = SyncerState.STOPPED
            logger.info(f"Stopped syncer for {self.name}")

    async def _start_watches(self) -> None:
        self._upstream_informer = self._informer_factory(
            self.upstream,
            name=f"{self.name}@{self.policy.upstream_location}",
            resync_period=self.resync_period,
            watch_timeout=self.watch_timeout,
        )
        self._downstream_informer = self._informer_factory(
            self.downstream,
            name=f"{self.name}@{self.policy.downstream_location}",
            resync_period=self.resync_period,
            watch_timeout=self.watch_timeout,
        )
        self._queue = KeyedWorkQueue(
            self.reconcile, workers=self.workers, name=f"syncer-{self.name}"
        )

        self._upstream_informer.start()
        self._downstream_informer.start()
        await asyncio.gather(
            self._upstream_informer.wait_for_sync(self.cache_sync_timeout),
            self._downstream_informer.wait_for_sync(self.cache_sync_timeout),
        )

        self._queue.start()
        self._consumers = [
            asyncio.create_task(self._consume(self._upstream_informer)),
            asyncio.create_task(self._consume(self._downstream_informer)),
        ]

    async def _stop_watches(self) -> None:
        for task in self._consumers:
            task.cancel()
        await asyncio.gather(*self._consumers, return_exceptions=True)
        self._consumers = []

        for informer in (self._upstream_informer, self._downstream_informer):
            if informer is not None:
                informer.stop()
        self._upstream_informer = None
        self._downstream_informer = None

        if self._queue is not None:
            await self._queue.stop()
            self._queue = None

    async def _consume(self, informer) -> None:
        async for event in informer.events():
            self._queue.add(event.key)

    # Reconciliation

    def _member(self, obj: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        """Return ``obj`` if it belongs to the synced set, else None."""
        if obj is None:
            return None
        if self.policy.filter_by_robot_name and not matches_robot(
            obj, self.robot_name
        ):
            return None
        return obj

    async def reconcile(self, key: str) -> None:
        """
        Converge the upstream and downstream objects for ``key``.

        Conflicts are counted and end the attempt; the key is retried on
        its next event. Other API and transport errors are counted, logged
        and healed by resync.
        """
        if self._restart_requested.is_set():
            return
        if self._upstream_informer is None or self._downstream_informer is None:
            return

        upstream = self._member(self._upstream_informer.get(key))
        downstream = self._member(self._downstream_informer.get(key))

        try:
            await self._sync_spec(key, upstream, downstream)
            await self._sync_status(key, upstream, downstream)
        except ApiException as e:
            if is_conflict(e):
                self._record_conflict(key)
                return
            SYNC_ERRORS.labels(kind=self.name).inc()
            logger.warning(f"Failed to sync {self.name} {key}: {e.status} {e.reason}")
        except Exception as e:
            SYNC_ERRORS.labels(kind=self.name).inc()
            logger.warning(f"Failed to sync {self.name} {key}: {e}")

    async def _sync_spec(
        self,
        key: str,
        upstream: Optional[Dict[str, Any]],
        downstream: Optional[Dict[str, Any]],
    ) -> None:
        if upstream is None:
            if downstream is not None and is_mirror(downstream):
                await self._delete_downstream(key, downstream)
            return
        if downstream is None:
            await self._create_downstream(key, upstream)
            return
        if self._spec_in_sync(upstream, downstream):
            return
        await self._update_downstream(key, upstream, downstream)

    def _spec_in_sync(
        self, upstream: Dict[str, Any], downstream: Dict[str, Any]
    ) -> bool:
        return (
            upstream.get("spec") == downstream.get("spec")
            and _labels(upstream) == _labels(downstream)
            and is_mirror(downstream)
        )

    def _mirror_of(self, upstream: Dict[str, Any]) -> Dict[str, Any]:
        """Build a fresh downstream object for ``upstream``, without status."""
        source_meta = upstream.get("metadata") or {}
        metadata = {
            "name": source_meta.get("name"),
            "labels": _labels(upstream),
            "annotations": {
                ANNOTATION_REMOTE_RESOURCE_VERSION: _resource_version(upstream)
            },
        }
        if source_meta.get("namespace"):
            metadata["namespace"] = source_meta["namespace"]

        body = {
            "apiVersion": upstream.get("apiVersion", self.descriptor.api_version),
            "kind": upstream.get("kind", self.descriptor.kind),
            "metadata": metadata,
        }
        if "spec" in upstream:
            body["spec"] = copy.deepcopy(upstream["spec"])
        return body

    async def _create_downstream(self, key: str, upstream: Dict[str, Any]) -> None:
        try:
            await asyncio.to_thread(self.downstream.create, self._mirror_of(upstream))
        except ApiException as e:
            if not is_already_exists(e):
                raise
            # Both sides created the object; the spec source wins.
            logger.info(
                f"{self.name} {key} already exists downstream, "
                f"overwriting with upstream spec"
            )
            name = upstream["metadata"]["name"]
            live = await asyncio.to_thread(self.downstream.get, name)
            await self._update_downstream(key, upstream, live)
            return
        self._record_write(key, "create", self.policy.downstream_location)

    async def _update_downstream(
        self,
        key: str,
        upstream: Dict[str, Any],
        downstream: Dict[str, Any],
    ) -> None:
        body = copy.deepcopy(downstream)
        if "spec" in upstream:
            body["spec"] = copy.deepcopy(upstream["spec"])
        else:
            body.pop("spec", None)
        metadata = body.setdefault("metadata", {})
        metadata["labels"] = _labels(upstream)
        annotations = _annotations(body)
        annotations[ANNOTATION_REMOTE_RESOURCE_VERSION] = _resource_version(upstream)
        metadata["annotations"] = annotations

        try:
            await asyncio.to_thread(self.downstream.replace, body)
        except ApiException as e:
            if not is_not_found(e):
                raise
            logger.info(f"{self.name} {key} vanished downstream, recreating")
            await asyncio.to_thread(self.downstream.create, self._mirror_of(upstream))
            self._record_write(key, "create", self.policy.downstream_location)
            return
        self._record_write(key, "update", self.policy.downstream_location)

    async def _delete_downstream(self, key: str, downstream: Dict[str, Any]) -> None:
        name = downstream["metadata"]["name"]
        try:
            await asyncio.to_thread(self.downstream.delete, name)
        except ApiException as e:
            if not is_not_found(e):
                raise
            logger.debug(f"{self.name} {key} already deleted downstream")
            return
        self._record_write(key, "delete", self.policy.downstream_location)

    async def _sync_status(
        self,
        key: str,
        upstream: Optional[Dict[str, Any]],
        downstream: Optional[Dict[str, Any]],
    ) -> None:
        if upstream is None or downstream is None:
            return

        current = upstream.get("status")
        status = merge_status(
            current, downstream.get("status"), self.policy.subtree_path
        )
        if status == current:
            return

        body = copy.deepcopy(upstream)
        if status is None:
            body.pop("status", None)
        else:
            body["status"] = status

        if self.descriptor.status_subresource:
            write = self.upstream.replace_status
        else:
            write = self.upstream.replace
        try:
            await asyncio.to_thread(write, body)
        except ApiException as e:
            if not is_not_found(e):
                raise
            logger.debug(f"{self.name} {key} vanished upstream, dropping status")
            return
        self._record_write(key, "update_status", self.policy.upstream_location)

    def _record_write(self, key: str, operation: str, location: str) -> None:
        self.conflict_errors = 0
        SYNC_WRITES.labels(kind=self.name, operation=operation, location=location).inc()
        logger.info(f"{self.name} {key}: {operation} on {location}")

    def _record_conflict(self, key: str) -> None:
        self.conflict_errors += 1
        SYNC_CONFLICTS.labels(kind=self.name).inc()
        logger.warning(
            f"Conflict writing {self.name} {key} "
            f"({self.conflict_errors}/{self.conflict_error_limit})"
        )
        if (
            self.conflict_errors >= self.conflict_error_limit
            and not self._restart_requested.is_set()
        ):
            logger.error(
                f"Too many conflicts for {self.name}, requesting syncer restart"
            )
            self._restart_requested.set()
