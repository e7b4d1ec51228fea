"""
Watch events - typed change records flowing from informers to consumers.

Informers and the CRD discovery loop hand events to asyncio consumers
through unbounded queues, with Kubernetes watch semantics: ADDED,
MODIFIED and DELETED.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Dict, Generic, TypeVar

T = TypeVar("T")


class EventType(Enum):
    """Types of watch events."""

    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


def object_key(obj: Dict[str, Any]) -> str:
    """
    Return the cache key of an object.

    ``namespace/name`` for namespaced objects, ``name`` for cluster-scoped
    ones, matching client-go's MetaNamespaceKeyFunc.
    """
    metadata = obj.get("metadata") or {}
    name = metadata.get("name", "")
    namespace = metadata.get("namespace")
    if namespace:
        return f"{namespace}/{name}"
    return name


@dataclass
class WatchEvent:
    """A change observed on one object."""

    event_type: EventType
    obj: Dict[str, Any]

    @property
    def key(self) -> str:
        return object_key(self.obj)


@dataclass
class CrdChange:
    """A change to a custom resource definition on the local cluster."""

    event_type: EventType
    descriptor: Any  # policy.KindDescriptor

    @property
    def name(self) -> str:
        return self.descriptor.name


class EventSubscription(Generic[T]):
    """
    Async iterator for consuming events from a queue.

    A ``None`` sentinel value stops iteration.
    """

    def __init__(self, queue: asyncio.Queue):
        self._queue = queue

    def __aiter__(self) -> AsyncIterator[T]:
        return self

    async def __anext__(self) -> T:
        event = await self._queue.get()
        if event is None:
            raise StopAsyncIteration
        return event
