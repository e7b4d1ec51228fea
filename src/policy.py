"""
Kind descriptors and sync policies.

The behaviour of the syncer for a custom resource kind is controlled by
annotations on its CustomResourceDefinition:

``cr-syncer.cloudrobotics.com/filter-by-robot-name: <bool>``
    Only sync objects labeled ``cloudrobotics.com/robot-name: <robot-name>``
    with the robot name the syncer was started with.

``cr-syncer.cloudrobotics.com/status-subtree: <string>``
    Only sync the given (dotted) subtree of the status. Useful when the
    status is shared with other writers.

``cr-syncer.cloudrobotics.com/spec-source: <string>``
    ``cloud``: the remote cluster is the source of truth for existence and
    spec, status flows from the local cluster. ``robot``: the roles are
    reversed. Empty: synchronization is disabled.
"""

import copy
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from errors import SyncerError, UnsupportedSpecSource
from metrics import LOCATION_LOCAL, LOCATION_REMOTE

logger = logging.getLogger(__name__)

ANNOTATION_PREFIX = "cr-syncer.cloudrobotics.com/"
ANNOTATION_FILTER_BY_ROBOT_NAME = ANNOTATION_PREFIX + "filter-by-robot-name"
ANNOTATION_STATUS_SUBTREE = ANNOTATION_PREFIX + "status-subtree"
ANNOTATION_SPEC_SOURCE = ANNOTATION_PREFIX + "spec-source"
# Set on every downstream object the syncer writes, marks it as a mirror.
ANNOTATION_REMOTE_RESOURCE_VERSION = ANNOTATION_PREFIX + "remote-resource-version"

LABEL_ROBOT_NAME = "cloudrobotics.com/robot-name"


class SpecSource(Enum):
    """Which side of the connection owns the spec of a kind."""

    CLOUD = "cloud"
    ROBOT = "robot"


def _pick_version(versions: List[Dict[str, Any]]) -> Dict[str, Any]:
    for version in versions:
        if version.get("storage"):
            return version
    for version in versions:
        if version.get("served", True):
            return version
    return versions[0] if versions else {}


@dataclass(frozen=True)
class KindDescriptor:
    """Snapshot of the parts of a CRD the syncer cares about."""

    name: str
    group: str = ""
    version: str = ""
    plural: str = ""
    kind: str = ""
    namespaced: bool = True
    status_subresource: bool = False
    annotations: Dict[str, str] = field(default_factory=dict)

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}"

    @classmethod
    def from_crd(cls, crd: Dict[str, Any]) -> "KindDescriptor":
        """
        Build a descriptor from an ``apiextensions.k8s.io/v1`` CRD object.

        Missing fields are tolerated here so that delete events for
        malformed CRDs still carry the name; validation happens when a
        syncer is constructed.
        """
        metadata = crd.get("metadata") or {}
        spec = crd.get("spec") or {}
        names = spec.get("names") or {}
        version = _pick_version(spec.get("versions") or [])
        subresources = version.get("subresources") or {}

        return cls(
            name=metadata.get("name", ""),
            group=spec.get("group", ""),
            version=version.get("name", ""),
            plural=names.get("plural", ""),
            kind=names.get("kind", ""),
            namespaced=spec.get("scope", "Namespaced") == "Namespaced",
            status_subresource="status" in subresources,
            annotations=dict(metadata.get("annotations") or {}),
        )

    def validate(self) -> None:
        """
        Check that the descriptor names a watchable resource.

        Raises:
            SyncerError: If group, version or plural is missing
        """
        missing = [
            attr for attr in ("group", "version", "plural") if not getattr(self, attr)
        ]
        if missing:
            raise SyncerError(f"CRD {self.name} is missing {', '.join(missing)}")


def _parse_bool(value: str, annotation: str) -> bool:
    normalized = value.strip().lower()
    if normalized in ("true", "1", "t"):
        return True
    if normalized in ("false", "0", "f", ""):
        return False
    raise SyncerError(f"invalid boolean '{value}' in annotation {annotation}")


@dataclass(frozen=True)
class SyncPolicy:
    """How objects of one kind are synced between the clusters."""

    spec_source: SpecSource
    filter_by_robot_name: bool = False
    status_subtree: Optional[str] = None

    @property
    def upstream_location(self) -> str:
        """Location owning the spec."""
        if self.spec_source is SpecSource.CLOUD:
            return LOCATION_REMOTE
        return LOCATION_LOCAL

    @property
    def downstream_location(self) -> str:
        """Location owning the status."""
        if self.spec_source is SpecSource.CLOUD:
            return LOCATION_LOCAL
        return LOCATION_REMOTE

    @property
    def subtree_path(self) -> List[str]:
        if not self.status_subtree:
            return []
        return [part for part in self.status_subtree.split(".") if part]

    @classmethod
    def from_descriptor(cls, descriptor: KindDescriptor) -> Optional["SyncPolicy"]:
        """
        Derive the sync policy from the CRD annotations.

        Returns:
            The policy, or None if synchronization is disabled for the kind

        Raises:
            UnsupportedSpecSource: If spec-source has an unknown value
            SyncerError: If filter-by-robot-name is not a boolean
        """
        annotations = descriptor.annotations
        source = annotations.get(ANNOTATION_SPEC_SOURCE, "")
        if not source:
            return None
        try:
            spec_source = SpecSource(source)
        except ValueError:
            raise UnsupportedSpecSource(
                f"unsupported spec source '{source}' for {descriptor.name}"
            )

        filter_by_robot_name = _parse_bool(
            annotations.get(ANNOTATION_FILTER_BY_ROBOT_NAME, ""),
            ANNOTATION_FILTER_BY_ROBOT_NAME,
        )
        subtree = annotations.get(ANNOTATION_STATUS_SUBTREE) or None

        return cls(
            spec_source=spec_source,
            filter_by_robot_name=filter_by_robot_name,
            status_subtree=subtree,
        )

    def describe(self) -> Dict[str, Any]:
        return {
            "spec_source": self.spec_source.value,
            "upstream": self.upstream_location,
            "downstream": self.downstream_location,
            "filter_by_robot_name": self.filter_by_robot_name,
            "status_subtree": self.status_subtree,
        }


def matches_robot(obj: Dict[str, Any], robot_name: str) -> bool:
    """Whether an object carries the robot-name label for this robot."""
    labels = (obj.get("metadata") or {}).get("labels") or {}
    return labels.get(LABEL_ROBOT_NAME) == robot_name


def get_path(data: Optional[Dict[str, Any]], path: List[str]) -> Tuple[Any, bool]:
    """Look up a nested value; returns ``(value, found)``."""
    current: Any = data
    for part in path:
        if not isinstance(current, dict) or part not in current:
            return None, False
        current = current[part]
    return current, True


def set_path(data: Dict[str, Any], path: List[str], value: Any) -> None:
    """Set a nested value, creating (or replacing non-dict) parents."""
    current = data
    for part in path[:-1]:
        child = current.get(part)
        if not isinstance(child, dict):
            child = {}
            current[part] = child
        current = child
    current[path[-1]] = value


def delete_path(data: Dict[str, Any], path: List[str]) -> None:
    """Remove a nested value if present. Parents are left in place."""
    parent, found = get_path(data, path[:-1])
    if found and isinstance(parent, dict):
        parent.pop(path[-1], None)


def merge_status(
    dest_status: Optional[Dict[str, Any]],
    source_status: Optional[Dict[str, Any]],
    subtree: List[str],
) -> Optional[Dict[str, Any]]:
    """
    Compute the new status of the spec-owning object.

    Without a subtree, the source status replaces the destination status.
    With one, only the subtree is taken from the source and every other
    field of the destination is preserved. A subtree absent from the
    source is removed from the destination.
    """
    if not subtree:
        return copy.deepcopy(source_status)

    result = copy.deepcopy(dest_status) if isinstance(dest_status, dict) else {}
    value, found = get_path(source_status, subtree)
    if found:
        set_path(result, subtree, copy.deepcopy(value))
    else:
        delete_path(result, subtree)
    if not result and dest_status is None:
        return None
    return result
