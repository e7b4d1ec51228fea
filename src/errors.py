"""
Error types and Kubernetes API error classification.
"""

import json
from typing import Optional

from kubernetes.client.rest import ApiException


class SyncerError(Exception):
    """A syncer could not be constructed or started."""


class CredentialsError(Exception):
    """Credentials for a cluster could not be obtained."""


class CacheSyncError(Exception):
    """An informer cache failed to sync in time."""


class UnsupportedSpecSource(SyncerError):
    """A kind declares a spec-source value the syncer does not know."""


def api_error_reason(error: ApiException) -> Optional[str]:
    """
    Return the machine readable reason of an API error.

    The Kubernetes API returns a Status object as the response body,
    whose ``reason`` (e.g. ``AlreadyExists``, ``Conflict``) is more
    specific than the HTTP status code.
    """
    if not error.body:
        return None
    try:
        body = json.loads(error.body)
    except (TypeError, ValueError):
        return None
    if isinstance(body, dict):
        return body.get("reason")
    return None


def is_not_found(error: Exception) -> bool:
    return isinstance(error, ApiException) and error.status == 404


def is_gone(error: Exception) -> bool:
    return isinstance(error, ApiException) and error.status == 410


def is_already_exists(error: Exception) -> bool:
    if not isinstance(error, ApiException) or error.status != 409:
        return False
    return api_error_reason(error) == "AlreadyExists"


def is_conflict(error: Exception) -> bool:
    """True for optimistic concurrency failures (stale resourceVersion)."""
    if not isinstance(error, ApiException) or error.status != 409:
        return False
    return api_error_reason(error) != "AlreadyExists"
