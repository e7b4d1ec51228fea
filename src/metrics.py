"""
Prometheus metrics for the CR syncer.

Client request metrics are tagged with the cluster location ("local" or
"remote") so that traffic to both control planes can be told apart.
"""

from prometheus_client import Counter, Gauge, Histogram

LOCATION_LOCAL = "local"
LOCATION_REMOTE = "remote"

SIZE_BUCKETS = (
    0,
    1024,
    2048,
    4096,
    16384,
    65536,
    262144,
    1048576,
    4194304,
    33554432,
)
LATENCY_BUCKETS = (
    0.001,
    0.002,
    0.005,
    0.01,
    0.015,
    0.025,
    0.05,
    0.1,
    0.2,
    0.4,
    0.8,
    1.5,
    3.0,
    6.0,
)

CLIENT_REQUESTS = Counter(
    "cr_syncer_client_requests_total",
    "Number of requests sent to a Kubernetes API server",
    ["method", "location"],
)
CLIENT_REQUEST_BYTES = Histogram(
    "cr_syncer_client_request_bytes",
    "Request body size of Kubernetes API calls",
    ["method", "code", "location"],
    buckets=SIZE_BUCKETS,
)
CLIENT_RESPONSE_BYTES = Histogram(
    "cr_syncer_client_response_bytes",
    "Response body size of Kubernetes API calls",
    ["method", "code", "location"],
    buckets=SIZE_BUCKETS,
)
CLIENT_LATENCY = Histogram(
    "cr_syncer_client_latency_seconds",
    "Latency of Kubernetes API calls",
    ["method", "code", "location"],
    buckets=LATENCY_BUCKETS,
)

ACTIVE_SYNCERS = Gauge(
    "cr_syncer_active_syncers",
    "Number of running per-kind syncers",
)
SYNC_WRITES = Counter(
    "cr_syncer_writes_total",
    "Successful writes performed by a syncer",
    ["kind", "operation", "location"],
)
SYNC_ERRORS = Counter(
    "cr_syncer_sync_errors_total",
    "Failed reconciliations, excluding conflicts",
    ["kind"],
)
SYNC_CONFLICTS = Counter(
    "cr_syncer_conflicts_total",
    "Writes rejected with a resourceVersion conflict",
    ["kind"],
)
SYNC_RESTARTS = Counter(
    "cr_syncer_restarts_total",
    "Syncer restarts after too many consecutive conflicts",
    ["kind"],
)
