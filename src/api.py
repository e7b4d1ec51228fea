"""
HTTP surface - health, metrics and diagnostics.

Serves a small FastAPI app with uvicorn:

- ``GET /health``: 200 if the remote cluster is reachable, 503 otherwise
- ``GET /metrics``: Prometheus exposition format
- ``GET /debug``: running syncers with their policy and state
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import uvicorn
from fastapi import FastAPI
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

HealthCheck = Callable[[], Awaitable[Tuple[bool, str]]]


class HealthResponse(BaseModel):
    """Response model for the health endpoint."""

    status: str
    detail: Optional[str] = None


class SyncerInfo(BaseModel):
    """Diagnostics for one running syncer."""

    name: str
    state: str
    policy: Dict[str, Any]
    conflict_errors: int = 0
    restarts: int = 0
    upstream_objects: int = 0
    downstream_objects: int = 0


class DebugResponse(BaseModel):
    """Response model for the diagnostics endpoint."""

    manager_running: bool
    syncers: List[SyncerInfo] = Field(default_factory=list)


def cluster_health_check(cluster) -> HealthCheck:
    """Build a health check that pings a cluster's API server."""

    async def check() -> Tuple[bool, str]:
        try:
            await asyncio.to_thread(cluster.ping)
        except Exception as e:
            logger.warning(f"{cluster.location} cluster unreachable: {e}")
            return False, f"{cluster.location} cluster unreachable: {e}"
        return True, f"{cluster.location} cluster reachable"

    return check


def create_app(health_check: HealthCheck, manager) -> FastAPI:
    """Create the FastAPI app for the health and metrics endpoints."""
    app = FastAPI(
        title="CR Syncer",
        description="Syncs custom resources between a robot and the cloud",
    )

    @app.get("/health", response_model=HealthResponse)
    async def health():
        """Report whether the remote cluster is reachable."""
        ok, message = await health_check()
        if ok:
            return HealthResponse(status="ok")
        return JSONResponse(
            status_code=503,
            content=HealthResponse(status="unhealthy", detail=message).model_dump(),
        )

    @app.get("/metrics")
    async def metrics():
        """Prometheus metrics."""
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    @app.get("/debug", response_model=DebugResponse)
    async def debug():
        """Running syncers and their state."""
        return DebugResponse(
            manager_running=manager.running,
            syncers=[SyncerInfo(**info) for info in manager.snapshot()],
        )

    return app


class HTTPServer:
    """Runs the app with uvicorn inside the application's event loop."""

    def __init__(self, app: FastAPI, host: str, port: int, log_level: str = "info"):
        self.app = app
        self.host = host
        self.port = port
        self.log_level = log_level.lower()
        self.server: Optional[uvicorn.Server] = None

    async def start(self) -> None:
        """Start the HTTP server."""
        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level=self.log_level,
        )
        self.server = uvicorn.Server(config)

        logger.info(f"Starting HTTP server on {self.host}:{self.port}")
        await self.server.serve()

    async def stop(self) -> None:
        """Stop the HTTP server gracefully."""
        logger.info("Stopping HTTP server")
        if self.server:
            self.server.should_exit = True
