"""
Main entry point for the CR syncer.

The CR syncer syncs custom resources between a remote Kubernetes cluster
and the local Kubernetes cluster. The spec part is copied from upstream to
downstream, and the status part is copied from downstream to upstream.
Which cluster is upstream is decided per kind by annotations on its CRD
(see policy.py).
"""

import asyncio
import logging
import signal
import sys
from typing import List, Optional

import click

from api import HTTPServer, cluster_health_check, create_app
from config import Config, load_config
from discovery import CrdDiscovery
from errors import CacheSyncError, CredentialsError
from kube import ClusterClient, load_local_client, load_remote_client
from lifecycle import SyncerManager
from policy import KindDescriptor, SyncPolicy
from syncer import CRSyncer

logger = logging.getLogger(__name__)


class Application:
    """Wires the clients, discovery loop, lifecycle manager and HTTP server."""

    def __init__(self, config: Config):
        self.config = config
        self.local: Optional[ClusterClient] = None
        self.remote: Optional[ClusterClient] = None
        self.discovery: Optional[CrdDiscovery] = None
        self.manager: Optional[SyncerManager] = None
        self.http: Optional[HTTPServer] = None
        self._discovery_task: Optional[asyncio.Task] = None
        self._manager_task: Optional[asyncio.Task] = None
        self._http_task: Optional[asyncio.Task] = None
        self.running = False

    def initialize(self) -> None:
        """
        Build all components.

        Raises:
            CredentialsError: If credentials for either cluster are missing
        """
        logger.info("Initializing CR syncer")
        remote_cfg = self.config.remote

        self.local = load_local_client(verbose=remote_cfg.verbose)
        self.remote = load_remote_client(
            remote_cfg.server, remote_cfg.request_timeout, verbose=remote_cfg.verbose
        )

        self.manager = SyncerManager(self.build_syncer)
        self.discovery = CrdDiscovery(
            self.local, cache_sync_timeout=self.config.sync.cache_sync_timeout
        )

        http_cfg = self.config.http
        app = create_app(cluster_health_check(self.remote), self.manager)
        self.http = HTTPServer(app, http_cfg.host, http_cfg.port, http_cfg.log_level)
        logger.info("All components initialized")

    def build_syncer(self, descriptor: KindDescriptor, policy: SyncPolicy) -> CRSyncer:
        """Construct a syncer for one kind with the process-wide settings."""
        sync_cfg = self.config.sync
        return CRSyncer(
            descriptor,
            policy,
            self.local,
            self.remote,
            robot_name=sync_cfg.robot_name,
            namespace=sync_cfg.namespace,
            conflict_error_limit=sync_cfg.conflict_error_limit,
            resync_period=sync_cfg.resync_period,
            watch_timeout=self.config.remote.timeout,
            cache_sync_timeout=sync_cfg.cache_sync_timeout,
            workers=sync_cfg.workers,
        )

    async def start(self) -> None:
        """
        Start the application and run until stopped.

        Raises:
            CacheSyncError: If the CRD cache cannot be synced at startup
        """
        if self.manager is None:
            self.initialize()

        self.running = True
        logger.info("Starting CR syncer")

        # Health and metrics are served while the CRD cache syncs.
        self._http_task = asyncio.create_task(self.http.start())
        await self.discovery.sync()

        changes: asyncio.Queue = asyncio.Queue()
        self._discovery_task = asyncio.create_task(self.discovery.run(changes))
        self._manager_task = asyncio.create_task(self.manager.run(changes))

        tasks: List[asyncio.Task] = [
            self._http_task,
            self._discovery_task,
            self._manager_task,
        ]
        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            logger.info("Application tasks cancelled")

    async def stop(self) -> None:
        """Stop the application gracefully."""
        if not self.running:
            return
        self.running = False
        logger.info("Stopping CR syncer")

        # Closing the change channel makes the manager stop all syncers.
        if self._discovery_task is not None:
            self._discovery_task.cancel()
            await asyncio.gather(self._discovery_task, return_exceptions=True)
        if self._manager_task is not None:
            await asyncio.gather(self._manager_task, return_exceptions=True)

        if self.http:
            await self.http.stop()

        for cluster in (self.local, self.remote):
            if cluster is not None:
                cluster.close()

        logger.info("CR syncer stopped")


async def run(config: Config) -> None:
    """Run the application until a shutdown signal arrives."""
    app = Application(config)

    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        asyncio.create_task(app.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await app.start()
    finally:
        await app.stop()


@click.command()
@click.option("--remote-server", help="Remote Kubernetes server")
@click.option(
    "--robot-name", help="Robot we are running on, can be used for selective syncing"
)
@click.option("--namespace", help="Namespace in which namespaced resources are synced")
@click.option("--listen-address", help="HTTP listen address, [host]:port")
@click.option(
    "--conflict-error-limit",
    type=int,
    help="Number of consecutive conflict errors before a syncer is restarted",
)
@click.option("--timeout", type=int, help="Timeout for CR watch calls in seconds")
@click.option("--resync-period", type=int, help="Seconds between full resyncs")
@click.option("--workers", type=int, help="Reconcile workers per syncer")
@click.option("--verbose/--no-verbose", default=None, help="Log every API request")
@click.option("--log-level", help="Log level (DEBUG, INFO, WARNING, ...)")
def cli(**options):
    """Sync custom resources between the local and a remote cluster."""
    try:
        config = load_config(options)
    except ValueError as e:
        raise click.UsageError(str(e))

    logging.basicConfig(
        level=config.http.log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        asyncio.run(run(config))
    except (CredentialsError, CacheSyncError) as e:
        logger.critical(f"Fatal: {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Interrupted by user")


if __name__ == "__main__":
    cli()
