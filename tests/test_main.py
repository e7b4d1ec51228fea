"""Unit tests for application wiring and the command line entry point."""

import asyncio
import os
from unittest.mock import AsyncMock, patch

import pytest
from click.testing import CliRunner

from config import Config, HTTPConfig, RemoteConfig, SyncConfig, reset_config
from discovery import CrdDiscovery
from errors import CredentialsError
from fakes import FakeCluster, wait_for
from main import Application, cli
from policy import SyncPolicy
from syncer import CRSyncer


@pytest.fixture
def app_config():
    return Config(
        remote=RemoteConfig(server="cloud.example.com", timeout=60),
        sync=SyncConfig(robot_name="r1", namespace="app", workers=2),
        http=HTTPConfig(listen_address="127.0.0.1:8080"),
    )


@pytest.fixture
def clusters():
    local = FakeCluster("local")
    remote = FakeCluster("remote")
    with patch("main.load_local_client", return_value=local), patch(
        "main.load_remote_client", return_value=remote
    ) as load_remote:
        yield local, remote, load_remote


class TestApplication:
    """Tests for Application wiring."""

    def test_initialize(self, app_config, clusters):
        local, remote, load_remote = clusters
        app = Application(app_config)
        app.initialize()

        load_remote.assert_called_once_with("cloud.example.com", 65, verbose=False)
        assert app.local is local
        assert app.remote is remote
        assert app.http.host == "127.0.0.1"
        assert app.http.port == 8080

    def test_build_syncer_uses_config(self, app_config, clusters, cloud_descriptor):
        local, remote, _ = clusters
        app = Application(app_config)
        app.initialize()

        syncer = app.build_syncer(
            cloud_descriptor, SyncPolicy.from_descriptor(cloud_descriptor)
        )

        assert isinstance(syncer, CRSyncer)
        assert syncer.robot_name == "r1"
        assert syncer.workers == 2
        assert syncer.watch_timeout == 60
        assert syncer.upstream is remote.resources["widgets"]
        assert syncer.upstream.namespace == "app"

    def test_initialize_propagates_credentials_error(self, app_config):
        with patch("main.load_local_client", side_effect=CredentialsError("none")):
            with pytest.raises(CredentialsError):
                Application(app_config).initialize()


@pytest.mark.asyncio
class TestApplicationRun:
    """Tests for starting and stopping the application."""

    async def test_start_and_stop(self, app_config, clusters, informers):
        local, remote, _ = clusters
        app = Application(app_config)
        app.initialize()
        app.discovery = CrdDiscovery(local, informer_factory=informers)
        app.http.start = AsyncMock()
        app.http.stop = AsyncMock()

        task = asyncio.create_task(app.start())
        await wait_for(lambda: app.manager.running)
        assert informers.informers[0].started

        await app.stop()
        await asyncio.wait_for(task, 2)

        app.http.stop.assert_awaited_once()
        assert informers.informers[0].stopped
        assert app.manager.running is False
        assert local.closed and remote.closed

    async def test_stop_is_idempotent(self, app_config, clusters):
        app = Application(app_config)
        await app.stop()
        assert app.running is False


class TestCli:
    """Tests for the click entry point."""

    def teardown_method(self):
        reset_config()

    def test_missing_remote_server(self):
        with patch.dict(os.environ, {}, clear=True):
            result = CliRunner().invoke(cli, [])
        assert result.exit_code == 2
        assert "remote-server" in result.output

    def test_options_override_environment(self):
        runner = AsyncMock()
        env = {"REMOTE_SERVER": "env.example.com", "ROBOT_NAME": "env-robot"}
        with patch.dict(os.environ, env, clear=True), patch("main.run", runner):
            result = CliRunner().invoke(
                cli, ["--robot-name", "r9", "--workers", "3", "--verbose"]
            )

        assert result.exit_code == 0, result.output
        config = runner.call_args.args[0]
        assert config.remote.server == "env.example.com"
        assert config.sync.robot_name == "r9"
        assert config.sync.workers == 3
        assert config.remote.verbose is True

    def test_fatal_startup_error_exits_nonzero(self):
        runner = AsyncMock(side_effect=CredentialsError("no credentials"))
        env = {"REMOTE_SERVER": "cloud.example.com"}
        with patch.dict(os.environ, env, clear=True), patch("main.run", runner):
            result = CliRunner().invoke(cli, [])

        assert result.exit_code == 1
