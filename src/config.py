"""
Configuration module for the CR syncer.

Loads configuration from environment variables. Command line options given
to the entry point override individual values.
"""

import os
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Optional, Tuple


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


def parse_listen_address(address: str) -> Tuple[str, int]:
    """
    Split a ``[host]:port`` listen address.

    An empty host means all interfaces.

    Raises:
        ValueError: If the address has no port or the port is not numeric
    """
    host, sep, port = address.rpartition(":")
    if not sep or not port.isdigit():
        raise ValueError(
            f"Invalid listen address '{address}', expected [host]:port"
        )
    return host or "0.0.0.0", int(port)


@dataclass
class RemoteConfig:
    """Remote control plane connection settings."""

    server: str = ""
    timeout: int = 300  # seconds for watch calls
    verbose: bool = False

    @property
    def request_timeout(self) -> int:
        """Transport timeout, slightly above the watch timeout."""
        return self.timeout + 5

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            server=os.getenv("REMOTE_SERVER", ""),
            timeout=int(os.getenv("TIMEOUT", "300")),
            verbose=_env_bool("VERBOSE"),
        )


@dataclass
class SyncConfig:
    """Settings shared by every per-kind syncer."""

    robot_name: str = ""
    namespace: str = "default"
    conflict_error_limit: int = 5
    resync_period: int = 300  # seconds
    workers: int = 4
    cache_sync_timeout: int = 120  # seconds

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            robot_name=os.getenv("ROBOT_NAME", ""),
            namespace=os.getenv("NAMESPACE", "default"),
            conflict_error_limit=int(os.getenv("CONFLICT_ERROR_LIMIT", "5")),
            resync_period=int(os.getenv("RESYNC_PERIOD", "300")),
            workers=int(os.getenv("WORKERS", "4")),
            cache_sync_timeout=int(os.getenv("CACHE_SYNC_TIMEOUT", "120")),
        )


@dataclass
class HTTPConfig:
    """Health and metrics server configuration."""

    listen_address: str = ":80"
    log_level: str = "INFO"

    @property
    def host(self) -> str:
        return parse_listen_address(self.listen_address)[0]

    @property
    def port(self) -> int:
        return parse_listen_address(self.listen_address)[1]

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            listen_address=os.getenv("LISTEN_ADDRESS", ":80"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )


@dataclass
class Config:
    """Main configuration object."""

    remote: RemoteConfig = field(default_factory=RemoteConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    http: HTTPConfig = field(default_factory=HTTPConfig)

    @classmethod
    def from_env(cls):
        """Load all configuration from environment variables."""
        return cls(
            remote=RemoteConfig.from_env(),
            sync=SyncConfig.from_env(),
            http=HTTPConfig.from_env(),
        )

    def with_overrides(self, overrides: Dict[str, Any]) -> "Config":
        """
        Return a copy with command line overrides applied.

        Keys are option names as the CLI spells them with underscores,
        values of ``None`` are ignored.
        """
        remote_fields = {
            "remote_server": "server",
            "timeout": "timeout",
            "verbose": "verbose",
        }
        sync_fields = {
            "robot_name",
            "namespace",
            "conflict_error_limit",
            "resync_period",
            "workers",
        }
        http_fields = {"listen_address", "log_level"}

        remote_kw = {
            remote_fields[k]: v
            for k, v in overrides.items()
            if k in remote_fields and v is not None
        }
        sync_kw = {
            k: v for k, v in overrides.items() if k in sync_fields and v is not None
        }
        http_kw = {
            k: v for k, v in overrides.items() if k in http_fields and v is not None
        }

        return Config(
            remote=replace(self.remote, **remote_kw),
            sync=replace(self.sync, **sync_kw),
            http=replace(self.http, **http_kw),
        )

    def validate(self) -> None:
        """
        Validate the configuration.

        Raises:
            ValueError: If a required value is missing or out of range
        """
        if not self.remote.server:
            raise ValueError(
                "REMOTE_SERVER environment variable or --remote-server must be set"
            )
        if self.remote.timeout <= 0:
            raise ValueError("timeout must be a positive number of seconds")
        if self.sync.conflict_error_limit <= 0:
            raise ValueError("conflict-error-limit must be positive")
        if self.sync.resync_period <= 0:
            raise ValueError("resync-period must be positive")
        if self.sync.workers <= 0:
            raise ValueError("workers must be positive")
        parse_listen_address(self.http.listen_address)


# Global config instance
config: Optional[Config] = None


def load_config(overrides: Optional[Dict[str, Any]] = None) -> Config:
    """Load and validate configuration (singleton pattern)."""
    global config
    cfg = Config.from_env()
    if overrides:
        cfg = cfg.with_overrides(overrides)
    cfg.validate()
    config = cfg
    return config


def get_config() -> Config:
    """Get the current configuration."""
    if config is None:
        return load_config()
    return config


def reset_config() -> None:
    """Reset configuration (mainly for testing)."""
    global config
    config = None
