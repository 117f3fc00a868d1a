"""Configuration loading for zotesync."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from . import __version__

# Shared secret used when no token is configured (development only)
DEV_TOKEN = "zotepad-dev-token"

DEFAULT_PORT = 54577


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    token: str = ""
    build_id: str = __version__
    notify_url: str = ""  # GUI webhook; empty logs events instead

    @property
    def effective_token(self) -> str:
        """Configured token, or the development default when unset."""
        return self.token.strip() or DEV_TOKEN


@dataclass
class StoreConfig:
    """Configuration for the SQLite store holding replicated tables."""

    db_path: str = "~/.zotesync/zotepad.db"
    busy_timeout_seconds: float = 5.0


@dataclass
class SyncConfig:
    """Configuration for the peer sync client."""

    remote_url: str = ""  # Base URL of the paired peer, e.g. http://192.168.1.20:54577
    token: str = ""
    batch_size: int = 200
    max_retries: int = 3
    timeout_seconds: float = 30.0
    sync_interval_minutes: int = 5
    tables: list[str] = field(default_factory=list)  # Empty means all tables

    @property
    def effective_token(self) -> str:
        return self.token.strip() or DEV_TOKEN


@dataclass
class Config:
    server: ServerConfig = field(default_factory=ServerConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)


def _get_env(key: str, default: Any = None) -> Any:
    """Get environment variable with ZOTESYNC_ prefix."""
    return os.environ.get(f"ZOTESYNC_{key}", default)


def _apply_env_overrides(config: Config) -> Config:
    """Apply environment variable overrides to config."""
    # Server overrides
    if host := _get_env("SERVER_HOST"):
        config.server.host = host
    if port := _get_env("SERVER_PORT"):
        config.server.port = int(port)
    if build_id := _get_env("BUILD_ID"):
        config.server.build_id = build_id
    if notify_url := _get_env("NOTIFY_URL"):
        config.server.notify_url = notify_url

    # The token is shared by both ends of a pairing
    if token := _get_env("SYNC_TOKEN"):
        config.server.token = token
        config.sync.token = token

    # Store overrides
    if db_path := _get_env("DB_PATH"):
        config.store.db_path = db_path

    # Sync client overrides
    if remote_url := _get_env("REMOTE_URL"):
        config.sync.remote_url = remote_url
    if interval := _get_env("SYNC_INTERVAL"):
        config.sync.sync_interval_minutes = int(interval)
    if batch_size := _get_env("BATCH_SIZE"):
        config.sync.batch_size = int(batch_size)

    return config


def load_config(config_path: str | Path | None = None) -> Config:
    """Load configuration from YAML file with environment variable overrides.

    Args:
        config_path: Path to YAML config file. If None, uses default config.

    Returns:
        Loaded Config object.
    """
    config = Config()

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                data = yaml.safe_load(f) or {}

            # Parse server config
            if "server" in data:
                server_data = data["server"]
                config.server = ServerConfig(
                    host=server_data.get("host", config.server.host),
                    port=int(server_data.get("port", config.server.port)),
                    token=str(server_data.get("token") or ""),
                    build_id=str(server_data.get("build_id", config.server.build_id)),
                    notify_url=server_data.get("notify_url", config.server.notify_url),
                )

            # Parse store config
            if "store" in data:
                store_data = data["store"]
                config.store = StoreConfig(
                    db_path=store_data.get("db_path", config.store.db_path),
                    busy_timeout_seconds=store_data.get(
                        "busy_timeout_seconds", config.store.busy_timeout_seconds
                    ),
                )

            # Parse sync client config
            if "sync" in data:
                sync_data = data["sync"]
                config.sync = SyncConfig(
                    remote_url=sync_data.get("remote_url", config.sync.remote_url),
                    # Falls back to the server's token: one secret per pairing
                    token=str(sync_data.get("token") or config.server.token),
                    batch_size=sync_data.get("batch_size", config.sync.batch_size),
                    max_retries=sync_data.get("max_retries", config.sync.max_retries),
                    timeout_seconds=sync_data.get(
                        "timeout_seconds", config.sync.timeout_seconds
                    ),
                    sync_interval_minutes=sync_data.get(
                        "sync_interval_minutes", config.sync.sync_interval_minutes
                    ),
                    tables=list(sync_data.get("tables") or []),
                )
            elif config.server.token:
                config.sync.token = config.server.token

    # Apply environment variable overrides
    return _apply_env_overrides(config)
