"""
Configuration management for lifesync stores.

The configuration is stored as a TOML file in the store directory.
It selects the substrate backend and sets blob quotas, sync timing and
the remote API endpoint.
"""

import os
import tomllib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import tomli_w

from .errors import ConfigError


CONFIG_FILENAME = "lifesync.toml"
CONFIG_VERSION = 1

STORE_PATH_ENV = "LIFESYNC_STORE_PATH"
API_URL_ENV = "LIFESYNC_API_URL"
API_KEY_ENV = "LIFESYNC_API_KEY"

DEFAULT_STORE_DIR = ".lifesync"
# Substrate bytes are UTF-16 units of the base64 record, about 8/3 of the
# blob quota's decoded bytes; 32 MiB holds the default 8 MiB blob quota
# with room left for snapshots and backups
DEFAULT_CAPACITY_BYTES = 32 * 1024 * 1024


@dataclass
class BlobConfig:
    """Blob cache limits and compression parameters."""
    max_item_bytes: int = 500 * 1024
    max_total_bytes: int = 8 * 1024 * 1024
    max_dimension: int = 1200
    quality: float = 0.7


@dataclass
class SyncConfig:
    interval_seconds: int = 3600
    backup_before_sync: bool = True
    max_backups: int = 5


@dataclass
class RemoteConfig:
    """Hosted API endpoint. Sync is disabled while api_url is empty."""
    api_url: str = ""
    api_key: str = ""
    timeout: float = 30.0

    @property
    def enabled(self) -> bool:
        return bool(self.api_url)


@dataclass
class StoreConfig:
    """Complete store configuration."""
    path: Path
    version: int = CONFIG_VERSION
    created: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    # Substrate backend name and its byte capacity (None for unbounded)
    backend: str = "sqlite"
    capacity_bytes: Optional[int] = DEFAULT_CAPACITY_BYTES

    blobs: BlobConfig = field(default_factory=BlobConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    remote: RemoteConfig = field(default_factory=RemoteConfig)

    @property
    def config_path(self) -> Path:
        """Path to the TOML config file."""
        return self.path / CONFIG_FILENAME

    def exists(self) -> bool:
        """Check if config file exists."""
        return self.config_path.exists()


def get_store_path(explicit: Optional[Path] = None) -> Path:
    """
    Resolve the store directory.

    Priority:
    1. Explicit path argument
    2. LIFESYNC_STORE_PATH environment variable
    3. ~/.lifesync
    """
    if explicit is not None:
        return Path(explicit).expanduser()
    env = os.environ.get(STORE_PATH_ENV)
    if env:
        return Path(env).expanduser()
    return Path.home() / DEFAULT_STORE_DIR


def _apply_env_overrides(config: StoreConfig) -> StoreConfig:
    """Environment variables win over the file for remote credentials."""
    api_url = os.environ.get(API_URL_ENV)
    api_key = os.environ.get(API_KEY_ENV)
    if api_url:
        config.remote.api_url = api_url
    if api_key:
        config.remote.api_key = api_key
    return config


def _section(data: dict, name: str) -> dict:
    section = data.get(name, {})
    if not isinstance(section, dict):
        raise ConfigError(f"[{name}] must be a table")
    return section


def _positive(name: str, value, cls=int):
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ConfigError(f"{name} must be a positive number (got {value!r})")
    return cls(value)


def load_config(store_path: Path) -> StoreConfig:
    """
    Load configuration from a store directory.

    Raises:
        FileNotFoundError: If config doesn't exist
        ConfigError: If config is invalid or from a newer version
    """
    config_path = store_path / CONFIG_FILENAME

    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    try:
        with open(config_path, "rb") as f:
            data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {config_path}: {e}") from e

    store = _section(data, "store")
    version = store.get("version", 1)
    if version > CONFIG_VERSION:
        raise ConfigError(f"Config version {version} is newer than supported ({CONFIG_VERSION})")

    capacity = store.get("capacity_bytes", DEFAULT_CAPACITY_BYTES)
    # 0 in the file means unbounded
    capacity = None if capacity == 0 else _positive("store.capacity_bytes", capacity)

    blobs = _section(data, "blobs")
    defaults = BlobConfig()
    quality = blobs.get("quality", defaults.quality)
    if isinstance(quality, bool) or not isinstance(quality, (int, float)) or not 0 < quality <= 1:
        raise ConfigError(f"blobs.quality must be in (0, 1] (got {quality!r})")
    blob_config = BlobConfig(
        max_item_bytes=_positive("blobs.max_item_bytes", blobs.get("max_item_bytes", defaults.max_item_bytes)),
        max_total_bytes=_positive("blobs.max_total_bytes", blobs.get("max_total_bytes", defaults.max_total_bytes)),
        max_dimension=_positive("blobs.max_dimension", blobs.get("max_dimension", defaults.max_dimension)),
        quality=float(quality),
    )

    sync = _section(data, "sync")
    sync_defaults = SyncConfig()
    interval = sync.get("interval_seconds", sync_defaults.interval_seconds)
    if isinstance(interval, bool) or not isinstance(interval, int) or interval < 0:
        raise ConfigError(f"sync.interval_seconds must be >= 0 (got {interval!r})")
    sync_config = SyncConfig(
        interval_seconds=interval,
        backup_before_sync=bool(sync.get("backup_before_sync", sync_defaults.backup_before_sync)),
        max_backups=_positive("sync.max_backups", sync.get("max_backups", sync_defaults.max_backups)),
    )

    remote = _section(data, "remote")
    remote_config = RemoteConfig(
        api_url=str(remote.get("api_url", "")),
        api_key=str(remote.get("api_key", "")),
        timeout=_positive("remote.timeout", remote.get("timeout", RemoteConfig.timeout), float),
    )

    config = StoreConfig(
        path=store_path,
        version=version,
        created=store.get("created", ""),
        backend=str(store.get("backend", "sqlite")),
        capacity_bytes=capacity,
        blobs=blob_config,
        sync=sync_config,
        remote=remote_config,
    )
    return _apply_env_overrides(config)


def save_config(config: StoreConfig) -> None:
    """
    Save configuration to the store directory.

    Creates the directory if it doesn't exist. Environment overrides are
    not written back; the API key is only saved if it came from the file.
    """
    config.path.mkdir(parents=True, exist_ok=True)

    remote = {"api_url": config.remote.api_url, "timeout": config.remote.timeout}
    if config.remote.api_key and config.remote.api_key != os.environ.get(API_KEY_ENV):
        remote["api_key"] = config.remote.api_key
    if config.remote.api_url == os.environ.get(API_URL_ENV):
        remote["api_url"] = ""

    data = {
        "store": {
            "version": config.version,
            "created": config.created,
            "backend": config.backend,
            "capacity_bytes": config.capacity_bytes or 0,
        },
        "blobs": {
            "max_item_bytes": config.blobs.max_item_bytes,
            "max_total_bytes": config.blobs.max_total_bytes,
            "max_dimension": config.blobs.max_dimension,
            "quality": config.blobs.quality,
        },
        "sync": {
            "interval_seconds": config.sync.interval_seconds,
            "backup_before_sync": config.sync.backup_before_sync,
            "max_backups": config.sync.max_backups,
        },
        "remote": remote,
    }

    with open(config.config_path, "wb") as f:
        tomli_w.dump(data, f)


def load_or_create_config(store_path: Path) -> StoreConfig:
    """
    Load existing config or create a new one with defaults.

    This is the main entry point for config management.
    """
    config_path = store_path / CONFIG_FILENAME

    if config_path.exists():
        return load_config(store_path)
    config = StoreConfig(path=store_path)
    save_config(config)
    return _apply_env_overrides(config)
