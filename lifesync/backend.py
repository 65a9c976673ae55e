"""
Pluggable substrate and remote factory.

Creates the key/value substrate and the remote repository from
configuration. The built-in substrates are ``sqlite`` (default, a file in
the store directory) and ``memory``. External substrates register via the
``lifesync.substrates`` entry point group.

External substrate packages provide a factory function::

    def create_substrate(config: StoreConfig) -> Substrate:
        ...

and register it in their pyproject.toml::

    [project.entry-points."lifesync.substrates"]
    my-substrate = "my_package.substrate:create_substrate"
"""

from .config import StoreConfig
from .errors import ConfigError, RemoteUnavailableError
from .protocol import RemoteRepository, Substrate

SUBSTRATE_FILENAME = "lifesync.db"


class NullRemoteRepository:
    """Remote used when no API URL is configured; every call is unavailable."""

    def _unavailable(self):
        raise RemoteUnavailableError(
            "No remote configured (set [remote] api_url or LIFESYNC_API_URL)"
        )

    def list_items(self) -> list[dict]:
        self._unavailable()

    def list_categories(self) -> list[dict]:
        self._unavailable()

    def create_item(self, data: dict) -> dict:
        self._unavailable()

    def update_item(self, id: str, patch: dict) -> dict:
        self._unavailable()

    def create_category(self, data: dict) -> dict:
        self._unavailable()

    def close(self) -> None:
        pass


def create_substrate(config: StoreConfig) -> Substrate:
    """
    Create the substrate from configuration.

    For ``backend = "sqlite"`` (default), opens ``lifesync.db`` in the store
    directory. For other values, loads the backend via the
    ``lifesync.substrates`` entry point group.
    """
    if config.backend == "sqlite":
        from .substrate import SqliteSubstrate
        return SqliteSubstrate(config.path / SUBSTRATE_FILENAME, capacity_bytes=config.capacity_bytes)
    if config.backend == "memory":
        from .substrate import MemorySubstrate
        return MemorySubstrate(capacity_bytes=config.capacity_bytes)
    return _load_substrate(config.backend, config)


def _load_substrate(name: str, config: StoreConfig) -> Substrate:
    """Load a substrate by entry point name."""
    from importlib.metadata import entry_points

    eps = entry_points(group="lifesync.substrates")
    for ep in eps:
        if ep.name == name:
            factory = ep.load()
            return factory(config)

    available = [ep.name for ep in eps]
    if available:
        raise ConfigError(
            f"Unknown substrate backend: {name!r}. Available: sqlite, memory, {', '.join(available)}"
        )
    raise ConfigError(
        f"Unknown substrate backend: {name!r}. Built-in backends are 'sqlite' and 'memory'."
    )


def create_remote(config: StoreConfig) -> RemoteRepository:
    """HTTP remote when an API URL is configured, otherwise a null remote."""
    if not config.remote.enabled:
        return NullRemoteRepository()
    from .remote import HttpRemoteRepository
    return HttpRemoteRepository(
        config.remote.api_url,
        config.remote.api_key,
        timeout=config.remote.timeout,
    )
