"""
Process root for the local-first store.

LifeStore builds every component once from configuration (or from
injected collaborators) and hands them to consumers. There are no module
singletons: an application creates one LifeStore per store directory,
calls ``start()`` and ``close()``s it on exit.
"""

import logging
from pathlib import Path
from typing import Optional

from .blob_store import BlobStore
from .codec import PillowCompressor, substrate_footprint
from .config import StoreConfig, get_store_path, load_or_create_config
from .rehydrator import Rehydrator
from .snapshot_store import SnapshotStore
from .sync_engine import SyncEngine
from .types import BlobFile, BlobRef, KIND_AUDIO, KIND_IMAGE, SyncResult

logger = logging.getLogger(__name__)


class LifeStore:
    """
    Local-first store: blob cache, snapshots and sync over one substrate.

    Example:
        with LifeStore() as store:
            store.start()
            store.snapshots.upsert_item({"id": "n1", "type": "note"})
            store.sync.manual_sync()
    """

    def __init__(
        self,
        store_path: Optional[str | Path] = None,
        *,
        config: Optional[StoreConfig] = None,
        substrate=None,
        remote=None,
        compressor=None,
        ops_log: bool = True,
    ) -> None:
        """
        Open (or create) a store.

        Args:
            store_path: Store directory. Uses LIFESYNC_STORE_PATH or
                ~/.lifesync if not specified.
            config: Pre-loaded StoreConfig (skips filesystem config discovery).
            substrate: Injected substrate (skips backend creation).
            remote: Injected remote repository (skips HTTP client creation).
            compressor: Injected image compressor (defaults to Pillow).
            ops_log: Attach the rotating operations log in the store directory.
        """
        # --- Config resolution ---
        if config is not None:
            self._config = config
        else:
            self._config = load_or_create_config(get_store_path(store_path))
        self._store_path = self._config.path

        # --- Persistent operations log ---
        self._ops_log_handler = None
        if ops_log:
            from .logging_config import configure_ops_log
            self._ops_log_handler = configure_ops_log(self._store_path)

        # --- Substrate and remote (injected or factory-created) ---
        from .backend import create_remote, create_substrate
        self._substrate = substrate if substrate is not None else create_substrate(self._config)
        self._remote = remote if remote is not None else create_remote(self._config)

        blobs = self._config.blobs
        capacity = getattr(self._substrate, "capacity_bytes", None)
        if capacity is not None and capacity < substrate_footprint(blobs.max_total_bytes):
            logger.warning(
                "Substrate capacity %.1fMB cannot hold the %.1fMB blob quota; "
                "blobs will be evicted early",
                capacity / 1e6, blobs.max_total_bytes / 1e6,
            )
        if compressor is None:
            compressor = PillowCompressor(max_dimension=blobs.max_dimension, quality=blobs.quality)
        self._blobs = BlobStore(
            self._substrate,
            max_item_bytes=blobs.max_item_bytes,
            max_total_bytes=blobs.max_total_bytes,
            compressor=compressor,
        )
        self._snapshots = SnapshotStore(self._substrate, max_backups=self._config.sync.max_backups)
        self._sync = SyncEngine(
            self._snapshots,
            self._remote,
            self._substrate,
            interval_seconds=self._config.sync.interval_seconds,
            backup_before_sync=self._config.sync.backup_before_sync,
        )
        self._rehydrator = Rehydrator(self._blobs)
        logger.debug("Opened store at %s (%s substrate)", self._store_path, self._config.backend)

    # -------------------------------------------------------------------------
    # Components
    # -------------------------------------------------------------------------

    @property
    def config(self) -> StoreConfig:
        """Public access to store configuration."""
        return self._config

    @property
    def substrate(self):
        return self._substrate

    @property
    def blobs(self) -> BlobStore:
        return self._blobs

    @property
    def snapshots(self) -> SnapshotStore:
        return self._snapshots

    @property
    def sync(self) -> SyncEngine:
        return self._sync

    @property
    def rehydrator(self) -> Rehydrator:
        return self._rehydrator

    # -------------------------------------------------------------------------
    # Application helpers
    # -------------------------------------------------------------------------

    def start(self, *, start_timer: bool = True) -> Optional[SyncResult]:
        """Initialize sync (stale flag reset, first sync, periodic timer)."""
        return self._sync.initialize(start_timer=start_timer)

    def store_audio(self, item_id: str, file: BlobFile) -> BlobRef:
        """Store a voice note recording under the item's id."""
        return self._blobs.put(item_id, KIND_AUDIO, 0, file)

    def store_images(self, item_id: str, files: list[BlobFile]) -> list[BlobRef]:
        """Store a note's images as one group, replacing any previous ones."""
        return self._blobs.put_group(item_id, KIND_IMAGE, files)

    def delete_item(self, item_id: str) -> bool:
        """Delete an item and the blob groups stored under its id."""
        removed = self._snapshots.delete_item(item_id)
        self._blobs.remove(item_id, KIND_AUDIO)
        self._blobs.remove(item_id, KIND_IMAGE)
        return removed

    def load_items(self) -> list[dict]:
        """Local items with blob references rehydrated."""
        return self._rehydrator.rehydrate(self._snapshots.load_items()).items

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Stop the sync timer, close the remote client and the substrate."""
        if self._sync is not None:
            self._sync.shutdown()

        if self._remote is not None and hasattr(self._remote, "close"):
            self._remote.close()
            self._remote = None

        if self._substrate is not None:
            self._substrate.close()
            self._substrate = None

        # Remove ops log handler to avoid handler accumulation
        if self._ops_log_handler is not None:
            from .logging_config import remove_ops_log
            remove_ops_log(self._ops_log_handler)
            self._ops_log_handler = None

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit - close resources."""
        self.close()
        return False
