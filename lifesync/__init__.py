"""
lifesync

Local-first storage and synchronization for a personal life-management app:
a quota-bounded blob cache for images and audio, whole-collection snapshots
of items and categories, and a last-write-wins sync engine against a
hosted API.

Quick Start:
    from lifesync import LifeStore

    with LifeStore() as store:  # uses ~/.lifesync/
        store.start()
        store.store_images("note1", [BlobFile(data, "image/png", "a.png")])
        items = store.load_items()

CLI Usage:
    lifesync status
    lifesync sync
    lifesync blob stats

Environment Variables:
    LIFESYNC_STORE_PATH  - Override default store location
    LIFESYNC_API_URL     - Remote API base URL
    LIFESYNC_API_KEY     - Remote API bearer token
    LIFESYNC_VERBOSE     - Debug logging to stderr

Configuration is persisted in lifesync.toml within the store directory.
"""

from .api import LifeStore
from .blob_store import BlobStore
from .snapshot_store import SnapshotStore
from .sync_engine import SyncEngine, merge_records
from .rehydrator import Rehydrator
from .types import BlobFile, BlobRef, StoredBlob, SyncResult, SyncStatus

__version__ = "0.1.0"
__all__ = [
    "LifeStore",
    "BlobStore",
    "SnapshotStore",
    "SyncEngine",
    "merge_records",
    "Rehydrator",
    "BlobFile",
    "BlobRef",
    "StoredBlob",
    "SyncResult",
    "SyncStatus",
]
