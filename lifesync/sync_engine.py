"""
Hybrid sync between the local snapshot store and the remote repository.

Last-write-wins on ``updatedAt`` with remote as the base: every remote
record is kept unless the local copy is at least as new. Sync runs on a
timer thread and on demand; at most one pass runs at a time, guarded by an
in-process lock and by the ``syncInProgress`` flag persisted in the
substrate (which also covers other processes sharing the store).
"""

import json
import logging
import os
import socket
import threading
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from .errors import QuotaExceededError, RemoteError
from .types import (
    SyncMetadata,
    SyncResult,
    SyncStatus,
    coerce_timestamp,
    has_record_id,
    record_updated_at,
    utc_now,
)

logger = logging.getLogger(__name__)

SYNC_METADATA_KEY = "lifesync:sync_metadata"

DEFAULT_INTERVAL_SECONDS = 3600
MAX_RECORDED_CONFLICTS = 50

# An in-progress flag older than this is taken over whoever holds it
STALE_SYNC_AFTER = timedelta(minutes=15)

# Distinguishes this process from an earlier one that reused its pid
_PROCESS_TOKEN = uuid.uuid4().hex[:12]


def process_owner() -> str:
    """Owner id written into the in-progress flag: host, pid and a per-process token."""
    return f"{socket.gethostname()}:{os.getpid()}:{_PROCESS_TOKEN}"


def _pid_running(pid: int) -> bool:
    if os.name != "posix":
        return True
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def flag_is_stale(metadata: SyncMetadata) -> bool:
    """
    True when no live process can still hold the in-progress flag.

    A flag without an owner, or taken more than STALE_SYNC_AFTER ago, is
    stale. An owner on this host is stale when its process is gone or its
    pid now belongs to a different process. Owners on other hosts are
    trusted until the flag ages out.
    """
    if not metadata.sync_owner or not metadata.sync_started_at:
        return True
    started = coerce_timestamp(metadata.sync_started_at)
    if datetime.now(timezone.utc) - started > STALE_SYNC_AFTER:
        return True
    parts = metadata.sync_owner.rsplit(":", 2)
    if len(parts) != 3 or not parts[1].isdigit():
        return True
    host, pid, token = parts[0], int(parts[1]), parts[2]
    if host != socket.gethostname():
        return False
    if pid == os.getpid():
        return token != _PROCESS_TOKEN
    return not _pid_running(pid)


def _merge(local: list[dict], remote: list[dict], collection: str = "") -> tuple[list[dict], list[dict]]:
    """Merge two collections, also returning the conflicts found."""
    merged: dict[str, dict] = {}
    for record in remote:
        if not has_record_id(record):
            logger.debug("Ignoring remote %s record without id", collection or "record")
            continue
        merged[record["id"]] = record

    conflicts: list[dict] = []
    for record in local:
        if not has_record_id(record):
            logger.debug("Ignoring local %s record without id", collection or "record")
            continue
        record_id = record["id"]
        existing = merged.get(record_id)
        if existing is None:
            merged[record_id] = record
            continue
        local_ts = record_updated_at(record)
        remote_ts = record_updated_at(existing)
        if local_ts != remote_ts:
            conflicts.append({
                "collection": collection,
                "id": record_id,
                "winner": "local" if local_ts > remote_ts else "remote",
            })
        if local_ts >= remote_ts:
            merged[record_id] = record

    return list(merged.values()), conflicts


def merge_records(local: list[dict], remote: list[dict]) -> list[dict]:
    """
    Last-write-wins merge of one collection.

    Starts from all remote records; each local record is inserted if its id
    is absent, otherwise it replaces the remote one when its ``updatedAt``
    is greater or equal (local wins ties). The result has one record per
    id: remote order first, then local-only records in local order.
    Records without an id are ignored.

    Pure and deterministic; ``merge_records(merge_records(L, R), R)``
    equals ``merge_records(L, R)``.
    """
    return _merge(local, remote)[0]


class SyncEngine:
    """
    Periodic and on-demand reconciliation of local and remote state.

    Lifecycle: construct, ``initialize()``, then ``shutdown()`` when the
    process is done. Sync passes never raise; outcomes come back as
    SyncResult and are recorded in the persisted SyncMetadata.
    """

    def __init__(
        self,
        snapshots,
        remote,
        substrate,
        *,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        backup_before_sync: bool = True,
    ):
        """
        Args:
            snapshots: SnapshotStore holding local items and categories
            remote: RemoteRepository to reconcile with
            substrate: Substrate holding the sync metadata
            interval_seconds: Period of the background timer (<= 0 disables it)
            backup_before_sync: Back up the local snapshot before overwriting it
        """
        self._snapshots = snapshots
        self._remote = remote
        self._substrate = substrate
        self.interval_seconds = interval_seconds
        self.backup_before_sync = backup_before_sync

        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._timer: Optional[threading.Thread] = None
        self._initialized = False

    # -------------------------------------------------------------------------
    # Metadata
    # -------------------------------------------------------------------------

    def load_metadata(self) -> SyncMetadata:
        """Read the persisted metadata, defaulting when absent or unreadable."""
        raw = self._substrate.get_string(SYNC_METADATA_KEY)
        if raw is None:
            return SyncMetadata()
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning("Sync metadata unreadable, using defaults: %s", e)
            return SyncMetadata()
        if not isinstance(data, dict):
            return SyncMetadata()
        return SyncMetadata.from_json_dict(data)

    def _save_metadata(self, metadata: SyncMetadata) -> None:
        self._substrate.set_string(SYNC_METADATA_KEY, json.dumps(metadata.to_json_dict()))

    def reset_metadata(self) -> bool:
        """Delete persisted metadata; the next sync is treated as the first."""
        removed = self._substrate.remove_key(SYNC_METADATA_KEY)
        logger.info("Sync metadata reset")
        return removed

    def status(self) -> SyncStatus:
        metadata = self.load_metadata()
        return SyncStatus(
            last_sync=metadata.last_sync_time or None,
            in_progress=metadata.sync_in_progress,
            error=metadata.last_error or None,
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def initialize(self, *, start_timer: bool = True) -> Optional[SyncResult]:
        """
        Prepare the engine. Idempotent.

        Clears an in-progress flag left behind by a crashed process (one
        whose owner is gone or that has aged out), runs an initial sync
        when the store has never synced, and starts the periodic timer.
        A flag held by a live process is left alone.

        Returns:
            The initial sync result, or None if no initial sync was needed
        """
        with self._lock:
            if self._initialized:
                return None
            self._initialized = True
            metadata = self.load_metadata()
            if metadata.sync_in_progress:
                if flag_is_stale(metadata):
                    logger.info("Clearing stale sync-in-progress flag (owner %s)", metadata.sync_owner or "unknown")
                    metadata.sync_in_progress = False
                    metadata.sync_owner = ""
                    metadata.sync_started_at = ""
                    self._save_metadata(metadata)
                else:
                    logger.info("Sync in progress in %s, leaving its flag", metadata.sync_owner)

        result = None
        if not metadata.last_sync_time:
            logger.info("No previous sync recorded, running initial sync")
            result = self.perform_sync()

        if start_timer and self.interval_seconds > 0:
            self._start_timer()
        return result

    def _start_timer(self) -> None:
        if self._timer is not None and self._timer.is_alive():
            return
        self._stop.clear()
        self._timer = threading.Thread(
            target=self._run_timer, name="lifesync-sync-timer", daemon=True,
        )
        self._timer.start()
        logger.debug("Sync timer started (every %ss)", self.interval_seconds)

    def _run_timer(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            result = self.perform_sync()
            if result.error:
                logger.info("Periodic sync failed: %s", result.error)

    def shutdown(self, timeout: float = 5.0) -> None:
        """Stop the periodic timer. A pass already running finishes on its own."""
        self._stop.set()
        timer = self._timer
        if timer is not None and timer is not threading.current_thread():
            timer.join(timeout)
        self._timer = None

    # -------------------------------------------------------------------------
    # Sync
    # -------------------------------------------------------------------------

    def _begin(self) -> bool:
        """Check-and-set the in-progress flag. False if a pass is already running."""
        with self._lock:
            metadata = self.load_metadata()
            if metadata.sync_in_progress:
                return False
            metadata.sync_in_progress = True
            metadata.sync_owner = process_owner()
            metadata.sync_started_at = utc_now()
            self._save_metadata(metadata)
            return True

    def _finish(self, *, error: Optional[str], conflicts: Optional[list[dict]] = None,
                mark_synced: bool = False) -> None:
        with self._lock:
            metadata = self.load_metadata()
            metadata.sync_in_progress = False
            metadata.sync_owner = ""
            metadata.sync_started_at = ""
            metadata.last_error = error or ""
            if mark_synced:
                metadata.last_sync_time = utc_now()
            if conflicts is not None:
                metadata.conflicts = conflicts[:MAX_RECORDED_CONFLICTS]
            try:
                self._save_metadata(metadata)
            except QuotaExceededError:
                # The flag must clear even when the full record does not fit
                metadata.conflicts = []
                self._save_metadata(metadata)

    def _run_guarded(self, label: str, body) -> SyncResult:
        """Run one pass under the in-progress flag; never raises."""
        result = SyncResult(started_at=utc_now())
        try:
            acquired = self._begin()
        except Exception as e:
            logger.warning("%s could not start: %s", label, e)
            result.error = str(e)
            result.finished_at = utc_now()
            return result
        if not acquired:
            logger.info("%s already in progress, skipping", label)
            result.skipped = True
            result.finished_at = utc_now()
            return result

        conflicts: Optional[list[dict]] = None
        mark_synced = False
        try:
            conflicts, mark_synced = body(result)
            result.ok = True
        except Exception as e:
            logger.warning("%s failed: %s", label, e)
            result.error = str(e) or type(e).__name__
        finally:
            try:
                self._finish(error=result.error, conflicts=conflicts, mark_synced=mark_synced)
            except Exception as e:
                logger.warning("Failed to record %s outcome: %s", label.lower(), e)
            result.finished_at = utc_now()

        if result.ok:
            logger.info(
                "%s complete: %d items (%d updated, %d created, %d failed), "
                "%d categories, %d conflicts",
                label, result.items, result.items_updated, result.items_created,
                result.items_failed, result.categories, result.conflicts,
            )
        return result

    def perform_sync(self) -> SyncResult:
        """
        Run one full sync pass.

        Fetch remote, merge each collection, persist the merge locally and
        push it back. Skipped (not queued) when a pass is already running.
        On failure ``last_sync_time`` is left unchanged.
        """
        return self._run_guarded("Sync", self._sync)

    def manual_sync(self) -> SyncResult:
        """User-triggered sync; same rules as the timer."""
        logger.info("Manual sync requested")
        return self.perform_sync()

    def _sync(self, result: SyncResult) -> tuple[list[dict], bool]:
        local_items = self._snapshots.load_items()
        local_categories = self._snapshots.load_categories()

        remote_items = self._remote.list_items()
        remote_categories = self._remote.list_categories()
        logger.debug(
            "Fetched %d items, %d categories from remote",
            len(remote_items), len(remote_categories),
        )

        items, item_conflicts = _merge(local_items, remote_items, "items")
        categories, category_conflicts = _merge(local_categories, remote_categories, "categories")
        conflicts = category_conflicts + item_conflicts
        for conflict in conflicts:
            logger.debug(
                "Conflict on %s %s: %s wins",
                conflict["collection"], conflict["id"], conflict["winner"],
            )

        if self.backup_before_sync:
            try:
                self._snapshots.create_backup()
            except QuotaExceededError as e:
                logger.warning("Skipping pre-sync backup: %s", e)

        self._snapshots.save_categories(categories)
        self._snapshots.save_items(items)

        result.items = len(items)
        result.categories = len(categories)
        result.conflicts = len(conflicts)

        self._push(categories, items, result)
        return conflicts, True

    # -------------------------------------------------------------------------
    # Push
    # -------------------------------------------------------------------------

    def _push(self, categories: list[dict], items: list[dict], result: SyncResult) -> None:
        # Categories are create-only; most already exist remotely
        for category in categories:
            try:
                self._remote.create_category(category)
                result.categories_created += 1
            except RemoteError as e:
                logger.debug("Category %s not created: %s", category.get("id"), e)

        for item in items:
            if not has_record_id(item):
                continue
            item_id = item["id"]
            try:
                self._remote.update_item(item_id, item)
                result.items_updated += 1
                logger.debug("Updated remote item %s", item_id)
                continue
            except RemoteError as e:
                logger.debug("Update of item %s failed, trying create: %s", item_id, e)
            try:
                self._remote.create_item(item)
                result.items_created += 1
                logger.debug("Created remote item %s", item_id)
            except RemoteError as e:
                result.items_failed += 1
                logger.warning("Failed to push item %s: %s", item_id, e)

    # -------------------------------------------------------------------------
    # Debug / maintenance
    # -------------------------------------------------------------------------

    def force_resync(self) -> SyncResult:
        """Forget the last sync time and run a full pass."""
        with self._lock:
            metadata = self.load_metadata()
            metadata.last_sync_time = ""
            self._save_metadata(metadata)
        logger.info("Forcing full resync")
        return self.perform_sync()

    def safe_upload_all(self) -> SyncResult:
        """
        Push every local record without merging.

        Uses the same per-record fallbacks as a sync and the same
        in-progress guard. The local snapshot is not modified and
        ``last_sync_time`` is left alone.
        """
        def upload(result: SyncResult) -> tuple[None, bool]:
            items = [i for i in self._snapshots.load_items() if has_record_id(i)]
            categories = [c for c in self._snapshots.load_categories() if has_record_id(c)]
            result.items = len(items)
            result.categories = len(categories)
            self._push(categories, items, result)
            return None, False

        return self._run_guarded("Upload", upload)

    def restore_from_backup(self, timestamp: Optional[str] = None) -> bool:
        """Restore local items and categories from a snapshot backup."""
        with self._lock:
            metadata = self.load_metadata()
            if metadata.sync_in_progress:
                logger.warning("Sync in progress, not restoring backup")
                return False
            return self._snapshots.restore_backup(timestamp)
