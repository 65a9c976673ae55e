"""
Whole-collection snapshots of items and categories.

A dumb serialization boundary: each collection is one JSON list under a
fixed substrate key, read and written in full. The store does not decide
what is correct data; the sync engine and the application layer do.
"""

import json
import logging
from typing import Optional

from .types import has_record_id, utc_now

logger = logging.getLogger(__name__)

ITEMS_KEY = "lifesync:items"
CATEGORIES_KEY = "lifesync:categories"
BACKUP_KEY_PREFIX = "lifesync:backup:"

DEFAULT_MAX_BACKUPS = 5


class SnapshotStore:
    """
    Items and categories persisted as whole-collection snapshots.

    Writes that do not fit in the substrate raise QuotaExceededError;
    reads never raise and treat unreadable snapshots as empty.
    """

    def __init__(self, substrate, *, max_backups: int = DEFAULT_MAX_BACKUPS):
        self._substrate = substrate
        self.max_backups = max_backups

    def _load_list(self, key: str) -> list[dict]:
        raw = self._substrate.get_string(key)
        if raw is None:
            return []
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning("Snapshot %s is not valid JSON, treating as empty: %s", key, e)
            return []
        if not isinstance(data, list):
            logger.warning("Snapshot %s is not a list, treating as empty", key)
            return []
        return [r for r in data if isinstance(r, dict)]

    def _save_list(self, key: str, records: list[dict]) -> None:
        self._substrate.set_string(key, json.dumps(records))
        logger.debug("Saved %d records to %s", len(records), key)

    # -------------------------------------------------------------------------
    # Collections
    # -------------------------------------------------------------------------

    def load_items(self) -> list[dict]:
        return self._load_list(ITEMS_KEY)

    def save_items(self, items: list[dict]) -> None:
        self._save_list(ITEMS_KEY, items)

    def load_categories(self) -> list[dict]:
        return self._load_list(CATEGORIES_KEY)

    def save_categories(self, categories: list[dict]) -> None:
        self._save_list(CATEGORIES_KEY, categories)

    def _upsert(self, key: str, record: dict) -> dict:
        if not has_record_id(record):
            raise ValueError("Record must have an id")
        now = utc_now()
        stamped = dict(record)
        stamped.setdefault("createdAt", now)
        stamped["updatedAt"] = now

        records = self._load_list(key)
        for i, existing in enumerate(records):
            if existing.get("id") == stamped["id"]:
                stamped["createdAt"] = existing.get("createdAt", stamped["createdAt"])
                records[i] = stamped
                break
        else:
            records.append(stamped)
        self._save_list(key, records)
        return stamped

    def upsert_item(self, item: dict) -> dict:
        """Insert or replace an item by id, stamping ``updatedAt``.

        Returns the stored record.
        """
        return self._upsert(ITEMS_KEY, item)

    def upsert_category(self, category: dict) -> dict:
        return self._upsert(CATEGORIES_KEY, category)

    def delete_item(self, id: str) -> bool:
        """Remove an item by id. Returns True if it existed."""
        items = self._load_list(ITEMS_KEY)
        remaining = [i for i in items if i.get("id") != id]
        if len(remaining) == len(items):
            return False
        self._save_list(ITEMS_KEY, remaining)
        return True

    # -------------------------------------------------------------------------
    # Backups
    # -------------------------------------------------------------------------

    def create_backup(self) -> str:
        """
        Save the current items and categories under a timestamped key.

        Older backups beyond ``max_backups`` are pruned.

        Returns:
            The backup timestamp
        """
        timestamp = utc_now()
        backup = {
            "timestamp": timestamp,
            "items": self.load_items(),
            "categories": self.load_categories(),
        }
        self._substrate.set_string(BACKUP_KEY_PREFIX + timestamp, json.dumps(backup))
        logger.info(
            "Created backup %s (%d items, %d categories)",
            timestamp, len(backup["items"]), len(backup["categories"]),
        )
        self._prune_backups()
        return timestamp

    def _prune_backups(self) -> None:
        backups = self.list_backups()
        for timestamp in backups[self.max_backups:]:
            self._substrate.remove_key(BACKUP_KEY_PREFIX + timestamp)
            logger.debug("Pruned backup %s", timestamp)

    def list_backups(self) -> list[str]:
        """Backup timestamps, newest first."""
        keys = self._substrate.list_keys(BACKUP_KEY_PREFIX)
        return sorted((k[len(BACKUP_KEY_PREFIX):] for k in keys), reverse=True)

    def load_backup(self, timestamp: Optional[str] = None) -> Optional[dict]:
        """Load one backup (the latest when timestamp is omitted)."""
        if timestamp is None:
            backups = self.list_backups()
            if not backups:
                return None
            timestamp = backups[0]
        raw = self._substrate.get_string(BACKUP_KEY_PREFIX + timestamp)
        if raw is None:
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning("Backup %s is not valid JSON: %s", timestamp, e)
            return None
        if not isinstance(data, dict):
            return None
        return data

    def restore_backup(self, timestamp: Optional[str] = None) -> bool:
        """Overwrite both collections from a backup. Returns False if none found."""
        backup = self.load_backup(timestamp)
        if backup is None:
            logger.warning("No backup found%s", f" for {timestamp}" if timestamp else "")
            return False
        items = backup.get("items")
        categories = backup.get("categories")
        self.save_items(items if isinstance(items, list) else [])
        self.save_categories(categories if isinstance(categories, list) else [])
        logger.info("Restored backup %s", backup.get("timestamp", timestamp))
        return True
