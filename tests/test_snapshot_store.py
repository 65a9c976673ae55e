"""Tests for lifesync.snapshot_store: whole-collection snapshots and backups."""

import pytest

from lifesync.errors import QuotaExceededError
from lifesync.snapshot_store import BACKUP_KEY_PREFIX, ITEMS_KEY, SnapshotStore
from lifesync.substrate import MemorySubstrate


class TestCollections:
    def test_empty_store_loads_empty_lists(self, snapshots):
        assert snapshots.load_items() == []
        assert snapshots.load_categories() == []

    def test_save_and_load(self, snapshots):
        items = [{"id": "a", "type": "todo"}, {"id": "b", "type": "note"}]
        snapshots.save_items(items)
        snapshots.save_categories([{"id": "c1"}])
        assert snapshots.load_items() == items
        assert snapshots.load_categories() == [{"id": "c1"}]

    @pytest.mark.parametrize("raw", ["{not json", '{"id": "a"}', "42"])
    def test_unreadable_snapshot_loads_empty(self, substrate, snapshots, raw):
        substrate.set_string(ITEMS_KEY, raw)
        assert snapshots.load_items() == []

    def test_upsert_stamps_times(self, snapshots):
        stored = snapshots.upsert_item({"id": "a", "type": "todo", "title": "x"})
        assert stored["createdAt"] == stored["updatedAt"]
        assert stored["updatedAt"].endswith("Z")

        updated = snapshots.upsert_item({"id": "a", "type": "todo", "title": "y"})
        assert updated["createdAt"] == stored["createdAt"]
        assert updated["updatedAt"] >= stored["updatedAt"]
        assert snapshots.load_items() == [updated]

    def test_upsert_does_not_mutate_input(self, snapshots):
        item = {"id": "a"}
        snapshots.upsert_item(item)
        assert item == {"id": "a"}

    def test_upsert_requires_id(self, snapshots):
        with pytest.raises(ValueError):
            snapshots.upsert_category({"name": "Health"})
        with pytest.raises(ValueError):
            snapshots.upsert_item({"id": ""})

    def test_upsert_accepts_zero_id(self, snapshots):
        snapshots.upsert_item({"id": 0, "title": "first"})
        snapshots.upsert_item({"id": 0, "title": "second"})
        assert [i["title"] for i in snapshots.load_items()] == ["second"]

    def test_delete_item(self, snapshots):
        snapshots.save_items([{"id": "a"}, {"id": "b"}])
        assert snapshots.delete_item("a") is True
        assert snapshots.delete_item("a") is False
        assert snapshots.load_items() == [{"id": "b"}]

    def test_save_beyond_capacity_raises(self):
        store = SnapshotStore(MemorySubstrate(capacity_bytes=200))
        with pytest.raises(QuotaExceededError):
            store.save_items([{"id": str(i), "title": "x" * 50} for i in range(10)])


class TestBackups:
    def test_backup_and_restore_round_trip(self, snapshots):
        snapshots.save_items([{"id": "a"}])
        snapshots.save_categories([{"id": "c"}])
        ts = snapshots.create_backup()

        snapshots.save_items([])
        snapshots.save_categories([])
        assert snapshots.restore_backup(ts) is True

        assert snapshots.load_items() == [{"id": "a"}]
        assert snapshots.load_categories() == [{"id": "c"}]

    def test_restore_latest_by_default(self, substrate, snapshots):
        substrate.set_string(BACKUP_KEY_PREFIX + "2025-01-01T00:00:00.000Z",
                             '{"items": [{"id": "old"}], "categories": []}')
        substrate.set_string(BACKUP_KEY_PREFIX + "2025-06-01T00:00:00.000Z",
                             '{"items": [{"id": "new"}], "categories": []}')
        assert snapshots.restore_backup() is True
        assert snapshots.load_items() == [{"id": "new"}]

    def test_restore_missing_backup(self, snapshots):
        assert snapshots.restore_backup() is False
        assert snapshots.restore_backup("1999-01-01T00:00:00.000Z") is False

    def test_prunes_to_max_backups(self, substrate):
        store = SnapshotStore(substrate, max_backups=2)
        for year in (2021, 2022, 2023):
            substrate.set_string(BACKUP_KEY_PREFIX + f"{year}-01-01T00:00:00.000Z", "{}")
        ts = store.create_backup()

        backups = store.list_backups()
        assert backups == [ts, "2023-01-01T00:00:00.000Z"]
