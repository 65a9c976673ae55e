"""Tests for lifesync.sync_engine: sync passes, guard flag and timer."""

import json
import os
import socket
import threading
from datetime import datetime, timedelta, timezone

from lifesync.errors import QuotaExceededError
from lifesync.sync_engine import SYNC_METADATA_KEY, STALE_SYNC_AFTER, SyncEngine, process_owner
from lifesync.types import utc_now


def _metadata(substrate) -> dict:
    raw = substrate.get_string(SYNC_METADATA_KEY)
    return json.loads(raw) if raw else {}


def _hold_flag(substrate, owner: str, started_at: str) -> None:
    substrate.set_string(SYNC_METADATA_KEY, json.dumps({
        "syncInProgress": True, "syncOwner": owner, "syncStartedAt": started_at, "lastSyncTime": "",
    }))


class TestPerformSync:
    def test_merges_persists_and_pushes(self, engine, snapshots, fake_remote, substrate):
        snapshots.save_items([
            {"id": "local-only", "updatedAt": "2025-01-01T00:00:00Z"},
            {"id": "x", "updatedAt": "2025-01-01T00:00:00Z", "title": "stale"},
        ])
        fake_remote.items = [{"id": "x", "updatedAt": "2025-02-01T00:00:00Z", "title": "fresh"}]
        fake_remote.categories = [{"id": "c1"}]

        result = engine.perform_sync()

        assert result.ok and not result.skipped
        assert result.items == 2
        assert result.items_updated == 1   # x existed remotely
        assert result.items_created == 1   # local-only fell through to create
        assert result.conflicts == 1
        items = {i["id"]: i for i in snapshots.load_items()}
        assert items["x"]["title"] == "fresh"
        assert {i["id"] for i in fake_remote.items} == {"x", "local-only"}

        meta = _metadata(substrate)
        assert meta["lastSyncTime"]
        assert meta["syncInProgress"] is False
        assert meta["lastError"] == ""
        assert meta["conflicts"] == [{"collection": "items", "id": "x", "winner": "remote"}]

    def test_scenario_d_existing_category_does_not_fail_sync(self, engine, snapshots, fake_remote, substrate):
        snapshots.save_categories([{"id": "health"}])
        fake_remote.categories = [{"id": "health"}]

        result = engine.perform_sync()

        assert result.ok
        assert result.categories_created == 0
        assert _metadata(substrate)["lastSyncTime"]

    def test_partial_push_failure_skips_record(self, engine, snapshots, fake_remote):
        snapshots.save_items([{"id": "a"}, {"id": "b"}, {"id": "c"}])
        fake_remote.fail_create = {"b"}

        result = engine.perform_sync()

        assert result.ok
        assert result.items_created == 2
        assert result.items_failed == 1
        assert {i["id"] for i in fake_remote.items} == {"a", "c"}

    def test_remote_unavailable_leaves_last_sync_stale(self, engine, snapshots, fake_remote, substrate):
        fake_remote.items = [{"id": "a"}]
        assert engine.perform_sync().ok
        before = _metadata(substrate)["lastSyncTime"]
        snapshots.save_items([{"id": "a"}, {"id": "b"}])

        fake_remote.unavailable = True
        result = engine.perform_sync()

        assert not result.ok
        assert "remote down" in result.error
        meta = _metadata(substrate)
        assert meta["lastSyncTime"] == before
        assert meta["syncInProgress"] is False
        assert meta["lastError"] == "remote down"
        # Local data untouched
        assert len(snapshots.load_items()) == 2

        status = engine.status()
        assert status.error == "remote down"
        assert status.last_sync == before

    def test_local_save_failure_is_recorded(self, engine, snapshots, fake_remote, substrate, monkeypatch):
        def full(items):
            raise QuotaExceededError("lifesync:items", 10, 0)

        monkeypatch.setattr(snapshots, "save_items", full)
        result = engine.perform_sync()

        assert not result.ok
        assert "Quota exceeded" in result.error
        assert _metadata(substrate)["syncInProgress"] is False

    def test_backup_before_sync(self, snapshots, fake_remote, substrate):
        eng = SyncEngine(snapshots, fake_remote, substrate, interval_seconds=0, backup_before_sync=True)
        snapshots.save_items([{"id": "a"}])
        eng.perform_sync()
        assert len(snapshots.list_backups()) == 1
        backup = snapshots.load_backup()
        assert backup["items"] == [{"id": "a"}]


class TestSyncGuard:
    def test_manual_sync_during_sync_is_noop(self, engine, fake_remote):
        nested = []

        def reenter():
            nested.append(engine.manual_sync())

        fake_remote.on_list = reenter
        result = engine.perform_sync()

        assert result.ok
        assert len(nested) == 1
        assert nested[0].skipped and not nested[0].ok
        assert [c for c in fake_remote.calls if c[0] == "list_items"] == [("list_items",)]

    def test_concurrent_threads_run_one_pass(self, engine, fake_remote):
        release = threading.Event()
        entered = threading.Event()

        def block():
            entered.set()
            release.wait(5)

        fake_remote.on_list = block
        results = []
        t = threading.Thread(target=lambda: results.append(engine.perform_sync()))
        t.start()
        assert entered.wait(5)

        second = engine.perform_sync()
        release.set()
        t.join(5)

        assert second.skipped
        assert results[0].ok
        assert len([c for c in fake_remote.calls if c[0] == "list_items"]) == 1

    def test_persisted_flag_blocks_other_process(self, engine, substrate, fake_remote):
        substrate.set_string(SYNC_METADATA_KEY, json.dumps({"syncInProgress": True}))
        assert engine.perform_sync().skipped
        assert fake_remote.calls == []

    def test_flag_records_owner_while_running(self, engine, substrate, fake_remote):
        seen = {}
        fake_remote.on_list = lambda: seen.update(_metadata(substrate))

        engine.perform_sync()

        assert seen["syncInProgress"] is True
        assert seen["syncOwner"] == process_owner()
        assert seen["syncStartedAt"]
        after = _metadata(substrate)
        assert after["syncOwner"] == "" and after["syncStartedAt"] == ""

    def test_zero_id_item_is_pushed(self, engine, snapshots, fake_remote):
        snapshots.save_items([{"id": 0, "title": "first"}])

        result = engine.perform_sync()

        assert result.items == 1 and result.items_created == 1
        assert ("create_item", 0) in fake_remote.calls


class TestLifecycle:
    def test_initialize_clears_stale_flag_and_forces_first_sync(self, engine, substrate, fake_remote):
        substrate.set_string(SYNC_METADATA_KEY, json.dumps({"syncInProgress": True, "lastSyncTime": ""}))

        result = engine.initialize()

        assert result is not None and result.ok
        assert _metadata(substrate)["syncInProgress"] is False
        assert ("list_items",) in fake_remote.calls

    def test_initialize_leaves_flag_of_live_local_process(self, engine, substrate, fake_remote):
        # The parent (pytest runner) is alive on this host
        owner = f"{socket.gethostname()}:{os.getppid()}:other"
        _hold_flag(substrate, owner, utc_now())

        result = engine.initialize(start_timer=False)

        assert result is not None and result.skipped
        assert _metadata(substrate)["syncInProgress"] is True
        assert _metadata(substrate)["syncOwner"] == owner
        assert fake_remote.calls == []

    def test_initialize_leaves_fresh_flag_of_other_host(self, engine, substrate, fake_remote):
        _hold_flag(substrate, "elsewhere.example:4242:abc", utc_now())

        engine.initialize(start_timer=False)

        assert _metadata(substrate)["syncInProgress"] is True
        assert fake_remote.calls == []

    def test_initialize_clears_aged_out_flag(self, engine, substrate, fake_remote):
        started = (datetime.now(timezone.utc) - STALE_SYNC_AFTER - timedelta(minutes=1)).isoformat()
        _hold_flag(substrate, "elsewhere.example:4242:abc", started)

        result = engine.initialize(start_timer=False)

        assert result.ok
        assert _metadata(substrate)["syncInProgress"] is False

    def test_initialize_clears_flag_of_earlier_process_with_same_pid(self, engine, substrate):
        _hold_flag(substrate, f"{socket.gethostname()}:{os.getpid()}:previous", utc_now())

        result = engine.initialize(start_timer=False)

        assert result.ok
        assert _metadata(substrate)["syncOwner"] == ""

    def test_initialize_skips_sync_when_synced_before(self, engine, substrate, fake_remote):
        substrate.set_string(SYNC_METADATA_KEY, json.dumps({"lastSyncTime": "2025-01-01T00:00:00.000Z"}))
        assert engine.initialize() is None
        assert fake_remote.calls == []

    def test_initialize_is_idempotent(self, engine, fake_remote):
        engine.initialize()
        calls = len(fake_remote.calls)
        assert engine.initialize() is None
        assert len(fake_remote.calls) == calls

    def test_timer_runs_periodic_sync_and_stops(self, snapshots, fake_remote, substrate):
        synced = threading.Event()
        fake_remote.on_list = synced.set
        eng = SyncEngine(snapshots, fake_remote, substrate, interval_seconds=0.05, backup_before_sync=False)
        substrate.set_string(SYNC_METADATA_KEY, json.dumps({"lastSyncTime": "2025-01-01T00:00:00.000Z"}))

        eng.initialize()
        assert synced.wait(5)
        eng.shutdown()

        calls = len(fake_remote.calls)
        threading.Event().wait(0.2)
        assert len(fake_remote.calls) == calls

    def test_timer_survives_failed_cycles(self, snapshots, fake_remote, substrate):
        attempts = []

        def failing():
            attempts.append(1)
            raise RuntimeError("boom")

        fake_remote.on_list = failing
        eng = SyncEngine(snapshots, fake_remote, substrate, interval_seconds=0.02, backup_before_sync=False)
        substrate.set_string(SYNC_METADATA_KEY, json.dumps({"lastSyncTime": "2025-01-01T00:00:00.000Z"}))
        eng.initialize()
        try:
            for _ in range(250):
                if len(attempts) >= 3:
                    break
                threading.Event().wait(0.02)
        finally:
            eng.shutdown()
        assert len(attempts) >= 3
        assert eng.status().error == "boom"


class TestMaintenance:
    def test_force_resync_clears_last_sync(self, engine, substrate, fake_remote):
        engine.perform_sync()
        fake_remote.unavailable = True
        result = engine.force_resync()
        assert not result.ok
        assert engine.status().last_sync is None

    def test_safe_upload_all_pushes_without_merging(self, engine, snapshots, fake_remote, substrate):
        snapshots.save_items([{"id": "a", "title": "local"}])
        snapshots.save_categories([{"id": "c"}])
        fake_remote.items = [{"id": "a", "title": "remote"}, {"id": "r"}]

        result = engine.safe_upload_all()

        assert result.ok
        assert result.items_updated == 1
        assert result.categories_created == 1
        assert snapshots.load_items() == [{"id": "a", "title": "local"}]
        assert next(i for i in fake_remote.items if i["id"] == "a")["title"] == "local"
        assert "lastSyncTime" not in _metadata(substrate) or not _metadata(substrate)["lastSyncTime"]

    def test_restore_from_backup(self, engine, snapshots):
        snapshots.save_items([{"id": "a"}])
        snapshots.create_backup()
        snapshots.save_items([])
        assert engine.restore_from_backup() is True
        assert snapshots.load_items() == [{"id": "a"}]

    def test_reset_metadata(self, engine, substrate):
        engine.perform_sync()
        assert engine.reset_metadata() is True
        assert substrate.get_string(SYNC_METADATA_KEY) is None
        assert engine.status().last_sync is None
