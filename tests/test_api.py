"""Tests for lifesync.api: LifeStore wiring and lifecycle."""

import logging

import pytest

from lifesync.api import LifeStore
from lifesync.backend import NullRemoteRepository, create_substrate
from lifesync.codec import IdentityCompressor
from lifesync.config import StoreConfig, load_or_create_config
from lifesync.errors import ConfigError
from lifesync.substrate import MemorySubstrate, SqliteSubstrate
from lifesync.types import BlobFile


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for var in ("LIFESYNC_STORE_PATH", "LIFESYNC_API_URL", "LIFESYNC_API_KEY"):
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def life_store(tmp_path, fake_remote):
    config = StoreConfig(path=tmp_path)
    config.sync.interval_seconds = 0
    store = LifeStore(
        config=config,
        substrate=MemorySubstrate(),
        remote=fake_remote,
        compressor=IdentityCompressor(),
    )
    yield store
    store.close()


class TestWiring:
    def test_opens_sqlite_store_from_path(self, tmp_path):
        with LifeStore(tmp_path, ops_log=False) as store:
            assert isinstance(store.substrate, SqliteSubstrate)
            assert isinstance(store._remote, NullRemoteRepository)
            assert store.blobs.max_total_bytes == store.config.blobs.max_total_bytes
        assert (tmp_path / "lifesync.toml").exists()
        assert (tmp_path / "lifesync.db").exists()

    def test_memory_backend(self, tmp_path):
        config = load_or_create_config(tmp_path)
        config.backend = "memory"
        assert isinstance(create_substrate(config), MemorySubstrate)

    def test_unknown_backend(self, tmp_path):
        config = StoreConfig(path=tmp_path, backend="no-such-backend")
        with pytest.raises(ConfigError, match="Unknown substrate backend"):
            create_substrate(config)

    def test_sync_without_remote_fails_cleanly(self, tmp_path):
        with LifeStore(tmp_path, ops_log=False) as store:
            result = store.sync.manual_sync()
        assert not result.ok
        assert "No remote configured" in result.error


class TestApplicationHelpers:
    def test_store_and_rehydrate_audio(self, life_store, audio_file):
        ref = life_store.store_audio("v1", audio_file(40))
        life_store.snapshots.upsert_item({"id": "v1", "type": "voiceNote", "attachment": "blob:dead"})

        items = life_store.load_items()

        assert items[0]["attachment"] == ref.url

    def test_store_images(self, life_store):
        refs = life_store.store_images("n1", [BlobFile(b"a", "image/png"), BlobFile(b"b", "image/png")])
        assert all(r.persisted for r in refs)
        assert len(life_store.blobs.get_group("n1", "image")) == 2

    def test_delete_item_removes_blobs(self, life_store, audio_file):
        life_store.snapshots.upsert_item({"id": "v1", "type": "voiceNote"})
        life_store.store_audio("v1", audio_file(40))

        assert life_store.delete_item("v1") is True
        assert not life_store.blobs.has("v1", "audio")
        assert life_store.snapshots.load_items() == []

    def test_start_runs_first_sync(self, life_store, fake_remote):
        fake_remote.items = [{"id": "r1"}]
        result = life_store.start()
        assert result.ok
        assert [i["id"] for i in life_store.snapshots.load_items()] == ["r1"]


class TestDefaultQuotas:
    def test_blob_quota_evicts_before_substrate_fills(self, tmp_path):
        mib = 1024 * 1024
        with LifeStore(tmp_path, compressor=IdentityCompressor(), ops_log=False) as store:
            for i in range(10):
                ref = store.store_images(f"img{i}", [BlobFile(bytes(int(0.79 * mib)), "image/jpeg")])[0]
                assert ref.persisted

            ref = store.store_images("new", [BlobFile(bytes(mib // 2), "image/jpeg")])[0]

            assert ref.persisted
            assert not store.blobs.has("img0", "image")
            assert store.blobs.has("img9", "image")
            assert store.blobs.stats().total_bytes <= store.config.blobs.max_total_bytes
            # Room is left for the snapshots
            store.snapshots.upsert_item({"id": "n1", "type": "note", "content": "x" * 200_000})

    def test_many_small_images_fill_blob_quota(self, tmp_path):
        with LifeStore(tmp_path, compressor=IdentityCompressor(), ops_log=False) as store:
            for i in range(60):
                store.store_images(f"img{i}", [BlobFile(bytes(150 * 1024), "image/jpeg")])

            stats = store.blobs.stats()
            assert stats.total_bytes > store.config.blobs.max_total_bytes - 200 * 1024
            assert store.blobs.has("img59", "image")
            assert not store.blobs.has("img0", "image")


class TestLifecycle:
    def test_close_removes_ops_log_handler(self, tmp_path):
        lifesync_logger = logging.getLogger("lifesync")
        before = list(lifesync_logger.handlers)
        store = LifeStore(tmp_path)
        assert len(lifesync_logger.handlers) == len(before) + 1
        store.close()
        assert lifesync_logger.handlers == before
        assert (tmp_path / "lifesync-ops.log").exists()

    def test_close_is_idempotent(self, life_store):
        life_store.close()
        life_store.close()
