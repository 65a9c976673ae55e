"""
Shared pytest fixtures for lifesync tests.

Provides an in-memory substrate, a scriptable fake remote, and small
Pillow-generated images so tests never touch the network or ~/.lifesync.
"""

import io
import itertools

import pytest

from lifesync.blob_store import BlobStore
from lifesync.codec import IdentityCompressor
from lifesync.errors import RemoteRequestError, RemoteUnavailableError
from lifesync.snapshot_store import SnapshotStore
from lifesync.substrate import MemorySubstrate
from lifesync.sync_engine import SyncEngine
from lifesync.types import BlobFile


class FakeRemote:
    """
    In-memory RemoteRepository with failure switches.

    ``update_item`` on an unknown id fails like a 404, so pushes of new
    items fall through to ``create_item``.
    """

    def __init__(self, items=None, categories=None):
        self.items: list[dict] = list(items or [])
        self.categories: list[dict] = list(categories or [])
        self.unavailable = False
        self.fail_update: set[str] = set()
        self.fail_create: set[str] = set()
        self.calls: list[tuple] = []
        self.on_list = None  # hook run inside list_items

    def _check(self):
        if self.unavailable:
            raise RemoteUnavailableError("remote down")

    def list_items(self) -> list[dict]:
        self.calls.append(("list_items",))
        self._check()
        if self.on_list is not None:
            self.on_list()
        return [dict(i) for i in self.items]

    def list_categories(self) -> list[dict]:
        self.calls.append(("list_categories",))
        self._check()
        return [dict(c) for c in self.categories]

    def create_item(self, data: dict) -> dict:
        self.calls.append(("create_item", data.get("id")))
        self._check()
        if data.get("id") in self.fail_create:
            raise RemoteRequestError("create rejected", status_code=400)
        if any(i.get("id") == data.get("id") for i in self.items):
            raise RemoteRequestError("already exists", status_code=409)
        self.items.append(dict(data))
        return dict(data)

    def update_item(self, id: str, patch: dict) -> dict:
        self.calls.append(("update_item", id))
        self._check()
        if id in self.fail_update:
            raise RemoteRequestError("update rejected", status_code=400)
        for i, item in enumerate(self.items):
            if item.get("id") == id:
                self.items[i] = {**item, **patch}
                return dict(self.items[i])
        raise RemoteRequestError("not found", status_code=404)

    def create_category(self, data: dict) -> dict:
        self.calls.append(("create_category", data.get("id")))
        self._check()
        if any(c.get("id") == data.get("id") for c in self.categories):
            raise RemoteRequestError("already exists", status_code=409)
        self.categories.append(dict(data))
        return dict(data)

    def close(self) -> None:
        pass


class StepClock:
    """Deterministic epoch-ms clock: each call advances by ``step``."""

    def __init__(self, start: int = 1_700_000_000_000, step: int = 1000):
        self._counter = itertools.count(start, step)
        self.last = start

    def __call__(self) -> int:
        self.last = next(self._counter)
        return self.last


def make_image(width: int = 64, height: int = 48, fmt: str = "PNG", color=(200, 30, 30)) -> bytes:
    """Encode a solid-colour image with Pillow."""
    from PIL import Image
    out = io.BytesIO()
    mode = "RGBA" if fmt == "PNG" else "RGB"
    fill = color + (255,) if mode == "RGBA" else color
    Image.new(mode, (width, height), fill).save(out, format=fmt)
    return out.getvalue()


@pytest.fixture
def substrate():
    """Unbounded in-memory substrate."""
    return MemorySubstrate()


@pytest.fixture
def clock():
    return StepClock()


@pytest.fixture
def blob_store(substrate, clock):
    """BlobStore with small limits: 1000-byte items, 4000-byte quota."""
    return BlobStore(
        substrate,
        max_item_bytes=1000,
        max_total_bytes=4000,
        compressor=IdentityCompressor(),
        clock=clock,
    )


@pytest.fixture
def fake_remote():
    return FakeRemote()


@pytest.fixture
def snapshots(substrate):
    return SnapshotStore(substrate)


@pytest.fixture
def engine(snapshots, fake_remote, substrate):
    """SyncEngine with the timer disabled and no pre-sync backups."""
    eng = SyncEngine(
        snapshots, fake_remote, substrate,
        interval_seconds=0, backup_before_sync=False,
    )
    yield eng
    eng.shutdown()


@pytest.fixture
def audio_file():
    def _make(size: int = 300, name: str = "memo.webm") -> BlobFile:
        return BlobFile(data=bytes(i % 251 for i in range(size)), mime_type="audio/webm", filename=name)
    return _make


@pytest.fixture
def image_bytes():
    return make_image
