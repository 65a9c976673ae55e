"""
Data types for the local-first store.

Items and categories stay plain JSON dicts end to end: sync only looks at
``id`` and ``updatedAt``, everything else is opaque payload owned by the
application layer.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional


# Owner-group kinds used by the application
KIND_IMAGE = "image"
KIND_AUDIO = "audio"

# Sorts before every real timestamp
EPOCH_MIN = datetime.min.replace(tzinfo=timezone.utc)

_KIND_RE = re.compile(r'^[a-zA-Z][a-zA-Z0-9-]*$')
MAX_OWNER_ID_LENGTH = 512


def utc_now() -> str:
    """Current UTC timestamp as ISO-8601 with milliseconds and a Z suffix.

    Matches the shape JSON-serialized dates take in the application layer,
    so locally stamped records compare cleanly against remote ones.
    """
    now = datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"


def now_ms() -> int:
    """Current time in epoch milliseconds."""
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def parse_utc_timestamp(ts: str) -> datetime:
    """Parse an ISO timestamp to a timezone-aware UTC datetime.

    Accepts a 'Z' suffix, explicit offsets, and naive values (taken as UTC).
    """
    ts = ts.strip().replace("Z", "+00:00")
    dt = datetime.fromisoformat(ts)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def coerce_timestamp(value: Any) -> datetime:
    """Interpret an ``updatedAt`` value for ordering.

    Strings are ISO-8601, numbers are epoch milliseconds. Missing or
    unparseable values return EPOCH_MIN.
    """
    if value is None or isinstance(value, bool):
        return EPOCH_MIN
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return EPOCH_MIN
    if isinstance(value, str) and value:
        try:
            return parse_utc_timestamp(value)
        except ValueError:
            return EPOCH_MIN
    return EPOCH_MIN


def record_updated_at(record: dict) -> datetime:
    """Last-write-wins key of a record."""
    return coerce_timestamp(record.get("updatedAt"))


def has_record_id(record: dict) -> bool:
    """True unless the id is missing or empty; ``0`` and ``False`` are real ids."""
    record_id = record.get("id")
    return record_id is not None and record_id != ""


def validate_owner_id(owner_id: str) -> None:
    """Owner IDs become part of substrate keys; keep them printable."""
    if not owner_id or len(owner_id) > MAX_OWNER_ID_LENGTH:
        raise ValueError(f"Owner ID must be 1-{MAX_OWNER_ID_LENGTH} characters")
    if any(ord(c) < 0x20 or c == "\x7f" for c in owner_id):
        raise ValueError(f"Owner ID contains control characters: {owner_id!r}")


def validate_kind(kind: str) -> None:
    """Kinds are short identifiers (``image``, ``audio``) without underscores."""
    if not _KIND_RE.match(kind or ""):
        raise ValueError(f"Blob kind must be alphanumeric (hyphens allowed): {kind!r}")


@dataclass(frozen=True)
class BlobFile:
    """An in-memory binary object: the input to put and output of to_files."""
    data: bytes
    mime_type: str
    filename: str = ""

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class StoredBlob:
    """
    One physical blob record in the substrate.

    ``data_url`` is the only source of truth for content; the other fields
    are bookkeeping. ``size`` is the estimated stored footprint used for
    quota accounting, ``timestamp`` (epoch ms) is the eviction key.
    """
    data_url: str
    mime_type: str
    filename: str
    size: int
    original_size: int
    timestamp: int
    compressed: bool = False

    def to_json_dict(self) -> dict:
        return {
            "dataUrl": self.data_url,
            "mimeType": self.mime_type,
            "filename": self.filename,
            "size": self.size,
            "originalSize": self.original_size,
            "timestamp": self.timestamp,
            "compressed": self.compressed,
        }


@dataclass(frozen=True)
class BlobRef:
    """Result of a blob write.

    ``url`` is a durable data URL when ``persisted``; otherwise a transient
    ``blob:`` URL that only resolves inside this process.
    """
    url: str
    persisted: bool
    key: Optional[str] = None
    compressed: bool = False


@dataclass(frozen=True)
class BlobStats:
    """Blob store usage summary."""
    count: int
    total_bytes: int
    available_estimate: int


@dataclass(frozen=True)
class CleanupReport:
    """Result of a maintenance sweep."""
    removed: tuple[str, ...]
    corrupt: int
    bytes_freed: int


@dataclass
class SyncMetadata:
    """Process-wide sync state, persisted in the substrate."""
    last_sync_time: str = ""
    sync_in_progress: bool = False
    conflicts: list[dict] = field(default_factory=list)
    last_error: str = ""
    # "<host>:<pid>" of the process holding the flag, and when it took it
    sync_owner: str = ""
    sync_started_at: str = ""

    def to_json_dict(self) -> dict:
        return {
            "lastSyncTime": self.last_sync_time,
            "syncInProgress": self.sync_in_progress,
            "conflicts": self.conflicts,
            "lastError": self.last_error,
            "syncOwner": self.sync_owner,
            "syncStartedAt": self.sync_started_at,
        }

    @classmethod
    def from_json_dict(cls, data: dict) -> "SyncMetadata":
        conflicts = data.get("conflicts")
        return cls(
            last_sync_time=str(data.get("lastSyncTime") or ""),
            sync_in_progress=bool(data.get("syncInProgress", False)),
            conflicts=list(conflicts) if isinstance(conflicts, list) else [],
            last_error=str(data.get("lastError") or ""),
            sync_owner=str(data.get("syncOwner") or ""),
            sync_started_at=str(data.get("syncStartedAt") or ""),
        )


@dataclass(frozen=True)
class SyncStatus:
    """Sync state for status observers (UI, CLI)."""
    last_sync: Optional[str]
    in_progress: bool
    error: Optional[str]


@dataclass
class SyncResult:
    """Outcome of one sync (or upload) cycle."""
    ok: bool = False
    skipped: bool = False
    items: int = 0
    categories: int = 0
    items_updated: int = 0
    items_created: int = 0
    items_failed: int = 0
    categories_created: int = 0
    conflicts: int = 0
    error: Optional[str] = None
    started_at: str = ""
    finished_at: str = ""

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "skipped": self.skipped,
            "items": self.items,
            "categories": self.categories,
            "items_updated": self.items_updated,
            "items_created": self.items_created,
            "items_failed": self.items_failed,
            "categories_created": self.categories_created,
            "conflicts": self.conflicts,
            "error": self.error,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }


@dataclass
class RehydrationResult:
    """Items after rehydration, with what was restored and what is missing."""
    items: list[dict]
    restored_audio: int = 0
    restored_images: int = 0
    unresolved: list[str] = field(default_factory=list)
