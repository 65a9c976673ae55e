"""
Quota-bounded blob cache on top of the key/value substrate.

Each blob is one JSON record (see StoredBlob) under
``lifesync:blob:{owner}_{kind}_{index}``. An owner (a note, a voice note)
may hold a group of blobs per kind, at contiguous indices starting at 0;
enumeration stops at the first missing index.

The store keeps the total estimated size of all records under
``max_total_bytes`` by evicting the oldest records first. A write that
still cannot fit falls back to a transient ``blob:`` reference that lives
only as long as the process. Public methods never raise for storage
failures: callers always get a usable reference or a cache miss.
"""

import json
import logging
import threading
import uuid
from datetime import timedelta
from typing import Callable, Iterator, Optional

from .codec import IdentityCompressor, compress, decode, encode, estimate_stored_size
from .errors import CorruptRecordError, QuotaExceededError
from .types import (
    BlobFile,
    BlobRef,
    BlobStats,
    CleanupReport,
    StoredBlob,
    now_ms,
    validate_kind,
    validate_owner_id,
)

logger = logging.getLogger(__name__)

BLOB_KEY_PREFIX = "lifesync:blob:"
TRANSIENT_URL_PREFIX = "blob:"

DEFAULT_MAX_ITEM_BYTES = 500 * 1024
DEFAULT_MAX_TOTAL_BYTES = 8 * 1024 * 1024
DEFAULT_MAX_AGE = timedelta(days=7)


def blob_key(owner_id: str, kind: str, index: int) -> str:
    """Substrate key for one member of a blob group."""
    return f"{BLOB_KEY_PREFIX}{owner_id}_{kind}_{index}"


def parse_blob_key(key: str) -> Optional[tuple[str, str, int]]:
    """Split a blob key into ``(owner_id, kind, index)``, or None if malformed.

    Owner IDs may contain underscores; kinds may not.
    """
    if not key.startswith(BLOB_KEY_PREFIX):
        return None
    parts = key[len(BLOB_KEY_PREFIX):].rsplit("_", 2)
    if len(parts) != 3 or not parts[0] or not parts[2].isdigit():
        return None
    return parts[0], parts[1], int(parts[2])


def is_transient_url(url: object) -> bool:
    """True for session-scoped ``blob:`` URLs that do not survive a reload."""
    return isinstance(url, str) and url.startswith(TRANSIENT_URL_PREFIX)


def _parse_record(raw: str) -> StoredBlob:
    """
    Parse and validate one stored record.

    Raises:
        CorruptRecordError: If the JSON or its data URL does not round-trip
    """
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise CorruptRecordError(f"Invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise CorruptRecordError("Record is not an object")

    data_url = data.get("dataUrl")
    payload, mime_type = decode(data_url)
    size = data.get("size")
    timestamp = data.get("timestamp")
    if not isinstance(size, (int, float)) or isinstance(size, bool):
        size = len(data_url) * 3 // 4
    if not isinstance(timestamp, (int, float)) or isinstance(timestamp, bool):
        timestamp = 0
    original_size = data.get("originalSize")
    if not isinstance(original_size, (int, float)) or isinstance(original_size, bool):
        original_size = len(payload)

    return StoredBlob(
        data_url=data_url,
        mime_type=str(data.get("mimeType") or mime_type),
        filename=str(data.get("filename") or ""),
        size=int(size),
        original_size=int(original_size),
        timestamp=int(timestamp),
        compressed=bool(data.get("compressed", False)),
    )


def _eviction_order(
    records: list[tuple[str, StoredBlob]], protected: frozenset[str],
) -> list[tuple[str, StoredBlob]]:
    """Evictable records, oldest first (ties broken by key)."""
    return sorted(
        ((k, r) for k, r in records if k not in protected),
        key=lambda kr: (kr[1].timestamp, kr[0]),
    )


class TransientRegistry:
    """
    Process-lifetime holder for blobs that could not be persisted.

    Hands out ``blob:lifesync/<uuid>`` URLs that resolve only here.
    """

    def __init__(self):
        self._files: dict[str, BlobFile] = {}
        self._lock = threading.Lock()

    def create_url(self, file: BlobFile) -> str:
        url = f"{TRANSIENT_URL_PREFIX}lifesync/{uuid.uuid4().hex}"
        with self._lock:
            self._files[url] = file
        return url

    def resolve(self, url: str) -> Optional[BlobFile]:
        return self._files.get(url)

    def revoke(self, url: str) -> bool:
        with self._lock:
            return self._files.pop(url, None) is not None

    def __len__(self) -> int:
        return len(self._files)


class BlobStore:
    """
    Namespaced, quota-bounded cache of image and audio blobs.

    Example:
        store = BlobStore(MemorySubstrate())
        ref = store.put("note1", "image", 0, BlobFile(data, "image/png", "a.png"))
        urls = store.get_group("note1", "image")
    """

    def __init__(
        self,
        substrate,
        *,
        max_item_bytes: int = DEFAULT_MAX_ITEM_BYTES,
        max_total_bytes: int = DEFAULT_MAX_TOTAL_BYTES,
        compressor=None,
        transient: Optional[TransientRegistry] = None,
        clock: Callable[[], int] = now_ms,
    ):
        """
        Args:
            substrate: Key/value substrate holding the records
            max_item_bytes: Per-blob size above which images are compressed
            max_total_bytes: Quota across all stored blobs
            compressor: Compressor for oversized images (identity if None)
            transient: Registry for non-persisted fallbacks (private if None)
            clock: Epoch-millisecond clock used to stamp records
        """
        if max_item_bytes <= 0 or max_total_bytes <= 0:
            raise ValueError("Blob size limits must be positive")
        self._substrate = substrate
        self.max_item_bytes = max_item_bytes
        self.max_total_bytes = max_total_bytes
        self._compressor = compressor if compressor is not None else IdentityCompressor()
        self._transient = transient if transient is not None else TransientRegistry()
        self._clock = clock

    @property
    def transient(self) -> TransientRegistry:
        return self._transient

    # -------------------------------------------------------------------------
    # Record access
    # -------------------------------------------------------------------------

    def _read(self, key: str) -> Optional[StoredBlob]:
        """Read one record; corrupt or missing records are cache misses."""
        raw = self._substrate.get_string(key)
        if raw is None:
            return None
        try:
            return _parse_record(raw)
        except CorruptRecordError as e:
            logger.debug("Skipping corrupt blob record %s: %s", key, e)
            return None

    def _scan(self) -> list[tuple[str, Optional[StoredBlob]]]:
        """All blob keys with their parsed record (None when corrupt)."""
        return [(key, self._read(key)) for key in self._substrate.list_keys(BLOB_KEY_PREFIX)]

    def _transient_ref(self, file: BlobFile) -> BlobRef:
        return BlobRef(url=self._transient.create_url(file), persisted=False)

    # -------------------------------------------------------------------------
    # Quota
    # -------------------------------------------------------------------------

    def total_bytes(self) -> int:
        """Sum of estimated sizes over all valid records."""
        return sum(rec.size for _, rec in self._scan() if rec is not None)

    def ensure_space(
        self,
        nbytes: int,
        *,
        replacing_key: Optional[str] = None,
        protected: frozenset[str] = frozenset(),
    ) -> bool:
        """
        Make room for ``nbytes`` under the total quota.

        Evicts records oldest first (by creation timestamp) until the new
        blob fits. Corrupt records met during the sweep are removed first.
        A request larger than the whole quota fails without evicting.

        Args:
            nbytes: Estimated size of the pending write
            replacing_key: Key about to be overwritten; its size is not
                counted and it is never evicted
            protected: Keys that must survive (members of a group being
                written)

        Returns:
            True if the write now fits
        """
        entries = self._scan()
        valid = [(k, r) for k, r in entries if r is not None and k != replacing_key]
        current = sum(r.size for _, r in valid)

        if current + nbytes <= self.max_total_bytes:
            return True
        if nbytes > self.max_total_bytes:
            logger.warning(
                "Blob of %.1fKB exceeds total quota of %.1fKB",
                nbytes / 1024, self.max_total_bytes / 1024,
            )
            return False

        for key, rec in entries:
            if rec is None and key != replacing_key:
                self._substrate.remove_key(key)
                logger.info("Removed corrupt blob record %s", key)

        candidates = _eviction_order(valid, protected)
        freed = 0
        evicted = 0
        for key, rec in candidates:
            self._substrate.remove_key(key)
            freed += rec.size
            evicted += 1
            logger.debug("Evicted blob %s (%d bytes, ts=%d)", key, rec.size, rec.timestamp)
            if current - freed + nbytes <= self.max_total_bytes:
                logger.info(
                    "Freed %.1fKB of blob storage (%d evicted)", freed / 1024, evicted,
                )
                return True
        return False

    # -------------------------------------------------------------------------
    # Write Operations
    # -------------------------------------------------------------------------

    def put(self, owner_id: str, kind: str, index: int, file: BlobFile) -> BlobRef:
        """
        Store one blob at ``(owner_id, kind, index)``.

        Oversized images are compressed first. If the blob cannot be
        persisted (quota, substrate full, bad address, any storage error)
        a transient reference is returned instead and a warning logged.
        """
        return self._put(owner_id, kind, index, file, frozenset())

    def _put(self, owner_id: str, kind: str, index: int, file: BlobFile,
             protected: frozenset[str]) -> BlobRef:
        try:
            validate_owner_id(owner_id)
            validate_kind(kind)
            if index < 0:
                raise ValueError(f"Blob index must be >= 0: {index}")
        except ValueError as e:
            logger.warning("Invalid blob address, using transient reference: %s", e)
            return self._transient_ref(file)

        key = blob_key(owner_id, kind, index)
        try:
            processed, compressed = file, False
            if file.size > self.max_item_bytes:
                logger.info(
                    "Compressing large blob %s (%.1fKB)", key, file.size / 1024,
                )
                processed, compressed = compress(file, self._compressor)

            data_url = encode(processed.data, processed.mime_type)
            estimated = estimate_stored_size(data_url)

            if not self.ensure_space(estimated, replacing_key=key, protected=protected):
                logger.warning(
                    "Not enough blob storage for %s (%.1fKB), using transient reference",
                    key, estimated / 1024,
                )
                return self._fallback(owner_id, kind, index, file)

            record = StoredBlob(
                data_url=data_url,
                mime_type=processed.mime_type,
                filename=file.filename,
                size=estimated,
                original_size=file.size,
                timestamp=self._clock(),
                compressed=compressed,
            )
            self._write_evicting(key, json.dumps(record.to_json_dict()), protected)
        except QuotaExceededError as e:
            logger.warning("Substrate full storing %s, using transient reference: %s", key, e)
            return self._fallback(owner_id, kind, index, file)
        except Exception as e:
            logger.warning("Failed to store blob %s, using transient reference: %s", key, e)
            return self._fallback(owner_id, kind, index, file)

        logger.info(
            "Stored blob %s (%.1fKB%s)", key, estimated / 1024,
            ", compressed" if compressed else "",
        )
        return BlobRef(url=data_url, persisted=True, key=key, compressed=compressed)

    def _write_evicting(self, key: str, value: str, protected: frozenset[str]) -> None:
        """
        Write one record, evicting oldest blobs while the substrate is full.

        The substrate also holds snapshots and backups, so it can run out
        before the blob quota does.

        Raises:
            QuotaExceededError: If nothing evictable is left and it still fails
        """
        candidates: Optional[list[tuple[str, StoredBlob]]] = None
        while True:
            try:
                self._substrate.set_string(key, value)
                return
            except QuotaExceededError:
                if candidates is None:
                    valid = [(k, r) for k, r in self._scan() if r is not None and k != key]
                    candidates = _eviction_order(valid, protected)
                if not candidates:
                    raise
                victim, rec = candidates.pop(0)
                self._substrate.remove_key(victim)
                logger.debug(
                    "Evicted blob %s (%d bytes, ts=%d) to free substrate space",
                    victim, rec.size, rec.timestamp,
                )

    def _fallback(self, owner_id: str, kind: str, index: int, file: BlobFile) -> BlobRef:
        """
        Transient reference for a blob that could not be stored.

        Whatever was stored at ``index`` and after is superseded, so it is
        removed; a reload must not resurrect an older version.
        """
        try:
            removed = self._truncate_group(owner_id, kind, index)
            if removed:
                logger.info(
                    "Dropped %d superseded %s blobs for %s from index %d",
                    removed, kind, owner_id, index,
                )
        except Exception as e:
            logger.warning("Could not drop superseded blobs for %s: %s", owner_id, e)
        return self._transient_ref(file)

    def put_group(self, owner_id: str, kind: str, files: list[BlobFile]) -> list[BlobRef]:
        """
        Store a whole group at indices 0..n-1, replacing any previous group.

        Members already written are never evicted to make room for later
        ones. Once one member falls back to transient storage the rest do
        too; the fallback removes stored records from that index on, so the
        stored group stays contiguous.
        """
        # Stale tail of an older, longer group
        self._truncate_group(owner_id, kind, len(files))

        refs: list[BlobRef] = []
        written: set[str] = set()
        failed = False
        for i, file in enumerate(files):
            if failed:
                ref = self._transient_ref(file)
            else:
                ref = self._put(owner_id, kind, i, file, frozenset(written))
                if ref.persisted:
                    written.add(ref.key)
                else:
                    failed = True
            refs.append(ref)

        logger.info("Stored %d %s blobs for %s", len(refs), kind, owner_id)
        return refs

    def _truncate_group(self, owner_id: str, kind: str, start: int) -> int:
        """Remove the contiguous run of keys from ``start`` to the first miss."""
        removed = 0
        index = start
        while True:
            key = blob_key(owner_id, kind, index)
            if self._substrate.get_string(key) is None:
                break
            self._substrate.remove_key(key)
            removed += 1
            index += 1
        return removed

    def remove(self, owner_id: str, kind: str) -> int:
        """
        Remove a whole group.

        Walks from index 0 until the first missing key; corrupt members are
        removed too. Returns the number of records removed.
        """
        removed = self._truncate_group(owner_id, kind, 0)
        if removed:
            logger.info("Removed %d stored %s blobs for %s", removed, kind, owner_id)
        return removed

    # -------------------------------------------------------------------------
    # Read Operations
    # -------------------------------------------------------------------------

    def get(self, owner_id: str, kind: str, index: int) -> Optional[StoredBlob]:
        return self._read(blob_key(owner_id, kind, index))

    def enumerate_group(self, owner_id: str, kind: str) -> Iterator[tuple[int, StoredBlob]]:
        """
        Yield ``(index, record)`` for a group, probing 0, 1, 2, ...

        Stops at the first missing (or corrupt) index and never probes past
        it. This is the only place the group-probing convention lives.
        """
        index = 0
        while True:
            record = self.get(owner_id, kind, index)
            if record is None:
                return
            yield index, record
            index += 1

    def get_group(self, owner_id: str, kind: str) -> list[str]:
        """Durable data URLs of a group, in index order."""
        return [record.data_url for _, record in self.enumerate_group(owner_id, kind)]

    def has(self, owner_id: str, kind: str) -> bool:
        return self.get(owner_id, kind, 0) is not None

    def to_files(self, owner_id: str, kind: str) -> list[BlobFile]:
        """Decode a group back into files, e.g. to re-edit a note."""
        files = []
        for _, record in self.enumerate_group(owner_id, kind):
            data, mime_type = decode(record.data_url)
            files.append(BlobFile(data=data, mime_type=record.mime_type or mime_type, filename=record.filename))
        return files

    def resolve_transient(self, url: str) -> Optional[BlobFile]:
        """Look up a transient reference handed out by this process."""
        return self._transient.resolve(url)

    def list_keys(self, kind: Optional[str] = None) -> list[str]:
        """List stored blob keys, optionally restricted to one kind."""
        keys = self._substrate.list_keys(BLOB_KEY_PREFIX)
        if kind is None:
            return keys
        result = []
        for key in keys:
            parsed = parse_blob_key(key)
            if parsed is not None and parsed[1] == kind:
                result.append(key)
        return result

    def stats(self) -> BlobStats:
        """
        Usage summary.

        ``available_estimate`` is the substrate's remaining capacity when it
        has one, otherwise the remaining blob quota.
        """
        valid = [rec for _, rec in self._scan() if rec is not None]
        total = sum(rec.size for rec in valid)
        capacity = getattr(self._substrate, "capacity_bytes", None)
        if capacity is not None:
            available = max(0, capacity - self._substrate.approximate_total_bytes())
        else:
            available = max(0, self.max_total_bytes - total)
        return BlobStats(count=len(valid), total_bytes=total, available_estimate=available)

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    def sweep_corrupt(self) -> int:
        """Remove records that no longer parse. Returns the count removed."""
        removed = 0
        for key, rec in self._scan():
            if rec is None:
                self._substrate.remove_key(key)
                removed += 1
        if removed:
            logger.info("Swept %d corrupt blob records", removed)
        return removed

    def cleanup_older_than(self, max_age: timedelta = DEFAULT_MAX_AGE) -> CleanupReport:
        """Remove records created more than ``max_age`` ago, plus corrupt ones."""
        cutoff = self._clock() - int(max_age.total_seconds() * 1000)
        removed: list[str] = []
        corrupt = 0
        freed = 0
        for key, rec in self._scan():
            if rec is None:
                corrupt += 1
            elif rec.timestamp >= cutoff:
                continue
            else:
                freed += rec.size
            self._substrate.remove_key(key)
            removed.append(key)
        if removed:
            logger.info(
                "Cleaned up %d blob records (%d corrupt), freed %.1fKB",
                len(removed), corrupt, freed / 1024,
            )
        return CleanupReport(removed=tuple(removed), corrupt=corrupt, bytes_freed=freed)
