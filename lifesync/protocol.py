"""
Protocol definitions for the store's collaborators.

Defines interface contracts at the seams that vary by deployment:
- Substrate: the byte-bounded key/value store the process runs on
  (SQLite locally, anything else via the ``lifesync.substrates`` entry point)
- Compressor: lossy image transform used by the blob store
- RemoteRepository: the hosted source of truth the sync engine reconciles with
"""

from typing import Optional, Protocol, runtime_checkable


@runtime_checkable
class Substrate(Protocol):
    """
    Persistent string key/value store with finite capacity.

    Writes are atomic per key. ``set_string`` raises QuotaExceededError
    when the value does not fit; the previous value is left intact.
    """

    capacity_bytes: Optional[int]

    def get_string(self, key: str) -> Optional[str]: ...

    def set_string(self, key: str, value: str) -> None: ...

    def remove_key(self, key: str) -> bool: ...

    def list_keys(self, prefix: str = "") -> list[str]: ...

    def approximate_total_bytes(self) -> int: ...

    def close(self) -> None: ...


@runtime_checkable
class Compressor(Protocol):
    """
    Lossy transform applied to oversized blobs.

    Must never raise: on any failure return the input unchanged.
    """

    def compress(self, data: bytes, mime_type: str) -> tuple[bytes, str]: ...


@runtime_checkable
class RemoteRepository(Protocol):
    """
    The hosted source of truth for items and categories.

    Every failure surfaces as a RemoteError (or subclass) so callers can
    tell it apart from success. "Already exists" is not distinguished from
    other create failures.
    """

    def list_items(self) -> list[dict]: ...

    def list_categories(self) -> list[dict]: ...

    def create_item(self, data: dict) -> dict: ...

    def update_item(self, id: str, patch: dict) -> dict: ...

    def create_category(self, data: dict) -> dict: ...
