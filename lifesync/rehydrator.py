"""
Reattach durable blob references to items after a reload.

Items reference their audio and images by owner id. Transient ``blob:``
URLs stored on an item die with the process that created them, so after a
reload the rehydrator looks the owner's blob groups up again and rewrites
the references to durable data URLs. Content that cannot be found is
flagged on the item, never dropped.
"""

import copy
import logging

from .blob_store import is_transient_url
from .types import KIND_AUDIO, KIND_IMAGE, BlobFile, RehydrationResult

logger = logging.getLogger(__name__)


def _metadata(item: dict) -> dict:
    metadata = item.get("metadata")
    if not isinstance(metadata, dict):
        metadata = {}
        item["metadata"] = metadata
    return metadata


def _is_durable(url: object) -> bool:
    return isinstance(url, str) and bool(url) and not is_transient_url(url)


def _legacy_image_urls(metadata: dict) -> list[str]:
    urls = metadata.get("imageUrls")
    candidates = list(urls) if isinstance(urls, list) else []
    single = metadata.get("imageUrl")
    if single and single not in candidates:
        candidates.append(single)
    return [u for u in candidates if _is_durable(u)]


class Rehydrator:
    """Restores audio and image references on items from a BlobStore."""

    def __init__(self, blob_store):
        self._blobs = blob_store

    def rehydrate(self, items: list[dict]) -> RehydrationResult:
        """
        Return deep copies of ``items`` with blob references restored.

        The input list and its items are not modified.
        """
        result = RehydrationResult(items=copy.deepcopy(items))
        for item in result.items:
            if not isinstance(item, dict):
                continue
            if item.get("type") == "voiceNote":
                self._rehydrate_audio(item, result)
            metadata = item.get("metadata")
            if isinstance(metadata, dict) and metadata.get("hasImage"):
                self._rehydrate_images(item, result)

        if result.restored_audio or result.restored_images or result.unresolved:
            logger.info(
                "Rehydrated %d voice notes and %d image notes (%d unresolved)",
                result.restored_audio, result.restored_images, len(result.unresolved),
            )
        return result

    def _rehydrate_audio(self, item: dict, result: RehydrationResult) -> None:
        metadata = _metadata(item)
        owner_id = metadata.get("audioStorageId") or item.get("id")
        urls = self._blobs.get_group(owner_id, KIND_AUDIO) if owner_id else []
        if urls:
            item["attachment"] = urls[0]
            metadata["audioStorageId"] = owner_id
            metadata.pop("audioUnavailable", None)
            result.restored_audio += 1
        elif _is_durable(item.get("attachment")):
            pass
        else:
            metadata["audioUnavailable"] = True
            result.unresolved.append(item.get("id"))
            logger.debug("Audio unavailable for item %s", item.get("id"))

    def _rehydrate_images(self, item: dict, result: RehydrationResult) -> None:
        metadata = item["metadata"]
        owner_id = metadata.get("imageStorageId") or item.get("id")
        urls = self._blobs.get_group(owner_id, KIND_IMAGE) if owner_id else []
        if urls:
            metadata["imageStorageId"] = owner_id
            result.restored_images += 1
        else:
            urls = _legacy_image_urls(metadata)
        if urls:
            metadata["imageUrls"] = urls
            metadata["imageCount"] = len(urls)
            metadata.pop("imagesUnavailable", None)
        else:
            metadata["imagesUnavailable"] = True
            result.unresolved.append(item.get("id"))
            logger.debug("Images unavailable for item %s", item.get("id"))

    def persist_transient(self, items: list[dict]) -> list[dict]:
        """
        Move attachments still held as transient URLs into durable storage.

        Only URLs this process can still resolve are migrated. Returns deep
        copies of the items with references rewritten.
        """
        migrated = copy.deepcopy(items)
        count = 0
        for item in migrated:
            if not isinstance(item, dict) or not item.get("id"):
                continue
            if self._persist_audio(item):
                count += 1
            if self._persist_images(item):
                count += 1
        if count:
            logger.info("Persisted transient attachments for %d items", count)
        return migrated

    def _persist_audio(self, item: dict) -> bool:
        attachment = item.get("attachment")
        if item.get("type") != "voiceNote" or not is_transient_url(attachment):
            return False
        file = self._blobs.resolve_transient(attachment)
        if file is None:
            return False
        ref = self._blobs.put(item["id"], KIND_AUDIO, 0, file)
        if not ref.persisted:
            return False
        item["attachment"] = ref.url
        _metadata(item)["audioStorageId"] = item["id"]
        self._blobs.transient.revoke(attachment)
        return True

    def _persist_images(self, item: dict) -> bool:
        metadata = item.get("metadata")
        if not isinstance(metadata, dict) or not isinstance(metadata.get("imageUrls"), list):
            return False
        transient = [u for u in metadata["imageUrls"] if is_transient_url(u)]
        if not transient:
            return False
        files: list[BlobFile] = []
        for url in transient:
            file = self._blobs.resolve_transient(url)
            if file is not None:
                files.append(file)
        if not files:
            return False
        refs = self._blobs.put_group(item["id"], KIND_IMAGE, files)
        if not any(ref.persisted for ref in refs):
            return False
        metadata["imageUrls"] = [ref.url for ref in refs]
        metadata["imageCount"] = len(refs)
        metadata["imageStorageId"] = item["id"]
        if all(ref.persisted for ref in refs):
            for url in transient:
                self._blobs.transient.revoke(url)
        return True
