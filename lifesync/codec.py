"""
Blob codec: self-describing text encoding and lossy image compression.

Blobs are stored as data URLs (``data:<mime>;base64,<payload>``) so each
record carries its own MIME type and can be handed straight back to a
renderer. Oversized raster images are shrunk and re-encoded as JPEG before
storage; audio is never touched.
"""

import base64
import binascii
import io
import logging

from .errors import CorruptRecordError
from .types import BlobFile

logger = logging.getLogger(__name__)

DATA_URL_PREFIX = "data:"
_BASE64_MARKER = ";base64"

DEFAULT_MAX_DIMENSION = 1200
DEFAULT_QUALITY = 0.7
COMPRESSED_MIME_TYPE = "image/jpeg"

# Raster formats the compressor will attempt; anything else passes through
_COMPRESSIBLE_TYPES = frozenset({
    "image/jpeg", "image/jpg", "image/png", "image/webp",
    "image/bmp", "image/gif", "image/tiff",
})


def is_data_url(value: object) -> bool:
    """Cheap shape check; use decode() for full validation."""
    return isinstance(value, str) and value.startswith(DATA_URL_PREFIX)


def encode(data: bytes, mime_type: str) -> str:
    """Encode bytes as a base64 data URL carrying its MIME type."""
    payload = base64.b64encode(data).decode("ascii")
    return f"{DATA_URL_PREFIX}{mime_type}{_BASE64_MARKER},{payload}"


def decode(data_url: str) -> tuple[bytes, str]:
    """
    Decode a data URL back to ``(bytes, mime_type)``.

    Raises:
        CorruptRecordError: If the value is not a well-formed base64 data URL
    """
    if not is_data_url(data_url):
        raise CorruptRecordError("Not a data URL")
    # base64 never contains a comma, so split on the last one
    header, sep, payload = data_url.rpartition(",")
    if not sep or not header.endswith(_BASE64_MARKER):
        raise CorruptRecordError("Data URL is missing its base64 payload")
    mime_type = header[len(DATA_URL_PREFIX):-len(_BASE64_MARKER)]
    try:
        data = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise CorruptRecordError(f"Invalid base64 payload: {e}") from e
    return data, mime_type


def estimate_stored_size(data_url: str) -> int:
    """Estimated byte footprint of a stored data URL (base64 is 4/3 of raw)."""
    return len(data_url) * 3 // 4


def substrate_footprint(nbytes: int) -> int:
    """Substrate bytes needed to hold ``nbytes`` of blobs as base64 UTF-16 text."""
    return nbytes * 8 // 3


def is_compressible(mime_type: str) -> bool:
    return mime_type.lower() in _COMPRESSIBLE_TYPES


class IdentityCompressor:
    """Compressor that never changes anything (tests, headless hosts)."""

    def compress(self, data: bytes, mime_type: str) -> tuple[bytes, str]:
        return data, mime_type


class PillowCompressor:
    """
    Shrink and re-encode raster images with Pillow.

    Images whose longer side exceeds ``max_dimension`` are scaled down,
    preserving aspect ratio, so that side equals ``max_dimension``. The
    result is always re-encoded as JPEG at ``quality`` (0-1).
    """

    def __init__(self, max_dimension: int = DEFAULT_MAX_DIMENSION, quality: float = DEFAULT_QUALITY):
        if max_dimension <= 0:
            raise ValueError("max_dimension must be positive")
        if not 0 < quality <= 1:
            raise ValueError("quality must be in (0, 1]")
        self.max_dimension = max_dimension
        self.quality = quality

    def compress(self, data: bytes, mime_type: str) -> tuple[bytes, str]:
        if not is_compressible(mime_type):
            return data, mime_type
        from PIL import Image

        try:
            with Image.open(io.BytesIO(data)) as img:
                img.load()
                width, height = img.size
                if width > self.max_dimension or height > self.max_dimension:
                    if width > height:
                        new_size = (self.max_dimension, max(1, round(height * self.max_dimension / width)))
                    else:
                        new_size = (max(1, round(width * self.max_dimension / height)), self.max_dimension)
                    img = img.resize(new_size, Image.Resampling.LANCZOS)
                # JPEG has no alpha or palette
                if img.mode not in ("RGB", "L"):
                    img = img.convert("RGB")
                out = io.BytesIO()
                img.save(out, format="JPEG", quality=round(self.quality * 100), optimize=True)
        except Exception as e:
            logger.debug("Image compression failed, keeping original: %s", e)
            return data, mime_type
        return out.getvalue(), COMPRESSED_MIME_TYPE


def compress(file: BlobFile, compressor) -> tuple[BlobFile, bool]:
    """
    Run a file through a compressor.

    Returns the (possibly new) file and whether the content changed.
    Audio and other non-raster types come back untouched.
    """
    if not file.mime_type.lower().startswith("image/"):
        return file, False
    try:
        data, mime_type = compressor.compress(file.data, file.mime_type)
    except Exception as e:
        # Third-party compressors may raise
        logger.debug("Compressor raised, keeping original: %s", e)
        return file, False
    if data == file.data and mime_type == file.mime_type:
        return file, False
    return BlobFile(data=data, mime_type=mime_type, filename=file.filename), True
