"""Lacquer — capture image reference normalization.

Two ingestion paths end up as an ImageAsset row:
  1. http(s) URL (already uploaded by the client) → stored as-is
  2. data: URL → decoded, SHA-256 checksummed, stored under
     inline://capture/{captureId}/{n}

blob: URLs are object URLs local to the browser tab that created them and are
rejected before anything is written.
"""
import base64
import binascii
import hashlib
import logging
import mimetypes
import re
from typing import Optional
from urllib.parse import unquote_to_bytes, urlparse

from orchestrator.capture_types import ImageAsset
from orchestrator.errors import InputError

logger = logging.getLogger("lacquer.capture.images")

INLINE_SCHEME = "inline"

_DATA_URL_RE = re.compile(
    r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)?(?P<params>(?:;[^,;]+)*?)(?P<base64>;base64)?,(?P<data>.*)$",
    re.IGNORECASE | re.DOTALL,
)


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def inline_locator(capture_id: str, sequence: int) -> str:
    return f"{INLINE_SCHEME}://capture/{capture_id}/{sequence}"


def url_scheme(url: str) -> str:
    return urlparse(url).scheme.lower()


def decode_data_url(url: str, max_bytes: Optional[int] = None) -> tuple:
    """Return (bytes, mime_type) for a data: URL. Raises InputError."""
    m = _DATA_URL_RE.match(url)
    if not m:
        raise InputError("imageBlobUrl is not a valid data URL")
    mime = (m.group("mime") or "application/octet-stream").lower()
    payload = m.group("data")
    if m.group("base64"):
        try:
            data = base64.b64decode("".join(payload.split()), validate=True)
        except (binascii.Error, ValueError):
            raise InputError("imageBlobUrl data URL is not valid base64")
    else:
        data = unquote_to_bytes(payload)
    if not data:
        raise InputError("imageBlobUrl data URL is empty")
    if max_bytes is not None and len(data) > max_bytes:
        raise InputError(f"Inline image is {len(data)} bytes; limit is {max_bytes}")
    return data, mime


SUPPORTED_SCHEMES = ("data", "http", "https")


def check_reference(url) -> str:
    """Return the scheme of an acceptable image URL or raise InputError."""
    if not isinstance(url, str) or not url.strip():
        raise InputError("imageBlobUrl must be a non-empty string")
    scheme = url_scheme(url.strip())
    if scheme == "blob":
        raise InputError(
            "imageBlobUrl is a browser-local blob: URL the server cannot read; "
            "send the image as a data URL or upload it first"
        )
    if scheme not in SUPPORTED_SCHEMES:
        raise InputError(f"imageBlobUrl scheme '{scheme or '(none)'}' is not supported")
    return scheme


def normalize_image_reference(url, capture_id: str, sequence: int,
                              max_bytes: Optional[int] = None) -> ImageAsset:
    """Turn a client-supplied image URL into an unsaved ImageAsset."""
    scheme = check_reference(url)
    url = url.strip()

    if scheme == "data":
        data, mime = decode_data_url(url, max_bytes=max_bytes)
        asset = ImageAsset(
            id=None,
            storage_url=inline_locator(capture_id, sequence),
            checksum_sha256=sha256_hex(data),
            byte_size=len(data),
            mime_type=mime,
            content=data,
        )
        logger.debug(f"Normalized data URL for capture {capture_id}: {asset.byte_size} bytes, sha256={asset.checksum_sha256[:12]}")
        return asset

    mime, _ = mimetypes.guess_type(urlparse(url).path)
    return ImageAsset(id=None, storage_url=url, mime_type=mime)


def is_dereferenceable(asset: Optional[ImageAsset]) -> bool:
    """True if the server can read this image's bytes itself."""
    if asset is None:
        return False
    if asset.content:
        return True
    return url_scheme(asset.storage_url or "") in ("http", "https")
