"""Media storage for avatars and post attachments.

The services only rely on the two-method contract of `MediaStore`:
`upload_image` returns the public URL plus a deletion handle and
`delete_file` removes the object again. `LocalMediaStore` keeps the
images on disk under `MEDIA_ROOT`; the FastAPI app serves that folder
under `MEDIA_BASE_URL`.
"""

from __future__ import annotations

import io
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from uuid import uuid4

from PIL import Image, UnidentifiedImageError

from .config import settings

logger = logging.getLogger("forum.media")

_FORMAT_SUFFIX = {"JPEG": ".jpg", "PNG": ".png", "GIF": ".gif", "WEBP": ".webp", "BMP": ".bmp"}
_HANDLE_RE = re.compile(r"^[0-9a-f]{32}\.[a-z]+$")


class MediaStoreError(Exception):
    """Raised when the store cannot accept or remove an object."""


@dataclass(frozen=True)
class ImageUpload:
    """Raw image bytes received from a client."""
    data: bytes
    filename: str = ""


@dataclass(frozen=True)
class UploadedFile:
    url: str
    deletion_handle: str


class MediaStore:
    """Interface of an external image store."""

    def upload_image(self, data: bytes, filename: str = "") -> UploadedFile:
        raise NotImplementedError

    def delete_file(self, deletion_handle: str) -> bool:
        raise NotImplementedError


def sniff_image_format(data: bytes) -> str:
    """Return the Pillow format name of `data` or raise `MediaStoreError`."""
    if not data:
        raise MediaStoreError("empty upload")
    try:
        with Image.open(io.BytesIO(data)) as img:
            fmt = img.format
            img.verify()
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError) as exc:
        raise MediaStoreError("unsupported file content; expected an image") from exc
    if fmt not in _FORMAT_SUFFIX:
        raise MediaStoreError(f"unsupported image format: {fmt}")
    return fmt


class LocalMediaStore(MediaStore):
    """Store images as files in a local directory."""

    def __init__(self, root: Path | None = None, base_url: str | None = None, max_bytes: int | None = None):
        self.root = Path(root) if root is not None else settings.MEDIA_ROOT
        self.base_url = (base_url if base_url is not None else settings.MEDIA_BASE_URL).rstrip("/")
        self.max_bytes = max_bytes if max_bytes is not None else settings.MAX_UPLOAD_BYTES

    def upload_image(self, data: bytes, filename: str = "") -> UploadedFile:
        if len(data) > self.max_bytes:
            raise MediaStoreError("file too large")
        fmt = sniff_image_format(data)
        handle = f"{uuid4().hex}{_FORMAT_SUFFIX[fmt]}"
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            (self.root / handle).write_bytes(data)
        except OSError as exc:
            raise MediaStoreError(f"could not write {handle}: {exc}") from exc
        logger.info("media_uploaded handle=%s bytes=%d source=%s", handle, len(data), filename or "-")
        return UploadedFile(url=f"{self.base_url}/{handle}", deletion_handle=handle)

    def delete_file(self, deletion_handle: str) -> bool:
        if not _HANDLE_RE.match(deletion_handle or ""):
            raise MediaStoreError(f"invalid deletion handle: {deletion_handle!r}")
        target = self.root / deletion_handle
        if not target.exists():
            return False
        try:
            target.unlink()
        except OSError as exc:
            raise MediaStoreError(f"could not delete {deletion_handle}: {exc}") from exc
        logger.info("media_deleted handle=%s", deletion_handle)
        return True


_default_store: MediaStore | None = None


def get_media_store() -> MediaStore:
    """FastAPI dependency returning the process-wide media store."""
    global _default_store
    if _default_store is None:
        _default_store = LocalMediaStore()
    return _default_store
