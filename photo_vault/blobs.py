"""Blob store for uploaded images: a directory served under /files."""

import base64
import io
import logging
import mimetypes
from pathlib import Path, PurePosixPath

from PIL import Image, UnidentifiedImageError

from config import PUBLIC_BASE_URL

logger = logging.getLogger(__name__)

FILES_ROUTE = "/files"

_FORMAT_TYPES = {
    "JPEG": "image/jpeg",
    "PNG": "image/png",
    "WEBP": "image/webp",
    "GIF": "image/gif",
    "HEIF": "image/heif",
}


class BlobError(Exception):
    pass


def guess_extension(content_type: str) -> str:
    """File extension for a Content-Type header, defaulting to jpg."""
    if "png" in content_type:
        return "png"
    if "webp" in content_type:
        return "webp"
    if "gif" in content_type:
        return "gif"
    return "jpg"


def sniff_content_type(data: bytes) -> str | None:
    """Image MIME type from the bytes themselves, or None if not an image."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            fmt = img.format
            img.verify()
    except (UnidentifiedImageError, OSError, SyntaxError):
        return None
    return _FORMAT_TYPES.get(fmt or "", "application/octet-stream")


class BlobStore:
    def __init__(self, root: Path, base_url: str = PUBLIC_BASE_URL):
        self._root = root.resolve()
        self._root.mkdir(parents=True, exist_ok=True)
        self._base_url = base_url.rstrip("/")

    @property
    def root(self) -> Path:
        return self._root

    def _resolve(self, path: str) -> Path:
        rel = PurePosixPath(path)
        if rel.is_absolute() or ".." in rel.parts or not rel.parts:
            raise BlobError(f"Invalid blob path: {path!r}")
        return self._root.joinpath(*rel.parts)

    def upload(self, path: str, data: bytes, content_type: str | None = None) -> str:
        """Store data at path. Returns the sniffed content type.

        Existing blobs are never overwritten.
        """
        sniffed = sniff_content_type(data)
        if sniffed is None:
            raise BlobError(f"Not an image: {path}")
        if content_type and content_type.split(";")[0] != sniffed:
            logger.debug("Declared %s for %s, content is %s", content_type, path, sniffed)

        dest = self._resolve(path)
        if dest.exists():
            raise BlobError(f"Blob already exists: {path}")
        dest.parent.mkdir(parents=True, exist_ok=True)
        tmp = dest.with_name(dest.name + ".tmp")
        tmp.write_bytes(data)
        tmp.replace(dest)
        logger.info("Stored blob %s (%d bytes, %s)", path, len(data), sniffed)
        return sniffed

    def public_url(self, path: str) -> str:
        return f"{self._base_url}{FILES_ROUTE}/{path}"

    def remove(self, paths: list[str]) -> int:
        removed = 0
        for path in paths:
            target = self._resolve(path)
            if target.exists():
                target.unlink()
                removed += 1
        return removed

    def local_path(self, url: str) -> Path | None:
        """Map a public URL issued by this store back to the file, if present."""
        prefix = f"{self._base_url}{FILES_ROUTE}/"
        if not url.startswith(prefix):
            return None
        try:
            target = self._resolve(url[len(prefix):])
        except BlobError:
            return None
        return target if target.is_file() else None

    def data_url(self, url: str) -> str:
        """Inline a local blob as a data: URL; other URLs pass through."""
        local = self.local_path(url)
        if local is None:
            return url
        mime = mimetypes.guess_type(local.name)[0] or "image/jpeg"
        encoded = base64.b64encode(local.read_bytes()).decode("ascii")
        return f"data:{mime};base64,{encoded}"
