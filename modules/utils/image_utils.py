"""Utility helpers for classifying image sources and checking image files."""

from __future__ import annotations

import base64
import binascii
from enum import Enum
from pathlib import Path
from typing import Optional, Tuple
from urllib.parse import unquote_to_bytes, urlsplit
from urllib.request import url2pathname

from PIL import Image, UnidentifiedImageError

_MIME_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/pjpeg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
    "image/bmp": "bmp",
    "image/tiff": "tiff",
    "image/heic": "heic",
    "image/heif": "heif",
}


class SourceKind(str, Enum):
    """How the bytes behind a URI are obtained."""

    INLINE = "inline"
    LOCAL = "local"
    REMOTE = "remote"
    UNSUPPORTED = "unsupported"


def classify_uri(uri: str) -> SourceKind:
    """Return the ingestion strategy that applies to ``uri``."""
    stripped = (uri or "").strip()
    lowered = stripped.lower()
    if lowered.startswith("data:"):
        return SourceKind.INLINE
    if lowered.startswith("file://"):
        return SourceKind.LOCAL
    if lowered.startswith(("http://", "https://")):
        return SourceKind.REMOTE
    if stripped and Path(stripped).is_absolute():
        return SourceKind.LOCAL
    return SourceKind.UNSUPPORTED


def is_local_or_inline(uri: str) -> bool:
    """True when there is nothing to download for ``uri``."""
    return classify_uri(uri) in (SourceKind.INLINE, SourceKind.LOCAL)


def local_path_from_uri(uri: str) -> Path:
    """Turn a ``file://`` URI or plain absolute path into a Path."""
    stripped = uri.strip()
    if stripped.lower().startswith("file://"):
        return Path(url2pathname(urlsplit(stripped).path))
    return Path(stripped)


def parse_data_uri(uri: str) -> Tuple[Optional[str], bytes]:
    """Decode a ``data:`` URI into ``(mime_type, payload)``.

    Raises ValueError when the URI is malformed or the base64 payload is invalid.
    """
    stripped = uri.strip()
    if not stripped.lower().startswith("data:") or "," not in stripped:
        raise ValueError("not a data URI")
    header, payload = stripped[5:].split(",", 1)
    parts = [part.strip() for part in header.split(";") if part.strip()]
    is_base64 = bool(parts) and parts[-1].lower() == "base64"
    if is_base64:
        parts = parts[:-1]
    mime_type = parts[0].lower() if parts and "/" in parts[0] else None

    if is_base64:
        try:
            data = base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError(f"invalid base64 payload: {exc}") from exc
    else:
        data = unquote_to_bytes(payload)
    return mime_type, data


def extension_for_mime(mime_type: Optional[str]) -> Optional[str]:
    """Map a MIME type (optionally with parameters) to a file extension."""
    if not mime_type:
        return None
    base = mime_type.split(";", 1)[0].strip().lower()
    return _MIME_EXTENSIONS.get(base)


def verify_image_file(path: Path) -> None:
    """Raise ValueError unless ``path`` holds a decodable image."""
    try:
        with Image.open(path) as image:
            image.verify()
    except (UnidentifiedImageError, OSError, SyntaxError) as exc:
        raise ValueError(f"{path.name} is not a readable image: {exc}") from exc
