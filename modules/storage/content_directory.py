"""Filesystem area that holds image bytes, one file per record."""

from __future__ import annotations

import itertools
import logging
import shutil
import time
from pathlib import Path
from typing import Callable, Optional

import requests

from modules.storage.errors import IngestionError
from modules.utils.image_utils import (
    SourceKind,
    classify_uri,
    extension_for_mime,
    local_path_from_uri,
    parse_data_uri,
    verify_image_file,
)

logger = logging.getLogger(__name__)


class ContentDirectory:
    """Write, copy or download image bytes under a dedicated root."""

    def __init__(
        self,
        root: Path,
        session: Optional[requests.Session] = None,
        *,
        timeout: float = 30.0,
        chunk_size: int = 64 * 1024,
        verify_images: bool = True,
        default_extension: str = "jpg",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.root = Path(root)
        self.session = session or requests.Session()
        self.timeout = timeout
        self.chunk_size = chunk_size
        self.verify_images = verify_images
        self.default_extension = default_extension.lstrip(".")
        self._clock = clock
        self._counter = itertools.count()

    def ensure_root(self) -> Path:
        self.root.mkdir(parents=True, exist_ok=True)
        return self.root

    def destination_for(self, record_id: str, extension: Optional[str] = None) -> Path:
        """Return a fresh path for ``record_id``.

        The name combines the id, a millisecond timestamp and a process-local
        counter, so repeated writes for the same id never collide.
        """
        millis = int(self._clock() * 1000)
        suffix = (extension or self.default_extension).lstrip(".")
        return self.root / f"{record_id}_{millis}_{next(self._counter)}.{suffix}"

    # Ingestion ----------------------------------------------------------------
    def ingest(self, source_uri: str, record_id: str) -> Path:
        """Materialise ``source_uri`` as a new file and return its path.

        Raises IngestionError on any failure; no file is left behind in that case.
        """
        kind = classify_uri(source_uri)
        self.ensure_root()
        if kind is SourceKind.INLINE:
            path = self._write_inline(source_uri, record_id)
        elif kind is SourceKind.LOCAL:
            path = self._copy_local(source_uri, record_id)
        elif kind is SourceKind.REMOTE:
            path = self._download(source_uri, record_id)
        else:
            raise IngestionError(f"Unsupported image source: {source_uri[:80]!r}", source_uri)

        if self.verify_images:
            try:
                verify_image_file(path)
            except ValueError as exc:
                self.delete(path)
                raise IngestionError(str(exc), source_uri) from exc
        return path

    def _write_inline(self, source_uri: str, record_id: str) -> Path:
        try:
            mime_type, payload = parse_data_uri(source_uri)
        except ValueError as exc:
            raise IngestionError(f"Could not decode inline image: {exc}", source_uri) from exc
        if not payload:
            raise IngestionError("Inline image is empty", source_uri)

        path = self.destination_for(record_id, extension_for_mime(mime_type))
        try:
            path.write_bytes(payload)
        except OSError as exc:
            self.delete(path)
            raise IngestionError(f"Could not write inline image: {exc}", source_uri) from exc
        return path

    def _copy_local(self, source_uri: str, record_id: str) -> Path:
        source = local_path_from_uri(source_uri)
        if not source.is_file():
            raise IngestionError(f"Local image not found: {source}", source_uri)

        extension = source.suffix.lstrip(".").lower() or None
        path = self.destination_for(record_id, extension)
        try:
            shutil.copyfile(source, path)
        except OSError as exc:
            self.delete(path)
            raise IngestionError(f"Could not copy {source}: {exc}", source_uri) from exc
        return path

    def _download(self, source_uri: str, record_id: str) -> Path:
        partial: Optional[Path] = None
        try:
            with self.session.get(source_uri, stream=True, timeout=self.timeout) as response:
                if not 200 <= response.status_code < 300:
                    raise IngestionError(
                        f"Download failed with status: {response.status_code}", source_uri
                    )
                content_type = response.headers.get("Content-Type")
                path = self.destination_for(record_id, extension_for_mime(content_type))
                partial = path.with_name(path.name + ".part")
                with partial.open("wb") as handle:
                    for chunk in response.iter_content(chunk_size=self.chunk_size):
                        if chunk:
                            handle.write(chunk)
            partial.replace(path)
        except requests.RequestException as exc:
            raise IngestionError(f"Download failed: {exc}", source_uri) from exc
        except OSError as exc:
            raise IngestionError(f"Could not store download: {exc}", source_uri) from exc
        finally:
            if partial is not None:
                partial.unlink(missing_ok=True)
        return path

    # Inspection and removal ---------------------------------------------------
    def exists(self, path: Optional[str | Path]) -> bool:
        return bool(path) and Path(path).is_file()

    def size(self, path: Optional[str | Path]) -> int:
        """Return the on-disk size of ``path`` or 0 when it is missing."""
        if not path:
            return 0
        try:
            stat = Path(path).stat()
        except OSError:
            return 0
        return stat.st_size

    def contains(self, path: str | Path) -> bool:
        try:
            Path(path).resolve().relative_to(self.root.resolve())
        except ValueError:
            return False
        return True

    def delete(self, path: Optional[str | Path]) -> None:
        """Remove ``path``; deleting a missing file is not an error."""
        if not path:
            return
        try:
            Path(path).unlink(missing_ok=True)
        except IsADirectoryError:
            logger.warning("Refusing to delete directory %s", path)
        except OSError as exc:
            logger.error("Error deleting image file %s: %s", path, exc)

    def purge(self) -> None:
        """Remove the whole root directory."""
        if self.root.exists():
            shutil.rmtree(self.root, ignore_errors=True)
            logger.info("Removed content directory %s", self.root)
