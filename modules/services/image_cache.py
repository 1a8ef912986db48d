"""Size- and age-bounded disk cache for remotely hosted images."""

from __future__ import annotations

import hashlib
import logging
import time
from typing import Callable, Iterable, List, Optional, Tuple
from urllib.parse import urlsplit, urlunsplit

from config.settings import AppConfig
from modules.services.records import CachedEntry, CacheMetadata
from modules.storage.content_directory import ContentDirectory
from modules.storage.errors import CorruptedEntryError, IngestionError
from modules.storage.ledger import MetadataLedger
from modules.utils.image_utils import SourceKind, classify_uri, is_local_or_inline

logger = logging.getLogger(__name__)

CACHE_PREFIX = "image_cache_"
METADATA_KEY = "image_cache_metadata"


def normalize_url(url: str) -> str:
    """Canonical form used for hashing: trimmed, lowercase scheme/host, no fragment."""
    parts = urlsplit(url.strip())
    return urlunsplit((parts.scheme.lower(), parts.netloc.lower(), parts.path, parts.query, ""))


def cache_key_for(url: str) -> str:
    digest = hashlib.sha256(normalize_url(url).encode("utf-8")).hexdigest()
    return CACHE_PREFIX + digest[:32]


class RemoteImageCache:
    """Cache remote images on disk, keyed by a hash of their URL.

    Entries live in the shared ledger under ``image_cache_<hash>`` keys, with
    aggregate counters in the ``image_cache_metadata`` singleton. Entries older
    than ``max_cache_age_seconds`` are purged lazily on access; when the
    tracked size exceeds ``max_cache_size`` the oldest entries are evicted
    until the total is at or below ``cache_cleanup_ratio`` of the maximum.
    """

    def __init__(
        self,
        config: AppConfig,
        ledger: MetadataLedger,
        directory: ContentDirectory,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.ledger = ledger
        self.directory = directory
        self._clock = clock

    # Helpers ------------------------------------------------------------------
    def _now_millis(self) -> int:
        return int(self._clock() * 1000)

    @property
    def max_size(self) -> int:
        return self.config.max_cache_size

    @property
    def target_size(self) -> float:
        return self.config.max_cache_size * self.config.cache_cleanup_ratio

    def _read_metadata(self) -> CacheMetadata:
        payload = self.ledger.get(METADATA_KEY)
        if payload is None:
            return CacheMetadata(last_cleanup_millis=self._now_millis())
        try:
            return CacheMetadata.from_dict(payload)
        except CorruptedEntryError as exc:
            logger.warning("Cache metadata corrupted (%s); recounting", exc)
            return self._recount()

    def _write_metadata(self, metadata: CacheMetadata) -> None:
        self.ledger.set(METADATA_KEY, metadata.to_dict())

    def _read_entry(self, key: str) -> Optional[CachedEntry]:
        payload = self.ledger.get(key)
        if payload is None:
            return None
        try:
            return CachedEntry.from_dict(payload)
        except CorruptedEntryError as exc:
            logger.warning("Dropping corrupted cache entry %s: %s", key, exc)
            self.ledger.remove(key)
            return None

    def _entries(self) -> List[Tuple[str, CachedEntry]]:
        """Return all live entries in ledger order, dropping corrupted ones."""
        entries: List[Tuple[str, CachedEntry]] = []
        corrupted: List[str] = []
        for key, payload in self.ledger.items(CACHE_PREFIX):
            if key == METADATA_KEY:
                continue
            try:
                entries.append((key, CachedEntry.from_dict(payload)))
            except CorruptedEntryError as exc:
                logger.warning("Dropping corrupted cache entry %s: %s", key, exc)
                corrupted.append(key)
        if corrupted:
            self.ledger.remove_many(corrupted)
        return entries

    def _recount(self, last_cleanup_millis: Optional[int] = None) -> CacheMetadata:
        entries = self._entries()
        previous = self.ledger.get(METADATA_KEY)
        if last_cleanup_millis is None:
            if isinstance(previous, dict) and isinstance(previous.get("last_cleanup_millis"), int):
                last_cleanup_millis = previous["last_cleanup_millis"]
            else:
                last_cleanup_millis = self._now_millis()
        metadata = CacheMetadata(
            total_size=sum(entry.size_bytes for _, entry in entries),
            image_count=len(entries),
            last_cleanup_millis=last_cleanup_millis,
        )
        self._write_metadata(metadata)
        return metadata

    def _is_expired(self, entry: CachedEntry) -> bool:
        age_millis = self._now_millis() - entry.cached_at_millis
        return age_millis > self.config.max_cache_age_seconds * 1000

    def _drop_entry(self, key: str, entry: CachedEntry) -> None:
        """Remove ledger entry and file, then adjust the counters."""
        self.ledger.remove(key)
        self.directory.delete(entry.local_path)

        metadata = self._read_metadata()
        if metadata.total_size < entry.size_bytes or metadata.image_count < 1:
            logger.warning("Cache counters out of sync after removing %s; recounting", key)
            self._recount()
            return
        metadata.total_size -= entry.size_bytes
        metadata.image_count -= 1
        self._write_metadata(metadata)

    # Public API ---------------------------------------------------------------
    def is_cached(self, url: str) -> bool:
        """True iff a fresh entry exists and its file is on disk.

        Stale entries (expired, or whose file disappeared) are purged.
        """
        key = cache_key_for(url)
        entry = self._read_entry(key)
        if entry is None:
            return False
        if self._is_expired(entry):
            logger.debug("Cache entry for %s expired", url)
            self._drop_entry(key, entry)
            return False
        if not self.directory.exists(entry.local_path):
            logger.warning("Cached file for %s is missing; dropping entry", url)
            self._drop_entry(key, entry)
            return False
        return True

    def get_cached_uri(self, url: str) -> Optional[str]:
        if not self.is_cached(url):
            return None
        entry = self._read_entry(cache_key_for(url))
        return entry.local_path if entry else None

    def cache_image(self, url: str) -> Optional[str]:
        """Download ``url`` into the cache unless it is already there.

        Returns the local path, or None when the download failed.
        """
        existing = self.get_cached_uri(url)
        if existing:
            logger.debug("Cache hit for %s", url)
            return existing

        if classify_uri(url) is not SourceKind.REMOTE:
            logger.error("Refusing to cache non-remote source %s", url[:80])
            return None

        key = cache_key_for(url)
        try:
            path = self.directory.ingest(url, key)
        except IngestionError as exc:
            logger.error("Error caching image %s: %s", url, exc)
            return None

        entry = CachedEntry(
            cache_key=key,
            local_path=str(path),
            size_bytes=self.directory.size(path),
            cached_at_millis=self._now_millis(),
            original_url=url,
        )
        self.ledger.set(key, entry.to_dict())

        metadata = self._read_metadata()
        metadata.total_size += entry.size_bytes
        metadata.image_count += 1
        self._write_metadata(metadata)
        logger.debug("Cached %s (%d bytes) at %s", url, entry.size_bytes, path)

        if metadata.total_size > self.max_size:
            self.cleanup_cache()
            if not self.ledger.contains(key):
                logger.warning("Image %s is larger than the cache target; not kept", url)
                return None
        return str(path)

    def get_image(self, url: str) -> str:
        """Return something displayable for ``url``.

        Local and inline sources come back unchanged. Remote ones resolve to a
        cached file when possible, otherwise to the original URL.
        """
        if is_local_or_inline(url):
            return url
        try:
            cached = self.get_cached_uri(url) or self.cache_image(url)
        except Exception as exc:  # noqa: BLE001
            logger.error("Error getting image %s: %s", url, exc)
            return url
        return cached or url

    def preload_images(self, urls: Iterable[str]) -> int:
        """Cache every remote URL in ``urls``; returns how many are now cached."""
        cached = 0
        for url in urls:
            if is_local_or_inline(url):
                continue
            try:
                if self.cache_image(url):
                    cached += 1
            except Exception as exc:  # noqa: BLE001
                logger.error("Error preloading %s: %s", url, exc)
        return cached

    def remove_from_cache(self, url: str) -> None:
        key = cache_key_for(url)
        entry = self._read_entry(key)
        if entry is None:
            return
        self._drop_entry(key, entry)

    def cleanup_cache(self) -> CacheMetadata:
        """Evict oldest entries until the cache is within its target size."""
        entries = self._entries()
        # sorted() is stable, so equal timestamps keep ledger insertion order.
        ordered = sorted(entries, key=lambda item: item[1].cached_at_millis)
        current_size = sum(entry.size_bytes for _, entry in ordered)

        evicted: List[str] = []
        for key, entry in ordered:
            if current_size <= self.target_size:
                break
            self.directory.delete(entry.local_path)
            evicted.append(key)
            current_size -= entry.size_bytes
        self.ledger.remove_many(evicted)

        metadata = self._recount(last_cleanup_millis=self._now_millis())
        logger.info(
            "Cache cleanup completed. Size: %d bytes, Images: %d, Evicted: %d",
            metadata.total_size,
            metadata.image_count,
            len(evicted),
        )
        return metadata

    def clear_cache(self) -> None:
        """Forget every cached entry and remove the cache directory."""
        self.ledger.clear(CACHE_PREFIX)
        self.directory.purge()
        logger.info("Image cache cleared")

    def get_cache_stats(self) -> CacheMetadata:
        return self._read_metadata()
