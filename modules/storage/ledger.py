"""Durable key/value metadata ledger backed by a single JSON document."""

from __future__ import annotations

import copy
import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

logger = logging.getLogger(__name__)


def atomic_write_text(path: Path, data: str) -> None:
    """Atomically write *data* into *path*."""

    tmp_path = path.with_suffix(path.suffix + ".tmp")
    path.parent.mkdir(parents=True, exist_ok=True)
    try:
        with tmp_path.open("w", encoding="utf-8") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        tmp_path.replace(path)
    except OSError:
        tmp_path.unlink(missing_ok=True)
        raise


class MetadataLedger:
    """Persisted mapping from string keys to JSON-serializable values.

    The whole mapping lives in one JSON document that is rewritten atomically
    on every mutation, so a reader never sees a half-written value. Key order
    is insertion order and survives reloads. There are no cross-key
    transactions; callers order their writes so that a crash between two of
    them leaves a recoverable state.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._data: Optional[Dict[str, Any]] = None

    # Loading ------------------------------------------------------------------
    def _load(self) -> Dict[str, Any]:
        if self._data is not None:
            return self._data

        if not self.path.exists():
            self._data = {}
            return self._data

        try:
            with self.path.open("r", encoding="utf-8") as handle:
                loaded = json.load(handle)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            self._quarantine(exc)
            loaded = {}

        if not isinstance(loaded, dict):
            self._quarantine(TypeError(f"top-level value is {type(loaded).__name__}"))
            loaded = {}

        self._data = loaded
        return self._data

    def _quarantine(self, exc: Exception) -> None:
        timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        broken = self.path.with_name(f"{self.path.name}.corrupt-{timestamp}")
        logger.error("Ledger %s is unreadable (%s); moved aside to %s", self.path, exc, broken)
        self.path.replace(broken)

    def _commit(self, data: Dict[str, Any]) -> None:
        """Write *data* to disk, then adopt it as the in-memory state."""
        payload = json.dumps(data, ensure_ascii=False, indent=2)
        atomic_write_text(self.path, payload)
        self._data = data

    def reload(self) -> None:
        """Drop the in-memory copy so the next access re-reads the file."""
        self._data = None

    # Public API ---------------------------------------------------------------
    def get(self, key: str, default: Any = None) -> Any:
        """Return a copy of the value stored under ``key``."""
        data = self._load()
        if key not in data:
            return default
        return copy.deepcopy(data[key])

    def contains(self, key: str) -> bool:
        return key in self._load()

    def set(self, key: str, value: Any) -> None:
        """Store ``value`` under ``key``, replacing any previous value."""
        if not isinstance(key, str) or not key:
            raise ValueError("ledger keys must be non-empty strings")
        # Serialise first so an unencodable value never reaches the document.
        encoded = json.loads(json.dumps(value, ensure_ascii=False))
        data = dict(self._load())
        data[key] = encoded
        self._commit(data)

    def remove(self, key: str) -> bool:
        """Delete ``key``; returns False when it was not present."""
        data = dict(self._load())
        if key not in data:
            return False
        del data[key]
        self._commit(data)
        return True

    def remove_many(self, keys: Iterable[str]) -> int:
        """Delete several keys with a single write."""
        data = dict(self._load())
        removed = 0
        for key in list(keys):
            if key in data:
                del data[key]
                removed += 1
        if removed:
            self._commit(data)
        return removed

    def keys(self, prefix: str = "") -> List[str]:
        """Return keys starting with ``prefix`` in stored order."""
        return [key for key in self._load() if key.startswith(prefix)]

    def items(self, prefix: str = "") -> Iterator[Tuple[str, Any]]:
        """Yield ``(key, value)`` pairs for keys starting with ``prefix``."""
        for key in self.keys(prefix):
            yield key, self.get(key)

    def clear(self, prefix: str = "") -> int:
        """Remove every key starting with ``prefix``."""
        return self.remove_many(self.keys(prefix))

    def __len__(self) -> int:
        return len(self._load())
