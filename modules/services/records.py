"""Record types persisted in the metadata ledger."""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Union

from modules.storage.errors import CorruptedEntryError

MetadataScalar = Union[str, int, float, bool, None]


class GenerationStatus(str, Enum):
    """Lifecycle of a generated portrait."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (GenerationStatus.COMPLETED, GenerationStatus.FAILED)


_ALLOWED_TRANSITIONS = {
    GenerationStatus.PENDING: frozenset(GenerationStatus),
    GenerationStatus.PROCESSING: frozenset(
        {GenerationStatus.PROCESSING, GenerationStatus.COMPLETED, GenerationStatus.FAILED}
    ),
    GenerationStatus.COMPLETED: frozenset({GenerationStatus.COMPLETED}),
    GenerationStatus.FAILED: frozenset({GenerationStatus.FAILED}),
}


def can_transition(current: GenerationStatus, target: GenerationStatus) -> bool:
    return target in _ALLOWED_TRANSITIONS[current]


# Metadata values --------------------------------------------------------------
def _tag_for(value: Any) -> str:
    # bool is checked before int because it is a subclass of int.
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, int):
        return "int"
    if isinstance(value, float):
        if not math.isfinite(value):
            raise TypeError("metadata floats must be finite")
        return "float"
    if isinstance(value, str):
        return "str"
    raise TypeError(f"unsupported metadata value type: {type(value).__name__}")


def normalize_metadata(metadata: Optional[Mapping[str, Any]]) -> Dict[str, MetadataScalar]:
    """Validate caller metadata; only scalar values are accepted."""
    if not metadata:
        return {}
    normalized: Dict[str, MetadataScalar] = {}
    for key, value in metadata.items():
        if not isinstance(key, str):
            raise TypeError("metadata keys must be strings")
        _tag_for(value)
        normalized[key] = value
    return normalized


def encode_metadata(metadata: Mapping[str, MetadataScalar]) -> Dict[str, Dict[str, Any]]:
    return {key: {"type": _tag_for(value), "value": value} for key, value in metadata.items()}


def decode_metadata(payload: Any) -> Dict[str, MetadataScalar]:
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise CorruptedEntryError("metadata must be an object")

    decoded: Dict[str, MetadataScalar] = {}
    for key, tagged in payload.items():
        if not isinstance(tagged, dict) or "type" not in tagged:
            raise CorruptedEntryError(f"metadata entry {key!r} is not tagged")
        tag, value = tagged["type"], tagged.get("value")
        if tag == "null":
            decoded[key] = None
        elif tag == "bool" and isinstance(value, bool):
            decoded[key] = value
        elif tag == "int" and isinstance(value, int) and not isinstance(value, bool):
            decoded[key] = value
        elif tag == "float" and isinstance(value, (int, float)) and not isinstance(value, bool):
            decoded[key] = float(value)
        elif tag == "str" and isinstance(value, str):
            decoded[key] = value
        else:
            raise CorruptedEntryError(f"metadata entry {key!r} has invalid tag {tag!r}")
    return decoded


# Store records ----------------------------------------------------------------
def _require(payload: Mapping[str, Any], name: str, kind: type | tuple[type, ...]) -> Any:
    value = payload.get(name)
    if not isinstance(value, kind) or isinstance(value, bool) and kind is int:
        raise CorruptedEntryError(f"field {name!r} is missing or malformed")
    return value


def _optional_str(payload: Mapping[str, Any], name: str) -> Optional[str]:
    value = payload.get(name)
    if value is not None and not isinstance(value, str):
        raise CorruptedEntryError(f"field {name!r} must be a string")
    return value


@dataclass(slots=True)
class StoredImageRecord:
    """Fields shared by every image the store owns."""

    id: str
    local_path: Optional[str]
    source_uri: Optional[str]
    ingested_at_millis: int
    metadata: Dict[str, MetadataScalar] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["metadata"] = encode_metadata(self.metadata)
        return payload

    @staticmethod
    def _base_fields(payload: Any) -> Dict[str, Any]:
        if not isinstance(payload, dict):
            raise CorruptedEntryError("record must be an object")
        return {
            "id": _require(payload, "id", str),
            "local_path": _optional_str(payload, "local_path"),
            "source_uri": _optional_str(payload, "source_uri"),
            "ingested_at_millis": _require(payload, "ingested_at_millis", int),
            "metadata": decode_metadata(payload.get("metadata")),
        }


@dataclass(slots=True)
class TrainingImageRecord(StoredImageRecord):
    """One slot of the active training set."""

    display_order: int = 0

    @classmethod
    def from_dict(cls, payload: Any) -> "TrainingImageRecord":
        base = cls._base_fields(payload)
        if base["local_path"] is None:
            raise CorruptedEntryError("training image without local_path")
        return cls(**base, display_order=_require(payload, "display_order", int))


@dataclass(slots=True)
class GeneratedPhotoRecord(StoredImageRecord):
    """A portrait produced by the generation backend."""

    style: str = ""
    created_at_iso: str = ""
    package_id: Optional[str] = None
    prompt_used: Optional[str] = None
    generation_status: GenerationStatus = GenerationStatus.COMPLETED
    error_message: Optional[str] = None
    completed_at_iso: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload = StoredImageRecord.to_dict(self)
        payload["generation_status"] = self.generation_status.value
        return payload

    @classmethod
    def from_dict(cls, payload: Any) -> "GeneratedPhotoRecord":
        base = cls._base_fields(payload)
        created_at_iso = _require(payload, "created_at_iso", str)
        try:
            status = GenerationStatus(payload.get("generation_status"))
            created_at = datetime.fromisoformat(created_at_iso)
        except ValueError as exc:
            raise CorruptedEntryError(str(exc)) from exc
        if created_at.tzinfo is None:
            raise CorruptedEntryError(f"created_at_iso {created_at_iso!r} has no UTC offset")
        return cls(
            **base,
            style=_require(payload, "style", str),
            created_at_iso=created_at_iso,
            package_id=_optional_str(payload, "package_id"),
            prompt_used=_optional_str(payload, "prompt_used"),
            generation_status=status,
            error_message=_optional_str(payload, "error_message"),
            completed_at_iso=_optional_str(payload, "completed_at_iso"),
        )


GENERATED_UPDATABLE_FIELDS = frozenset(
    {
        "style",
        "package_id",
        "prompt_used",
        "generation_status",
        "error_message",
        "metadata",
        "source_uri",
    }
)


# Cache records ----------------------------------------------------------------
@dataclass(slots=True)
class CachedEntry:
    """Ledger entry describing one cached remote image."""

    cache_key: str
    local_path: str
    size_bytes: int
    cached_at_millis: int
    original_url: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Any) -> "CachedEntry":
        if not isinstance(payload, dict):
            raise CorruptedEntryError("cache entry must be an object")
        size = _require(payload, "size_bytes", int)
        if size < 0:
            raise CorruptedEntryError("negative cache entry size")
        return cls(
            cache_key=_require(payload, "cache_key", str),
            local_path=_require(payload, "local_path", str),
            size_bytes=size,
            cached_at_millis=_require(payload, "cached_at_millis", int),
            original_url=_require(payload, "original_url", str),
        )


@dataclass(slots=True)
class CacheMetadata:
    """Aggregate counters for the remote image cache."""

    total_size: int = 0
    image_count: int = 0
    last_cleanup_millis: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Any) -> "CacheMetadata":
        if not isinstance(payload, dict):
            raise CorruptedEntryError("cache metadata must be an object")
        values = {}
        for item in fields(cls):
            value = payload.get(item.name, 0)
            if not isinstance(value, int) or isinstance(value, bool):
                raise CorruptedEntryError(f"cache metadata field {item.name!r} is malformed")
            values[item.name] = value
        return cls(**values)


@dataclass(slots=True)
class StorageStats:
    """Disk footprint of the store's currently valid records."""

    training_images_count: int
    generated_photos_count: int
    total_storage_size: int

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)
