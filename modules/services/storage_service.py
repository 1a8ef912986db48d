"""Durable local storage for training photos and generated portraits."""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Type, TypeVar

from config.settings import AppConfig
from modules.services.records import (
    GENERATED_UPDATABLE_FIELDS,
    GeneratedPhotoRecord,
    GenerationStatus,
    StorageStats,
    StoredImageRecord,
    TrainingImageRecord,
    can_transition,
    normalize_metadata,
)
from modules.storage.content_directory import ContentDirectory
from modules.storage.errors import (
    CorruptedEntryError,
    StatusTransitionError,
    TrainingSetLimitError,
)
from modules.storage.ledger import MetadataLedger
from modules.utils.image_utils import SourceKind, classify_uri

logger = logging.getLogger(__name__)

TRAINING_INDEX_KEY = "training_images"
TRAINING_RECORD_PREFIX = "training_image:"
GENERATED_INDEX_KEY = "generated_photos"
GENERATED_RECORD_PREFIX = "generated_photo:"
AI_MODEL_KEY = "ai_model_name"

R = TypeVar("R", bound=StoredImageRecord)


class ImageStorageService:
    """Own the training set, the generated photo history and the model name.

    Every image is copied into the content directory before its ledger record
    is written, and each record is committed before the collection index that
    lists it. Reads re-check that referenced files still exist and prune the
    ledger when they do not.
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

    # Internal helpers ---------------------------------------------------------
    def _now_millis(self) -> int:
        return int(self._clock() * 1000)

    def _now_iso(self) -> str:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc).isoformat()

    @staticmethod
    def _new_id(prefix: str) -> str:
        return f"{prefix}_{uuid.uuid4().hex}"

    @staticmethod
    def _recorded_source(uri: str) -> Optional[str]:
        # Local sources are not kept; the copy in the content directory replaces them.
        if classify_uri(uri) is SourceKind.LOCAL:
            return None
        return uri

    def _read_index(self, index_key: str) -> List[str]:
        ids = self.ledger.get(index_key, [])
        if not isinstance(ids, list):
            logger.warning("Index %s is corrupted; treating it as empty", index_key)
            return []
        return [item for item in ids if isinstance(item, str)]

    def _load_records(
        self, index_key: str, prefix: str, record_type: Type[R]
    ) -> Tuple[List[str], List[R]]:
        """Return the raw index and every record that still decodes."""
        ids = self._read_index(index_key)
        records: List[R] = []
        for record_id in ids:
            payload = self.ledger.get(prefix + record_id)
            if payload is None:
                logger.warning("Record %s listed in %s is missing", record_id, index_key)
                continue
            try:
                records.append(record_type.from_dict(payload))
            except CorruptedEntryError as exc:
                logger.warning("Dropping corrupted record %s: %s", record_id, exc)
        return ids, records

    def _commit_index(self, index_key: str, previous: List[str], records: Sequence[R]) -> None:
        current = [record.id for record in records]
        if current != previous:
            self.ledger.set(index_key, current)

    def _prune_keys(self, prefix: str, keep: Sequence[R], previous: List[str]) -> None:
        kept = {record.id for record in keep}
        stale = [prefix + record_id for record_id in previous if record_id not in kept]
        if stale:
            self.ledger.remove_many(stale)

    # TRAINING IMAGES ----------------------------------------------------------
    def save_training_images(self, image_uris: Sequence[str]) -> List[TrainingImageRecord]:
        """Replace the whole training set with ``image_uris`` in order.

        Raises TrainingSetLimitError when more URIs than allowed are passed and
        IngestionError when any source cannot be stored; in the latter case the
        training set is left empty.
        """
        uris = list(image_uris)
        limit = self.config.max_training_images
        if len(uris) > limit:
            raise TrainingSetLimitError(
                f"At most {limit} training images are allowed, got {len(uris)}"
            )

        self.clear_training_images()

        stored: List[TrainingImageRecord] = []
        try:
            for index, uri in enumerate(uris):
                record_id = self._new_id("training")
                path = self.directory.ingest(uri, record_id)
                record = TrainingImageRecord(
                    id=record_id,
                    local_path=str(path),
                    source_uri=self._recorded_source(uri),
                    ingested_at_millis=self._now_millis(),
                    display_order=index,
                )
                self.ledger.set(TRAINING_RECORD_PREFIX + record_id, record.to_dict())
                stored.append(record)
                self.ledger.set(TRAINING_INDEX_KEY, [item.id for item in stored])
        except Exception:
            logger.error("Saving training images failed after %d of %d", len(stored), len(uris))
            self.clear_training_images()
            raise

        logger.info("Saved %d training images", len(stored))
        return stored

    def get_training_images(self) -> List[TrainingImageRecord]:
        """Return the training set sorted by display order, pruning missing files."""
        previous, records = self._load_records(
            TRAINING_INDEX_KEY, TRAINING_RECORD_PREFIX, TrainingImageRecord
        )
        valid: List[TrainingImageRecord] = []
        for record in records:
            if self.directory.exists(record.local_path):
                valid.append(record)
            else:
                logger.warning("Training image file not found: %s", record.local_path)

        self._commit_index(TRAINING_INDEX_KEY, previous, valid)
        self._prune_keys(TRAINING_RECORD_PREFIX, valid, previous)
        return sorted(valid, key=lambda record: record.display_order)

    def delete_training_image(self, image_id: str) -> None:
        images = self.get_training_images()
        target = next((image for image in images if image.id == image_id), None)
        if target is None:
            return
        remaining = [image.id for image in images if image.id != image_id]
        self.ledger.set(TRAINING_INDEX_KEY, remaining)
        self.ledger.remove(TRAINING_RECORD_PREFIX + image_id)
        self.directory.delete(target.local_path)

    def clear_training_images(self) -> None:
        previous, records = self._load_records(
            TRAINING_INDEX_KEY, TRAINING_RECORD_PREFIX, TrainingImageRecord
        )
        self.ledger.remove(TRAINING_INDEX_KEY)
        self.ledger.remove_many(TRAINING_RECORD_PREFIX + record_id for record_id in previous)
        for record in records:
            self.directory.delete(record.local_path)

    # GENERATED PHOTOS ---------------------------------------------------------
    def save_generated_photo(
        self,
        source_uri: Optional[str],
        style: str,
        *,
        prompt_used: Optional[str] = None,
        package_id: Optional[str] = None,
        metadata: Optional[Mapping[str, Any]] = None,
        status: GenerationStatus | str = GenerationStatus.COMPLETED,
        error_message: Optional[str] = None,
    ) -> GeneratedPhotoRecord:
        """Store a generated portrait and put it at the front of the history.

        ``source_uri`` may be None only for photos that are not completed yet.
        """
        status = GenerationStatus(status)
        if source_uri is None and status is GenerationStatus.COMPLETED:
            raise ValueError("a completed photo needs a source_uri")
        clean_metadata = normalize_metadata(metadata)

        record_id = self._new_id("generated")
        local_path: Optional[str] = None
        if source_uri is not None:
            local_path = str(self.directory.ingest(source_uri, record_id))

        now_iso = self._now_iso()
        record = GeneratedPhotoRecord(
            id=record_id,
            local_path=local_path,
            source_uri=self._recorded_source(source_uri) if source_uri else None,
            ingested_at_millis=self._now_millis(),
            metadata=clean_metadata,
            style=style,
            created_at_iso=now_iso,
            package_id=package_id,
            prompt_used=prompt_used,
            generation_status=status,
            error_message=error_message,
            completed_at_iso=now_iso if status.is_terminal else None,
        )

        try:
            self.ledger.set(GENERATED_RECORD_PREFIX + record_id, record.to_dict())
            ids = [record_id] + [item for item in self._read_index(GENERATED_INDEX_KEY) if item != record_id]
            self.ledger.set(GENERATED_INDEX_KEY, ids)
        except Exception:
            self.directory.delete(local_path)
            raise
        logger.info("Saved generated photo %s (%s)", record_id, status.value)
        return record

    def _reconcile_generated(self) -> List[GeneratedPhotoRecord]:
        previous, records = self._load_records(
            GENERATED_INDEX_KEY, GENERATED_RECORD_PREFIX, GeneratedPhotoRecord
        )
        valid: List[GeneratedPhotoRecord] = []
        for record in records:
            has_file = self.directory.exists(record.local_path)
            if record.generation_status is GenerationStatus.COMPLETED:
                if has_file:
                    valid.append(record)
                else:
                    logger.warning("Generated photo file not found: %s", record.local_path)
                continue

            # Unfinished or failed attempts stay in the history without a file.
            if record.local_path is not None and not has_file:
                logger.warning("Detaching missing file from photo %s", record.id)
                record = replace(record, local_path=None)
                self.ledger.set(GENERATED_RECORD_PREFIX + record.id, record.to_dict())
            valid.append(record)

        self._commit_index(GENERATED_INDEX_KEY, previous, valid)
        self._prune_keys(GENERATED_RECORD_PREFIX, valid, previous)
        return valid

    def get_generated_photos(self) -> List[GeneratedPhotoRecord]:
        """Return generated photos newest first, pruning missing files."""
        records = self._reconcile_generated()
        return sorted(
            records,
            key=lambda record: datetime.fromisoformat(record.created_at_iso),
            reverse=True,
        )

    def update_generated_photo(
        self, photo_id: str, updates: Mapping[str, Any]
    ) -> Optional[GeneratedPhotoRecord]:
        """Merge ``updates`` into a generated photo; None when the id is unknown.

        A ``source_uri`` update ingests new bytes; the previous file is removed
        only after the updated record is committed.
        """
        unknown = set(updates) - GENERATED_UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update fields: {', '.join(sorted(unknown))}")

        current = next((photo for photo in self._reconcile_generated() if photo.id == photo_id), None)
        if current is None:
            return None

        changes: Dict[str, Any] = {}
        for name in ("style", "package_id", "prompt_used", "error_message"):
            if name in updates:
                changes[name] = updates[name]
        if "metadata" in updates:
            changes["metadata"] = normalize_metadata(updates["metadata"])

        if "generation_status" in updates:
            target = GenerationStatus(updates["generation_status"])
            if not can_transition(current.generation_status, target):
                raise StatusTransitionError(
                    f"Photo {photo_id} cannot move from "
                    f"{current.generation_status.value} to {target.value}"
                )
            changes["generation_status"] = target
            if target.is_terminal and current.completed_at_iso is None:
                changes["completed_at_iso"] = self._now_iso()

        new_uri = updates.get("source_uri")
        final_status = changes.get("generation_status", current.generation_status)
        if final_status is GenerationStatus.COMPLETED and new_uri is None and current.local_path is None:
            raise ValueError(f"Photo {photo_id} cannot be completed without an image")

        if new_uri is None:
            updated = replace(current, **changes)
            self.ledger.set(GENERATED_RECORD_PREFIX + photo_id, updated.to_dict())
            return updated

        new_path = self.directory.ingest(new_uri, photo_id)
        changes["local_path"] = str(new_path)
        changes["source_uri"] = self._recorded_source(new_uri)
        updated = replace(current, **changes)
        try:
            self.ledger.set(GENERATED_RECORD_PREFIX + photo_id, updated.to_dict())
        except Exception:
            self.directory.delete(new_path)
            raise
        if current.local_path and current.local_path != updated.local_path:
            self.directory.delete(current.local_path)
        return updated

    def delete_generated_photo(self, photo_id: str) -> None:
        photos = self._reconcile_generated()
        target = next((photo for photo in photos if photo.id == photo_id), None)
        if target is None:
            return
        self.ledger.set(GENERATED_INDEX_KEY, [photo.id for photo in photos if photo.id != photo_id])
        self.ledger.remove(GENERATED_RECORD_PREFIX + photo_id)
        self.directory.delete(target.local_path)

    def clear_generated_photos(self) -> None:
        previous, records = self._load_records(
            GENERATED_INDEX_KEY, GENERATED_RECORD_PREFIX, GeneratedPhotoRecord
        )
        self.ledger.remove(GENERATED_INDEX_KEY)
        self.ledger.remove_many(GENERATED_RECORD_PREFIX + record_id for record_id in previous)
        for record in records:
            self.directory.delete(record.local_path)

    # AI MODEL -----------------------------------------------------------------
    def set_ai_model_name(self, name: str) -> None:
        self.ledger.set(AI_MODEL_KEY, name)

    def get_ai_model_name(self) -> Optional[str]:
        name = self.ledger.get(AI_MODEL_KEY)
        return name if isinstance(name, str) else None

    def clear_ai_model(self) -> None:
        """Reset the account: training set, generated photos and model name."""
        self.clear_training_images()
        self.clear_generated_photos()
        self.ledger.remove(AI_MODEL_KEY)

    # UTILITY ------------------------------------------------------------------
    def get_storage_stats(self) -> StorageStats:
        training = self.get_training_images()
        generated = self.get_generated_photos()
        total = sum(self.directory.size(record.local_path) for record in training)
        total += sum(self.directory.size(record.local_path) for record in generated)
        return StorageStats(
            training_images_count=len(training),
            generated_photos_count=len(generated),
            total_storage_size=total,
        )

    def clear_all_data(self) -> None:
        """Reset the account and sweep anything left in the content directory."""
        self.clear_ai_model()
        orphans = self.ledger.keys(TRAINING_RECORD_PREFIX) + self.ledger.keys(GENERATED_RECORD_PREFIX)
        if orphans:
            logger.warning("Removing %d unindexed records", len(orphans))
            self.ledger.remove_many(orphans)
        self.directory.purge()
