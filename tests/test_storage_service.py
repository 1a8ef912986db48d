"""ImageStorageService tests covering training images, generated photos and teardown."""

from __future__ import annotations

import base64
from pathlib import Path

import pytest

from modules.services.records import GenerationStatus
from modules.services.storage_service import (
    GENERATED_INDEX_KEY,
    GENERATED_RECORD_PREFIX,
    TRAINING_INDEX_KEY,
    TRAINING_RECORD_PREFIX,
)
from modules.storage.errors import (
    IngestionError,
    StatusTransitionError,
    TrainingSetLimitError,
)


def data_uri(payload: bytes, mime: str = "image/jpeg") -> str:
    return f"data:{mime};base64," + base64.b64encode(payload).decode("ascii")


# Training images ----------------------------------------------------------------


def test_save_training_images_assigns_display_order(storage, make_source):
    sources = [make_source(size=10) for _ in range(3)]

    saved = storage.save_training_images(sources)

    assert [record.display_order for record in saved] == [0, 1, 2]
    assert all(Path(record.local_path).exists() for record in saved)
    assert all(record.source_uri is None for record in saved)
    assert [record.id for record in storage.get_training_images()] == [record.id for record in saved]


def test_save_training_images_replaces_existing_set(storage, make_source):
    first = storage.save_training_images([make_source() for _ in range(3)])
    replacement = make_source(size=5)

    second = storage.save_training_images([replacement])

    current = storage.get_training_images()
    assert [record.id for record in current] == [second[0].id]
    assert all(not Path(record.local_path).exists() for record in first)


def test_too_many_training_images_is_rejected_without_clearing(storage, make_source):
    kept = storage.save_training_images([make_source()])

    with pytest.raises(TrainingSetLimitError):
        storage.save_training_images([make_source() for _ in range(4)])

    assert [record.id for record in storage.get_training_images()] == [kept[0].id]


def test_failed_ingest_leaves_empty_training_set(storage, make_source, config, session):
    good = make_source(size=7)
    session.add("https://cdn.example.com/missing.jpg", b"", status=404)

    with pytest.raises(IngestionError):
        storage.save_training_images([good, "https://cdn.example.com/missing.jpg"])

    assert storage.get_training_images() == []
    assert list(config.storage_dir.iterdir()) == []


def test_training_reconciliation_prunes_missing_files(storage, make_source, ledger):
    saved = storage.save_training_images([make_source() for _ in range(3)])
    Path(saved[1].local_path).unlink()

    current = storage.get_training_images()

    assert [record.id for record in current] == [saved[0].id, saved[2].id]
    assert ledger.get(TRAINING_INDEX_KEY) == [saved[0].id, saved[2].id]
    assert ledger.get(TRAINING_RECORD_PREFIX + saved[1].id) is None


def test_reconciliation_is_idempotent(storage, make_source, ledger, session):
    storage.save_training_images([make_source() for _ in range(2)])
    session.add("https://cdn.example.com/g.jpg", b"g" * 20)
    photo = storage.save_generated_photo("https://cdn.example.com/g.jpg", "studio")
    Path(photo.local_path).unlink()

    first = (storage.get_training_images(), storage.get_generated_photos())
    snapshot = ledger.path.read_bytes()
    second = (storage.get_training_images(), storage.get_generated_photos())

    assert first == second
    assert ledger.path.read_bytes() == snapshot


def test_delete_training_image_keeps_order_gaps(storage, make_source):
    saved = storage.save_training_images([make_source() for _ in range(3)])

    storage.delete_training_image(saved[1].id)
    storage.delete_training_image("training_unknown")

    current = storage.get_training_images()
    assert [record.display_order for record in current] == [0, 2]
    assert not Path(saved[1].local_path).exists()


def test_clear_training_images(storage, make_source, ledger):
    saved = storage.save_training_images([make_source() for _ in range(2)])

    storage.clear_training_images()

    assert storage.get_training_images() == []
    assert ledger.keys(TRAINING_RECORD_PREFIX) == []
    assert all(not Path(record.local_path).exists() for record in saved)


def test_storage_stats_sum_on_disk_sizes(storage, make_source):
    storage.save_training_images([make_source(size=size) for size in (100, 200, 300)])

    stats = storage.get_storage_stats()

    assert stats.training_images_count == 3
    assert stats.generated_photos_count == 0
    assert stats.total_storage_size == 600
    assert stats.to_dict()["total_storage_size"] == 600


# Generated photos ---------------------------------------------------------------


def test_generated_photos_are_newest_first(storage, clock):
    first = storage.save_generated_photo(data_uri(b"one"), "watercolor", prompt_used="p1")
    clock.advance(5)
    second = storage.save_generated_photo(
        data_uri(b"two"), "studio", package_id="pkg-1", metadata={"seed": 7, "hd": True}
    )

    photos = storage.get_generated_photos()

    assert [photo.id for photo in photos] == [second.id, first.id]
    assert photos[0].metadata == {"seed": 7, "hd": True}
    assert photos[0].package_id == "pkg-1"
    assert photos[1].prompt_used == "p1"
    assert photos[1].source_uri == data_uri(b"one")
    assert photos[0].generation_status is GenerationStatus.COMPLETED
    assert photos[0].completed_at_iso is not None


def test_metadata_values_must_be_scalars(storage):
    with pytest.raises(TypeError):
        storage.save_generated_photo(data_uri(b"x"), "studio", metadata={"tags": ["a"]})


def test_metadata_round_trips_with_tags(storage, ledger):
    photo = storage.save_generated_photo(
        data_uri(b"x"), "studio", metadata={"ratio": 1.0, "count": 1, "label": "1", "note": None}
    )

    stored = ledger.get(GENERATED_RECORD_PREFIX + photo.id)["metadata"]
    assert stored["ratio"] == {"type": "float", "value": 1.0}
    assert stored["count"] == {"type": "int", "value": 1}
    reloaded = storage.get_generated_photos()[0].metadata
    assert reloaded == {"ratio": 1.0, "count": 1, "label": "1", "note": None}
    assert isinstance(reloaded["ratio"], float)


def test_status_lifecycle_and_monotonicity(storage):
    photo = storage.save_generated_photo(None, "studio", status="pending")
    assert photo.local_path is None

    processing = storage.update_generated_photo(photo.id, {"generation_status": "processing"})
    assert processing.generation_status is GenerationStatus.PROCESSING

    done = storage.update_generated_photo(
        photo.id, {"generation_status": "completed", "source_uri": data_uri(b"result")}
    )
    assert done.generation_status is GenerationStatus.COMPLETED
    assert Path(done.local_path).read_bytes() == b"result"
    assert done.completed_at_iso is not None

    with pytest.raises(StatusTransitionError):
        storage.update_generated_photo(photo.id, {"generation_status": "pending"})
    with pytest.raises(StatusTransitionError):
        storage.update_generated_photo(photo.id, {"generation_status": "failed"})
    assert storage.get_generated_photos()[0].generation_status is GenerationStatus.COMPLETED


def test_failed_generation_is_kept_without_file(storage):
    photo = storage.save_generated_photo(None, "studio", status=GenerationStatus.PROCESSING)

    failed = storage.update_generated_photo(
        photo.id, {"generation_status": "failed", "error_message": "quota exceeded"}
    )

    photos = storage.get_generated_photos()
    assert [item.id for item in photos] == [photo.id]
    assert failed.error_message == "quota exceeded"
    assert photos[0].local_path is None
    assert storage.get_storage_stats().generated_photos_count == 1


def test_missing_file_detaches_unfinished_and_drops_completed(storage, ledger):
    pending = storage.save_generated_photo(data_uri(b"preview"), "studio", status="pending")
    completed = storage.save_generated_photo(data_uri(b"final"), "studio")
    Path(pending.local_path).unlink()
    Path(completed.local_path).unlink()

    photos = storage.get_generated_photos()

    assert [photo.id for photo in photos] == [pending.id]
    assert photos[0].local_path is None
    assert ledger.get(GENERATED_INDEX_KEY) == [pending.id]


def test_completed_without_image_is_rejected(storage):
    with pytest.raises(ValueError):
        storage.save_generated_photo(None, "studio")

    photo = storage.save_generated_photo(None, "studio", status="pending")
    with pytest.raises(ValueError):
        storage.update_generated_photo(photo.id, {"generation_status": "completed"})


def test_update_replaces_file_and_handles_unknown_ids(storage):
    photo = storage.save_generated_photo(data_uri(b"v1"), "studio")

    updated = storage.update_generated_photo(photo.id, {"source_uri": data_uri(b"v2"), "style": "noir"})

    assert updated.style == "noir"
    assert Path(updated.local_path).read_bytes() == b"v2"
    assert not Path(photo.local_path).exists()
    assert storage.update_generated_photo("generated_unknown", {"style": "x"}) is None
    with pytest.raises(ValueError):
        storage.update_generated_photo(photo.id, {"local_path": "/etc/passwd"})


def test_delete_then_read(storage):
    keep = storage.save_generated_photo(data_uri(b"keep"), "studio")
    gone = storage.save_generated_photo(data_uri(b"gone"), "studio")

    storage.delete_generated_photo(gone.id)
    storage.delete_generated_photo(gone.id)

    assert [photo.id for photo in storage.get_generated_photos()] == [keep.id]
    assert not Path(gone.local_path).exists()


def test_corrupted_record_is_dropped(storage, ledger):
    good = storage.save_generated_photo(data_uri(b"good"), "studio")
    bad = storage.save_generated_photo(data_uri(b"bad"), "studio")
    ledger.set(GENERATED_RECORD_PREFIX + bad.id, {"id": bad.id, "generation_status": "exploded"})

    assert [photo.id for photo in storage.get_generated_photos()] == [good.id]
    assert ledger.get(GENERATED_INDEX_KEY) == [good.id]


# Model name and teardown --------------------------------------------------------


def test_ai_model_name_lifecycle(storage, make_source):
    assert storage.get_ai_model_name() is None
    storage.set_ai_model_name("Ava")
    storage.set_ai_model_name("Ava v2")
    storage.save_training_images([make_source()])
    storage.save_generated_photo(data_uri(b"p"), "studio")

    assert storage.get_ai_model_name() == "Ava v2"

    storage.clear_ai_model()
    assert storage.get_ai_model_name() is None
    assert storage.get_storage_stats().to_dict() == {
        "training_images_count": 0,
        "generated_photos_count": 0,
        "total_storage_size": 0,
    }


def test_clear_all_data_sweeps_orphans(storage, make_source, ledger, config):
    storage.save_training_images([make_source()])
    orphan_file = config.storage_dir / "stray.jpg"
    orphan_file.write_bytes(b"stray")
    ledger.set(GENERATED_RECORD_PREFIX + "generated_orphan", {"id": "generated_orphan"})
    ledger.set("image_cache_keep", {"untouched": True})

    storage.clear_all_data()

    assert not config.storage_dir.exists()
    assert ledger.keys(GENERATED_RECORD_PREFIX) == []
    assert ledger.keys(TRAINING_RECORD_PREFIX) == []
    assert ledger.get("image_cache_keep") == {"untouched": True}


def test_record_with_naive_timestamp_is_dropped(storage, ledger):
    good = storage.save_generated_photo(data_uri(b"good"), "studio")
    naive = storage.save_generated_photo(data_uri(b"naive"), "studio")
    payload = ledger.get(GENERATED_RECORD_PREFIX + naive.id)
    payload["created_at_iso"] = "2024-01-01T12:00:00"
    ledger.set(GENERATED_RECORD_PREFIX + naive.id, payload)

    assert [photo.id for photo in storage.get_generated_photos()] == [good.id]
    assert ledger.get(GENERATED_INDEX_KEY) == [good.id]


def test_failed_ledger_write_removes_new_photo_file(storage, config, monkeypatch):
    def disk_full(path, data):
        raise OSError("disk full")

    monkeypatch.setattr("modules.storage.ledger.atomic_write_text", disk_full)
    with pytest.raises(OSError):
        storage.save_generated_photo(data_uri(b"lost"), "studio")

    assert list(config.storage_dir.iterdir()) == []
    monkeypatch.undo()
    assert storage.get_generated_photos() == []
