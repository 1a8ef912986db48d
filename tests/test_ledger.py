"""MetadataLedger unit tests."""

from __future__ import annotations

import json

import pytest

from modules.storage.ledger import MetadataLedger


def test_values_survive_reload(tmp_path):
    path = tmp_path / "ledger.json"
    ledger = MetadataLedger(path)
    ledger.set("ai_model_name", "Sunny")
    ledger.set("training_images", ["a", "b"])

    reopened = MetadataLedger(path)
    assert reopened.get("ai_model_name") == "Sunny"
    assert reopened.get("training_images") == ["a", "b"]
    assert reopened.get("missing", "fallback") == "fallback"


def test_keys_keep_insertion_order(tmp_path):
    ledger = MetadataLedger(tmp_path / "ledger.json")
    for key in ("image_cache_b", "other", "image_cache_a", "image_cache_c"):
        ledger.set(key, {"key": key})

    assert ledger.keys("image_cache_") == ["image_cache_b", "image_cache_a", "image_cache_c"]
    assert MetadataLedger(ledger.path).keys("image_cache_") == ledger.keys("image_cache_")


def test_get_returns_copies(tmp_path):
    ledger = MetadataLedger(tmp_path / "ledger.json")
    ledger.set("generated_photos", ["x"])

    value = ledger.get("generated_photos")
    value.append("y")

    assert ledger.get("generated_photos") == ["x"]


def test_remove_and_clear(tmp_path):
    ledger = MetadataLedger(tmp_path / "ledger.json")
    ledger.set("image_cache_1", 1)
    ledger.set("image_cache_2", 2)
    ledger.set("keep", 3)

    assert ledger.remove("image_cache_1") is True
    assert ledger.remove("image_cache_1") is False
    assert ledger.clear("image_cache_") == 1
    assert ledger.keys() == ["keep"]


def test_unencodable_value_is_rejected(tmp_path):
    ledger = MetadataLedger(tmp_path / "ledger.json")
    ledger.set("record", {"ok": True})

    with pytest.raises(TypeError):
        ledger.set("record", {"bad": object()})

    assert ledger.get("record") == {"ok": True}
    assert json.loads(ledger.path.read_text(encoding="utf-8")) == {"record": {"ok": True}}


def test_unreadable_document_is_moved_aside(tmp_path):
    path = tmp_path / "ledger.json"
    path.write_text("{not json", encoding="utf-8")

    ledger = MetadataLedger(path)
    assert ledger.keys() == []

    ledger.set("fresh", 1)
    quarantined = list(tmp_path.glob("ledger.json.corrupt-*"))
    assert len(quarantined) == 1
    assert quarantined[0].read_text(encoding="utf-8") == "{not json"
    assert MetadataLedger(path).get("fresh") == 1


def test_no_temporary_file_left_behind(tmp_path):
    ledger = MetadataLedger(tmp_path / "nested" / "ledger.json")
    ledger.set("key", "value")

    assert sorted(p.name for p in (tmp_path / "nested").iterdir()) == ["ledger.json"]


def test_failed_write_leaves_memory_and_disk_unchanged(tmp_path, monkeypatch):
    ledger = MetadataLedger(tmp_path / "ledger.json")
    ledger.set("a", 1)
    ledger.set("gone", 2)

    def disk_full(path, data):
        raise OSError("disk full")

    monkeypatch.setattr("modules.storage.ledger.atomic_write_text", disk_full)
    with pytest.raises(OSError):
        ledger.set("b", 2)
    with pytest.raises(OSError):
        ledger.remove("gone")
    with pytest.raises(OSError):
        ledger.clear()

    assert ledger.get("b") is None
    assert ledger.keys() == ["a", "gone"]

    monkeypatch.undo()
    ledger.set("c", 3)
    assert json.loads(ledger.path.read_text(encoding="utf-8")) == {"a": 1, "gone": 2, "c": 3}
