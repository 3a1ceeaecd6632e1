"""Tests for per-store status records."""

from __future__ import annotations

import json

from quarry.knowledge.metadata import (
    STALE_INDEXING_MESSAGE,
    MetadataManager,
    StoreMetadata,
)


def test_save_and_load_round_trip(tmp_path):
    manager = MetadataManager(tmp_path)
    meta = StoreMetadata(name="docs", status="indexed", chunk_count=3, source_hashes={"a": "1"})
    manager.save(meta)

    assert (tmp_path / "docs" / "metadata.json").exists()
    assert manager.load("docs") == meta


def test_load_missing_is_none(tmp_path):
    assert MetadataManager(tmp_path).load("nope") is None


def test_load_corrupt_file_is_none(tmp_path):
    path = tmp_path / "docs" / "metadata.json"
    path.parent.mkdir()
    path.write_text("{broken", encoding="utf-8")
    assert MetadataManager(tmp_path).load("docs") is None


def test_unknown_keys_ignored(tmp_path):
    path = tmp_path / "docs" / "metadata.json"
    path.parent.mkdir()
    path.write_text(json.dumps({"name": "docs", "status": "indexed", "future_field": 1}), encoding="utf-8")
    assert MetadataManager(tmp_path).load("docs").status == "indexed"


def test_get_all_skips_missing(tmp_path):
    manager = MetadataManager(tmp_path)
    manager.save(StoreMetadata(name="a"))
    assert list(manager.get_all(["a", "b"])) == ["a"]


def test_set_status(tmp_path):
    manager = MetadataManager(tmp_path)
    manager.save(StoreMetadata(name="a", status="indexing"))
    manager.set_status("a", "error", "boom")
    meta = manager.load("a")
    assert (meta.status, meta.error_message) == ("error", "boom")

    manager.set_status("missing", "indexed")  # no record, no-op
    assert manager.load("missing") is None


def test_reset_stale_indexing(tmp_path):
    manager = MetadataManager(tmp_path)
    manager.save(StoreMetadata(name="stuck", status="indexing"))
    manager.save(StoreMetadata(name="fine", status="indexed"))

    assert manager.reset_stale_indexing(["stuck", "fine", "absent"]) == ["stuck"]

    stuck = manager.load("stuck")
    assert stuck.status == "error"
    assert stuck.error_message == STALE_INDEXING_MESSAGE
    assert manager.load("fine").status == "indexed"


def test_delete(tmp_path):
    manager = MetadataManager(tmp_path)
    manager.save(StoreMetadata(name="a"))
    manager.delete("a")
    assert not (tmp_path / "a").exists()
