"""Tests for record table initialization."""

from __future__ import annotations

import sqlite3

import pytest

from quarry.db.schema import RECORD_TABLES, initialize


def _table_columns(conn, table: str) -> set[str]:
    rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
    return {row["name"] for row in rows}


def _table_exists(conn, table: str) -> bool:
    row = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name=?", (table,)
    ).fetchone()
    return row is not None


@pytest.mark.parametrize("table", RECORD_TABLES)
def test_record_tables_exist(tmp_db, table):
    assert _table_exists(tmp_db, table)


def test_chunks_columns(tmp_db):
    assert _table_columns(tmp_db, "chunks") == {"id", "content", "metadata", "source"}


def test_entities_columns(tmp_db):
    assert _table_columns(tmp_db, "entities") == {
        "id", "type", "name", "description", "properties", "source_chunk_ids",
    }


def test_relationships_columns(tmp_db):
    assert _table_columns(tmp_db, "relationships") == {
        "id", "type", "source_id", "target_id", "description", "weight", "properties",
    }


def test_relationship_indexes(tmp_db):
    names = {
        r["name"]
        for r in tmp_db.execute("SELECT name FROM sqlite_master WHERE type='index' AND tbl_name='relationships'")
    }
    assert {"idx_relationships_source", "idx_relationships_target"} <= names


def test_initialize_idempotent(tmp_db):
    tmp_db.execute("INSERT INTO metadata (key, value) VALUES ('dimensions', '8')")
    initialize(tmp_db)
    assert tmp_db.execute("SELECT value FROM metadata").fetchone()[0] == "8"


def test_chunk_ids_autoincrement(tmp_db):
    tmp_db.execute("INSERT INTO chunks (content) VALUES ('a')")
    tmp_db.execute("INSERT INTO chunks (content) VALUES ('b')")
    ids = [r[0] for r in tmp_db.execute("SELECT id FROM chunks ORDER BY id")]
    assert ids == [1, 2]


def test_entity_rowid_map_unique(tmp_db):
    tmp_db.execute("INSERT INTO entity_rowid_map (entity_id) VALUES ('user::alice')")
    with pytest.raises(sqlite3.IntegrityError):
        tmp_db.execute("INSERT INTO entity_rowid_map (entity_id) VALUES ('user::alice')")
