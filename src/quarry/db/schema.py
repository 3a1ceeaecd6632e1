"""Database schema DDL and initialization.

Vec tables (chunk_vectors, entity_vectors) are NOT created here; use
ensure_vec_table(), which needs the embedding dimension.
"""

from __future__ import annotations

import sqlite3

_CREATE_CHUNKS = """
CREATE TABLE IF NOT EXISTS chunks (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    content         TEXT NOT NULL,
    metadata        TEXT NOT NULL DEFAULT '{}',
    source          TEXT NOT NULL DEFAULT ''
)
"""

_CREATE_ENTITIES = """
CREATE TABLE IF NOT EXISTS entities (
    id                  TEXT PRIMARY KEY,
    type                TEXT NOT NULL,
    name                TEXT NOT NULL,
    description         TEXT NOT NULL DEFAULT '',
    properties          TEXT NOT NULL DEFAULT '{}',
    source_chunk_ids    TEXT NOT NULL DEFAULT '[]'
)
"""

_CREATE_RELATIONSHIPS = """
CREATE TABLE IF NOT EXISTS relationships (
    id              TEXT PRIMARY KEY,
    type            TEXT NOT NULL,
    source_id       TEXT NOT NULL,
    target_id       TEXT NOT NULL,
    description     TEXT NOT NULL DEFAULT '',
    weight          REAL NOT NULL DEFAULT 1.0,
    properties      TEXT NOT NULL DEFAULT '{}'
)
"""

# Traversal looks edges up from both ends.
_CREATE_RELATIONSHIP_INDEXES = (
    "CREATE INDEX IF NOT EXISTS idx_relationships_source ON relationships(source_id)",
    "CREATE INDEX IF NOT EXISTS idx_relationships_target ON relationships(target_id)",
)

_CREATE_METADATA = """
CREATE TABLE IF NOT EXISTS metadata (
    key             TEXT PRIMARY KEY,
    value           TEXT NOT NULL
)
"""

# vec0 rows are addressed by integer rowid; entities by a string id.
# This table is the bijection between the two.
_CREATE_ENTITY_ROWID_MAP = """
CREATE TABLE IF NOT EXISTS entity_rowid_map (
    rowid           INTEGER PRIMARY KEY AUTOINCREMENT,
    entity_id       TEXT NOT NULL UNIQUE
)
"""

RECORD_TABLES: tuple[str, ...] = ("chunks", "entities", "relationships", "metadata", "entity_rowid_map")


def initialize(conn: sqlite3.Connection) -> None:
    """Create all record tables and indexes (idempotent)."""
    for ddl in (
        _CREATE_CHUNKS,
        _CREATE_ENTITIES,
        _CREATE_RELATIONSHIPS,
        _CREATE_METADATA,
        _CREATE_ENTITY_ROWID_MAP,
        *_CREATE_RELATIONSHIP_INDEXES,
    ):
        conn.execute(ddl)
