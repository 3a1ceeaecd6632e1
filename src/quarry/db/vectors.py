"""sqlite-vec virtual table management."""

from __future__ import annotations

import re
import sqlite3
from typing import Sequence

import sqlite_vec

CHUNK_VECTORS = "chunk_vectors"
ENTITY_VECTORS = "entity_vectors"
VECTOR_TABLES: tuple[str, ...] = (CHUNK_VECTORS, ENTITY_VECTORS)


def table_exists(conn: sqlite3.Connection, name: str) -> bool:
    return (
        conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name=?", (name,)
        ).fetchone()
        is not None
    )


def _check(table: str, dimensions: int) -> None:
    if not re.fullmatch(r"[a-z0-9_]+", table):
        raise ValueError(f"Invalid vec table name '{table}'.")
    if dimensions < 1:
        raise ValueError(f"dimensions must be >= 1, got {dimensions}")


def ensure_vec_table(conn: sqlite3.Connection, table: str, dimensions: int) -> str:
    """Create the *table* vec0 virtual table (cosine metric) if it doesn't already exist.

    vec0 does not support ``CREATE VIRTUAL TABLE IF NOT EXISTS``, so existence
    is checked against sqlite_master first.

    Args:
        conn: Active database connection (sqlite-vec must be loaded).
        table: Table name (lowercase letters, digits and underscores).
        dimensions: Embedding vector dimensions.

    Returns:
        The table name.
    """
    _check(table, dimensions)
    if not table_exists(conn, table):
        conn.execute(
            f"CREATE VIRTUAL TABLE {table} USING vec0("
            f"embedding float[{dimensions}] distance_metric=cosine)"
        )
    return table


def recreate_vec_table(conn: sqlite3.Connection, table: str, dimensions: int) -> str:
    """Drop and recreate *table*; vec0 tables cannot be emptied in place."""
    _check(table, dimensions)
    conn.execute(f"DROP TABLE IF EXISTS {table}")
    return ensure_vec_table(conn, table, dimensions)


def serialize(vector: Sequence[float]) -> bytes:
    """Pack *vector* as raw float32 (little-endian on every platform sqlite-vec ships for)."""
    return sqlite_vec.serialize_float32(list(vector))
