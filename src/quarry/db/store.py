"""Store engine: chunks, entities, relationships and their vectors in one SQLite file.

Single interface for: chunk + entity similarity search (sqlite-vec, cosine),
entity/relationship upserts, bounded graph traversal, and the key-value
metadata that must survive restarts (embedding dimension, source hashes).
"""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Sequence

from quarry.db.connection import Database
from quarry.db.models import (
    Chunk,
    Entity,
    Neighborhood,
    Relationship,
    ScoredChunk,
    ScoredEntity,
    dump_json,
)
from quarry.db.schema import RECORD_TABLES, initialize
from quarry.db.vectors import (
    CHUNK_VECTORS,
    ENTITY_VECTORS,
    VECTOR_TABLES,
    ensure_vec_table,
    recreate_vec_table,
    serialize,
)
from quarry.errors import DimensionMismatchError
from quarry.log_config import get_logger

log = get_logger(__name__)

META_DIMENSIONS = "dimensions"
META_SOURCE_HASHES = "sourceHashes"

# Upper bound on bound parameters per IN (...) list.
_IN_BATCH = 500

# Largest k sqlite-vec accepts in a KNN query.
MAX_KNN_K = 4096


class KnowledgeDB:
    """Data access layer for one knowledge store file.

    Wraps an open sqlite3.Connection (sqlite-vec loaded, autocommit mode).
    Every multi-row write runs inside one explicit transaction and is
    all-or-nothing. Use :meth:`open` rather than the constructor.
    """

    def __init__(self, conn: sqlite3.Connection, path: Path, dimensions: int) -> None:
        self._conn = conn
        self.path = path
        self.dimensions = dimensions

    @classmethod
    def open(cls, path: Path | str, dimensions: int) -> KnowledgeDB:
        """Open or create the store at *path* with vector indexes of *dimensions*.

        Raises:
            DimensionMismatchError: If the file already records a different
                dimension. The file is left untouched; delete it and reopen.
        """
        if dimensions < 1:
            raise ValueError(f"dimensions must be >= 1, got {dimensions}")
        db = Database(path)
        conn = db.connect()
        try:
            initialize(conn)
            stored = _read_dimensions(conn)
            if stored is not None and stored != dimensions:
                raise DimensionMismatchError(str(db.db_path), stored, dimensions)
            for table in VECTOR_TABLES:
                ensure_vec_table(conn, table, dimensions)
            conn.execute(
                "INSERT OR REPLACE INTO metadata (key, value) VALUES (?, ?)",
                (META_DIMENSIONS, str(dimensions)),
            )
        except BaseException:
            conn.close()
            raise
        return cls(conn, db.db_path, dimensions)

    @classmethod
    def open_readonly(cls, path: Path | str) -> KnowledgeDB:
        """Open an existing store for queries only, at its recorded dimension.

        Raises:
            FileNotFoundError: If there is no file at *path*.
            ValueError: If the file records no embedding dimension.
        """
        db = Database(path)
        conn = db.connect(read_only=True)
        try:
            dimensions = _read_dimensions(conn)
            if dimensions is None:
                raise ValueError(f"Store '{db.db_path}' records no embedding dimension")
        except BaseException:
            conn.close()
            raise
        return cls(conn, db.db_path, dimensions)

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> KnowledgeDB:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """BEGIN … COMMIT, or ROLLBACK and re-raise on any error."""
        self._conn.execute("BEGIN")
        try:
            yield self._conn
        except BaseException:
            self._conn.execute("ROLLBACK")
            raise
        else:
            self._conn.execute("COMMIT")

    # ------------------------------------------------------------------
    # Chunks
    # ------------------------------------------------------------------

    def insert_chunks(self, chunks: Sequence[Chunk]) -> list[int]:
        """Append chunk rows and their vectors in one transaction.

        The vec row key is the chunk's newly assigned integer id. On success
        each Chunk's ``id`` is set.

        Returns:
            The new chunk ids, in input order.
        """
        with self.transaction() as conn:
            ids = self._write_chunks(conn, chunks)
        for chunk, new_id in zip(chunks, ids):
            chunk.id = new_id
        return ids

    def _write_chunks(self, conn: sqlite3.Connection, chunks: Sequence[Chunk]) -> list[int]:
        ids: list[int] = []
        for chunk in chunks:
            blob = self._vector_blob(chunk.embedding)
            cur = conn.execute(
                "INSERT INTO chunks (content, metadata, source) VALUES (?, ?, ?)",
                (chunk.content, dump_json(chunk.metadata), chunk.source),
            )
            conn.execute(
                f"INSERT INTO {CHUNK_VECTORS} (rowid, embedding) VALUES (?, ?)",
                (cur.lastrowid, blob),
            )
            ids.append(cur.lastrowid)
        return ids

    def search_chunks(self, embedding: Sequence[float], k: int) -> list[ScoredChunk]:
        """Nearest-neighbour chunk search, best first.

        Returns:
            Up to *k* ScoredChunk (score = 1 - cosine distance). Empty when the
            index is empty or *k* < 1.
        """
        if k < 1:
            return []
        k = min(k, MAX_KNN_K)
        rows = self._conn.execute(
            f"""
            WITH knn AS (
                SELECT rowid, distance FROM {CHUNK_VECTORS}
                WHERE embedding MATCH ? AND k = ?
            )
            SELECT c.id, c.content, c.metadata, c.source, knn.distance
            FROM knn
            JOIN chunks c ON c.id = knn.rowid
            ORDER BY knn.distance
            """,
            (self._vector_blob(embedding), k),
        ).fetchall()
        return [
            ScoredChunk(
                id=r["id"],
                content=r["content"],
                metadata=json.loads(r["metadata"]),
                source=r["source"],
                score=1.0 - r["distance"],
            )
            for r in rows
        ]

    def get_chunk(self, chunk_id: int) -> Chunk | None:
        row = self._conn.execute(
            "SELECT id, content, metadata, source FROM chunks WHERE id = ?", (chunk_id,)
        ).fetchone()
        if row is None:
            return None
        return Chunk(
            id=row["id"],
            content=row["content"],
            metadata=json.loads(row["metadata"]),
            source=row["source"],
        )

    def chunk_count(self) -> int:
        return self._count("chunks")

    # ------------------------------------------------------------------
    # Entities
    # ------------------------------------------------------------------

    def insert_entities(self, entities: Sequence[Entity]) -> None:
        """Upsert entity rows and replace their vectors in one transaction.

        Each entity id is registered (insert-if-absent) in entity_rowid_map to
        get a stable integer key; any existing vec row under that key is
        deleted before the new embedding is inserted, since vec0 has no
        in-place update.
        """
        with self.transaction() as conn:
            self._write_entities(conn, entities)

    def _write_entities(self, conn: sqlite3.Connection, entities: Sequence[Entity]) -> None:
        for entity in entities:
            blob = self._vector_blob(entity.embedding)
            conn.execute(
                """
                INSERT INTO entities (id, type, name, description, properties, source_chunk_ids)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    type = excluded.type,
                    name = excluded.name,
                    description = excluded.description,
                    properties = excluded.properties,
                    source_chunk_ids = excluded.source_chunk_ids
                """,
                (
                    entity.id,
                    entity.type,
                    entity.name,
                    entity.description,
                    dump_json(entity.properties),
                    json.dumps(entity.source_chunk_ids),
                ),
            )
            conn.execute(
                "INSERT OR IGNORE INTO entity_rowid_map (entity_id) VALUES (?)",
                (entity.id,),
            )
            rowid = conn.execute(
                "SELECT rowid FROM entity_rowid_map WHERE entity_id = ?", (entity.id,)
            ).fetchone()[0]
            conn.execute(f"DELETE FROM {ENTITY_VECTORS} WHERE rowid = ?", (rowid,))
            conn.execute(
                f"INSERT INTO {ENTITY_VECTORS} (rowid, embedding) VALUES (?, ?)",
                (rowid, blob),
            )

    def search_entities(self, embedding: Sequence[float], k: int) -> list[ScoredEntity]:
        """Nearest-neighbour entity search, joined back through entity_rowid_map."""
        if k < 1:
            return []
        k = min(k, MAX_KNN_K)
        rows = self._conn.execute(
            f"""
            WITH knn AS (
                SELECT rowid, distance FROM {ENTITY_VECTORS}
                WHERE embedding MATCH ? AND k = ?
            )
            SELECT e.id, e.type, e.name, e.description, e.properties, knn.distance
            FROM knn
            JOIN entity_rowid_map m ON m.rowid = knn.rowid
            JOIN entities e ON e.id = m.entity_id
            ORDER BY knn.distance
            """,
            (self._vector_blob(embedding), k),
        ).fetchall()
        return [ScoredEntity(entity=_row_to_entity(r), score=1.0 - r["distance"]) for r in rows]

    def get_entity(self, entity_id: str) -> Entity | None:
        """Return an entity by id, or None if not found."""
        row = self._conn.execute(
            "SELECT id, type, name, description, properties FROM entities WHERE id = ?",
            (entity_id,),
        ).fetchone()
        return _row_to_entity(row) if row else None

    def get_all_entities(self) -> list[Entity]:
        rows = self._conn.execute(
            "SELECT id, type, name, description, properties FROM entities ORDER BY id"
        ).fetchall()
        return [_row_to_entity(r) for r in rows]

    def entity_count(self) -> int:
        return self._count("entities")

    # ------------------------------------------------------------------
    # Relationships
    # ------------------------------------------------------------------

    def insert_relationships(self, relationships: Sequence[Relationship]) -> None:
        """Upsert relationships by id in one transaction. No vectors involved."""
        with self.transaction() as conn:
            self._write_relationships(conn, relationships)

    def _write_relationships(
        self, conn: sqlite3.Connection, relationships: Sequence[Relationship]
    ) -> None:
        conn.executemany(
            """
            INSERT OR REPLACE INTO relationships
                (id, type, source_id, target_id, description, weight, properties)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    r.id,
                    r.type,
                    r.source_id,
                    r.target_id,
                    r.description,
                    r.weight,
                    dump_json(r.properties),
                )
                for r in relationships
            ],
        )

    def get_all_relationships(self) -> list[Relationship]:
        rows = self._conn.execute(
            "SELECT id, type, source_id, target_id, description, weight, properties "
            "FROM relationships ORDER BY id"
        ).fetchall()
        return [_row_to_relationship(r) for r in rows]

    def relationship_count(self) -> int:
        return self._count("relationships")

    def get_neighborhood(self, entity_id: str, depth: int) -> Neighborhood:
        """Breadth-first expansion from *entity_id*, at most *depth* hops.

        Each hop issues one query for every edge touching the current frontier
        rather than loading the graph into memory. Nodes are visited once and
        each edge is collected once, however many paths reach it. Endpoints
        that have no entity row are not expanded past and not returned.

        Returns:
            Neighborhood with the seed plus every reached entity (discovery
            order) and every collected edge.
        """
        visited: dict[str, None] = {entity_id: None}  # insertion-ordered set
        edges: dict[str, Relationship] = {}
        frontier = [entity_id]

        for _ in range(max(depth, 0)):
            if not frontier:
                break
            next_frontier: list[str] = []
            for row in self._edges_touching(frontier):
                if row["id"] in edges:
                    continue
                edge = _row_to_relationship(row)
                edges[edge.id] = edge
                for endpoint in (edge.source_id, edge.target_id):
                    if endpoint not in visited:
                        visited[endpoint] = None
                        next_frontier.append(endpoint)
            frontier = self._existing_entity_ids(next_frontier)

        found = {e.id: e for e in self._entities_by_ids(list(visited))}
        return Neighborhood(
            entities=[found[i] for i in visited if i in found],
            relationships=list(edges.values()),
        )

    def _edges_touching(self, node_ids: list[str]) -> list[sqlite3.Row]:
        rows: list[sqlite3.Row] = []
        for batch in _batched(node_ids, _IN_BATCH):
            placeholders = ",".join("?" * len(batch))
            rows.extend(
                self._conn.execute(
                    f"""
                    SELECT id, type, source_id, target_id, description, weight, properties
                    FROM relationships
                    WHERE source_id IN ({placeholders}) OR target_id IN ({placeholders})
                    ORDER BY id
                    """,
                    (*batch, *batch),
                ).fetchall()
            )
        return rows

    def _existing_entity_ids(self, ids: list[str]) -> list[str]:
        """Filter *ids* down to those with an entity row, keeping order."""
        existing: set[str] = set()
        for batch in _batched(ids, _IN_BATCH):
            placeholders = ",".join("?" * len(batch))
            existing.update(
                r[0]
                for r in self._conn.execute(
                    f"SELECT id FROM entities WHERE id IN ({placeholders})", batch
                )
            )
        return [i for i in ids if i in existing]

    def _entities_by_ids(self, ids: list[str]) -> list[Entity]:
        entities: list[Entity] = []
        for batch in _batched(ids, _IN_BATCH):
            placeholders = ",".join("?" * len(batch))
            entities.extend(
                _row_to_entity(r)
                for r in self._conn.execute(
                    f"SELECT id, type, name, description, properties FROM entities "
                    f"WHERE id IN ({placeholders})",
                    batch,
                )
            )
        return entities

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    def set_meta(self, key: str, value: str) -> None:
        self._conn.execute(
            "INSERT OR REPLACE INTO metadata (key, value) VALUES (?, ?)", (key, value)
        )

    def get_meta(self, key: str) -> str | None:
        row = self._conn.execute("SELECT value FROM metadata WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def get_source_hashes(self) -> dict[str, str] | None:
        """Return the persisted source → content-hash map, or None if never written."""
        raw = self.get_meta(META_SOURCE_HASHES)
        return json.loads(raw) if raw is not None else None

    def set_source_hashes(self, hashes: dict[str, str]) -> None:
        self.set_meta(META_SOURCE_HASHES, json.dumps(hashes, sort_keys=True))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def clear(self) -> None:
        """Empty every record table and recreate both vector tables, in one transaction.

        The configured dimension is written back, so the file stays valid.
        """
        with self.transaction() as conn:
            self._reset(conn)
        log.debug(f"Cleared store {self.path}")

    def replace_contents(
        self,
        chunks: Sequence[Chunk],
        entities: Sequence[Entity] = (),
        relationships: Sequence[Relationship] = (),
        source_hashes: dict[str, str] | None = None,
    ) -> None:
        """Clear the store and write a complete new index in one transaction.

        Readers see either the previous contents or the new ones; a failure
        at any point rolls back to the previous contents.
        """
        with self.transaction() as conn:
            self._reset(conn)
            ids = self._write_chunks(conn, chunks)
            self._write_entities(conn, entities)
            self._write_relationships(conn, relationships)
            if source_hashes is not None:
                conn.execute(
                    "INSERT OR REPLACE INTO metadata (key, value) VALUES (?, ?)",
                    (META_SOURCE_HASHES, json.dumps(source_hashes, sort_keys=True)),
                )
        for chunk, new_id in zip(chunks, ids):
            chunk.id = new_id

    def _reset(self, conn: sqlite3.Connection) -> None:
        for table in RECORD_TABLES:
            conn.execute(f"DELETE FROM {table}")
        for table in VECTOR_TABLES:
            recreate_vec_table(conn, table, self.dimensions)
        conn.execute(
            "INSERT INTO metadata (key, value) VALUES (?, ?)",
            (META_DIMENSIONS, str(self.dimensions)),
        )

    def has_data(self) -> bool:
        return self.chunk_count() > 0

    def get_schema(self) -> dict[str, dict[str, int]]:
        """Entity and relationship types with their counts.

        Returns:
            ``{"entity_types": {type: n, ...}, "relationship_types": {type: n, ...}}``
        """
        entity_types = {
            r[0]: r[1]
            for r in self._conn.execute(
                "SELECT type, COUNT(*) FROM entities GROUP BY type ORDER BY type"
            )
        }
        relationship_types = {
            r[0]: r[1]
            for r in self._conn.execute(
                "SELECT type, COUNT(*) FROM relationships GROUP BY type ORDER BY type"
            )
        }
        return {"entity_types": entity_types, "relationship_types": relationship_types}

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _count(self, table: str) -> int:
        return self._conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]

    def _vector_blob(self, embedding: Sequence[float]) -> bytes:
        if len(embedding) != self.dimensions:
            raise ValueError(
                f"Embedding has {len(embedding)} dimensions, store expects {self.dimensions}"
            )
        return serialize(embedding)


# ------------------------------------------------------------------
# Dimension validation (usable before opening)
# ------------------------------------------------------------------


def read_dimensions(path: Path | str) -> int | None:
    """Return the dimension persisted in the store at *path*, or None.

    None means: no file, no metadata table, or no dimensions key.
    """
    if not Path(path).exists():
        return None
    conn = Database(path).connect(read_only=True)
    try:
        return _read_dimensions(conn)
    finally:
        conn.close()


def validate_dimensions(path: Path | str, expected: int) -> bool:
    """True if a store at *path* can be opened with *expected* dimensions.

    A missing file, a file without a recorded dimension, or a file that cannot
    be read counts as compatible; opening it will surface any real problem.
    """
    try:
        stored = read_dimensions(path)
    except sqlite3.Error as exc:
        log.warning(f"Could not read dimensions from {path}: {exc}")
        return True
    return stored is None or stored == expected


def _read_dimensions(conn: sqlite3.Connection) -> int | None:
    try:
        row = conn.execute(
            "SELECT value FROM metadata WHERE key = ?", (META_DIMENSIONS,)
        ).fetchone()
    except sqlite3.OperationalError:
        return None  # no metadata table yet
    return int(row[0]) if row else None


# ------------------------------------------------------------------
# Row → model helpers
# ------------------------------------------------------------------


def _batched(items: list[str], size: int) -> Iterator[list[str]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


def _row_to_entity(row: sqlite3.Row) -> Entity:
    return Entity(
        id=row["id"],
        type=row["type"],
        name=row["name"],
        description=row["description"],
        properties=json.loads(row["properties"]),
    )


def _row_to_relationship(row: sqlite3.Row) -> Relationship:
    return Relationship(
        id=row["id"],
        type=row["type"],
        source_id=row["source_id"],
        target_id=row["target_id"],
        description=row["description"],
        weight=row["weight"],
        properties=json.loads(row["properties"]),
    )
