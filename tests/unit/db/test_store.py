"""Tests for KnowledgeDB: chunk/entity search, upserts, traversal, persistence."""

from __future__ import annotations

import sqlite3

import pytest

from quarry.db.models import Chunk, Entity, Relationship, normalize_id
from quarry.db.store import (
    MAX_KNN_K,
    KnowledgeDB,
    read_dimensions,
    validate_dimensions,
)
from quarry.errors import DimensionMismatchError

DIMS = 8


def _unit(i: int, dims: int = DIMS) -> list[float]:
    v = [0.0] * dims
    v[i] = 1.0
    return v


def _entity(name: str, type_: str = "User", vec: list[float] | None = None) -> Entity:
    return Entity(
        id=normalize_id(name, type_),
        type=type_,
        name=name,
        description=f"{type_} {name}",
        embedding=vec or _unit(0),
    )


def _rel(src: Entity, tgt: Entity, type_: str = "KNOWS") -> Relationship:
    return Relationship(id=f"{src.id}|{type_.lower()}|{tgt.id}", type=type_, source_id=src.id, target_id=tgt.id)


# ---------------------------------------------------------------------------
# Chunks
# ---------------------------------------------------------------------------


def test_insert_chunks_assigns_ids(store):
    chunks = [Chunk(content="a", embedding=_unit(0)), Chunk(content="b", embedding=_unit(1))]
    ids = store.insert_chunks(chunks)
    assert ids == [1, 2]
    assert [c.id for c in chunks] == ids
    assert store.chunk_count() == 2


def test_search_chunks_orders_by_similarity(store):
    store.insert_chunks(
        [
            Chunk(content="x-axis", metadata={"source": "a.md"}, source="a.md", embedding=_unit(0)),
            Chunk(content="y-axis", embedding=_unit(1)),
            Chunk(content="mostly x", embedding=[0.9, 0.1, 0, 0, 0, 0, 0, 0]),
        ]
    )

    hits = store.search_chunks(_unit(0), k=2)

    assert [h.content for h in hits] == ["x-axis", "mostly x"]
    assert hits[0].score == pytest.approx(1.0, abs=1e-5)
    assert hits[0].score >= hits[1].score
    assert hits[0].metadata == {"source": "a.md"}
    assert hits[0].source == "a.md"


def test_search_chunks_empty_index(store):
    assert store.search_chunks(_unit(0), k=4) == []


def test_search_chunks_k_zero(store):
    store.insert_chunks([Chunk(content="a", embedding=_unit(0))])
    assert store.search_chunks(_unit(0), k=0) == []


def test_search_with_k_beyond_knn_limit(store):
    store.insert_chunks([Chunk(content="a", embedding=_unit(0)), Chunk(content="b", embedding=_unit(1))])
    store.insert_entities([_entity("alice", vec=_unit(0))])

    assert [h.content for h in store.search_chunks(_unit(0), k=MAX_KNN_K + 1000)] == ["a", "b"]
    assert [h.entity.name for h in store.search_entities(_unit(0), k=MAX_KNN_K + 1)] == ["alice"]


def test_get_chunk(store):
    [chunk_id] = store.insert_chunks([Chunk(content="hello", metadata={"row": 1}, embedding=_unit(2))])
    chunk = store.get_chunk(chunk_id)
    assert chunk.content == "hello"
    assert chunk.metadata == {"row": 1}
    assert store.get_chunk(999) is None


def test_insert_chunks_wrong_dimension_rolls_back(store):
    good = Chunk(content="ok", embedding=_unit(0))
    bad = Chunk(content="bad", embedding=[1.0, 0.0])
    with pytest.raises(ValueError, match="dimensions"):
        store.insert_chunks([good, bad])
    assert store.chunk_count() == 0
    assert good.id is None


def test_chunk_metadata_non_json_values_stored_as_text(store):
    import datetime

    [chunk_id] = store.insert_chunks(
        [Chunk(content="x", metadata={"when": datetime.date(2024, 1, 2)}, embedding=_unit(0))]
    )
    assert store.get_chunk(chunk_id).metadata == {"when": "2024-01-02"}


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------


def test_insert_and_get_entity(store):
    alice = _entity("alice")
    alice.properties = {"email": "a@x.io", "sourceChunkIds": []}
    store.insert_entities([alice])

    got = store.get_entity("user::alice")
    assert got.name == "alice"
    assert got.type == "User"
    assert got.properties["email"] == "a@x.io"
    assert store.get_entity("user::nobody") is None


def test_entity_upsert_overwrites_row_and_vector(store):
    store.insert_entities([_entity("alice", vec=_unit(0))])
    updated = _entity("alice", vec=_unit(3))
    updated.description = "updated"
    store.insert_entities([updated])

    assert store.entity_count() == 1
    assert store.get_entity("user::alice").description == "updated"
    hits = store.search_entities(_unit(3), k=5)
    assert len(hits) == 1
    assert hits[0].entity.id == "user::alice"
    assert hits[0].score == pytest.approx(1.0, abs=1e-5)


def test_search_entities_orders_by_similarity(store):
    store.insert_entities([_entity("alice", vec=_unit(0)), _entity("bob", vec=_unit(1))])
    hits = store.search_entities(_unit(1), k=2)
    assert [h.entity.name for h in hits] == ["bob", "alice"]


def test_get_all_entities_sorted_by_id(store):
    store.insert_entities([_entity("zed"), _entity("amy")])
    assert [e.id for e in store.get_all_entities()] == ["user::amy", "user::zed"]


def test_entity_source_chunk_ids_must_be_list(store):
    bad = _entity("alice")
    bad.properties = {"sourceChunkIds": "chunk-1"}
    with pytest.raises(TypeError, match="sourceChunkIds"):
        store.insert_entities([bad])
    assert store.entity_count() == 0


# ---------------------------------------------------------------------------
# Relationships + traversal
# ---------------------------------------------------------------------------


def test_relationship_upsert_by_id(store):
    a, b = _entity("a"), _entity("b")
    store.insert_entities([a, b])
    store.insert_relationships([_rel(a, b)])
    again = _rel(a, b)
    again.weight = 2.5
    store.insert_relationships([again])

    rels = store.get_all_relationships()
    assert store.relationship_count() == 1
    assert rels[0].weight == 2.5


def test_neighborhood_depth_bounds_chain(store):
    a, b, c = _entity("a"), _entity("b"), _entity("c")
    store.insert_entities([a, b, c])
    store.insert_relationships([_rel(a, b), _rel(b, c)])

    one = store.get_neighborhood(a.id, depth=1)
    assert one.entity_ids == {a.id, b.id}
    assert len(one.relationships) == 1

    two = store.get_neighborhood(a.id, depth=2)
    assert two.entity_ids == {a.id, b.id, c.id}
    assert len(two.relationships) == 2
    assert two.entities[0].id == a.id  # seed first


def test_neighborhood_follows_incoming_edges(store):
    a, b = _entity("a"), _entity("b")
    store.insert_entities([a, b])
    store.insert_relationships([_rel(a, b)])
    assert store.get_neighborhood(b.id, depth=1).entity_ids == {a.id, b.id}


def test_neighborhood_cycle_visits_each_node_once(store):
    a, b, c = _entity("a"), _entity("b"), _entity("c")
    store.insert_entities([a, b, c])
    store.insert_relationships([_rel(a, b), _rel(b, c), _rel(c, a)])

    hood = store.get_neighborhood(a.id, depth=5)
    assert len(hood.entities) == 3
    assert len(hood.relationships) == 3


def test_neighborhood_skips_dangling_endpoint(store):
    a = _entity("a")
    store.insert_entities([a])
    store.insert_relationships(
        [Relationship(id="dangling", type="KNOWS", source_id=a.id, target_id="user::ghost")]
    )
    hood = store.get_neighborhood(a.id, depth=2)
    assert hood.entity_ids == {a.id}
    assert [r.id for r in hood.relationships] == ["dangling"]


def test_neighborhood_depth_zero_is_seed_only(store):
    a, b = _entity("a"), _entity("b")
    store.insert_entities([a, b])
    store.insert_relationships([_rel(a, b)])
    hood = store.get_neighborhood(a.id, depth=0)
    assert hood.entity_ids == {a.id}
    assert hood.relationships == []


def test_get_schema_counts_types(store):
    a, b = _entity("a"), _entity("Post 1", type_="Post")
    store.insert_entities([a, b])
    store.insert_relationships([_rel(a, b, "AUTHORED")])
    assert store.get_schema() == {
        "entity_types": {"Post": 1, "User": 1},
        "relationship_types": {"AUTHORED": 1},
    }


# ---------------------------------------------------------------------------
# Metadata, persistence, dimensions
# ---------------------------------------------------------------------------


def test_source_hashes_round_trip(store):
    assert store.get_source_hashes() is None
    store.set_source_hashes({"b": "2", "a": "1"})
    assert store.get_source_hashes() == {"a": "1", "b": "2"}


def test_persistence_across_reopen(tmp_path):
    path = tmp_path / "kb.db"
    with KnowledgeDB.open(path, DIMS) as kdb:
        kdb.insert_chunks([Chunk(content="persisted", embedding=_unit(4))])
        kdb.insert_entities([_entity("alice")])

    with KnowledgeDB.open(path, DIMS) as kdb:
        assert kdb.chunk_count() == 1
        assert kdb.search_chunks(_unit(4), k=1)[0].content == "persisted"
        assert kdb.get_entity("user::alice") is not None


def test_open_with_different_dimension_raises(tmp_path):
    path = tmp_path / "kb.db"
    KnowledgeDB.open(path, 4).close()

    with pytest.raises(DimensionMismatchError) as exc_info:
        KnowledgeDB.open(path, 8)
    assert exc_info.value.stored == 4
    assert exc_info.value.expected == 8
    assert read_dimensions(path) == 4  # file untouched


def test_open_rejects_non_positive_dimension(tmp_path):
    with pytest.raises(ValueError):
        KnowledgeDB.open(tmp_path / "kb.db", 0)


def test_read_and_validate_dimensions(tmp_path):
    path = tmp_path / "kb.db"
    assert read_dimensions(path) is None
    assert validate_dimensions(path, 4) is True

    KnowledgeDB.open(path, 4).close()
    assert read_dimensions(path) == 4
    assert validate_dimensions(path, 4) is True
    assert validate_dimensions(path, 8) is False


def test_read_dimensions_of_foreign_sqlite_file(tmp_path):
    path = tmp_path / "other.db"
    conn = sqlite3.connect(path)
    conn.execute("CREATE TABLE t (x)")
    conn.close()
    assert read_dimensions(path) is None


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


def test_clear_empties_everything_but_keeps_dimension(store):
    a, b = _entity("a"), _entity("b")
    store.insert_chunks([Chunk(content="x", embedding=_unit(0))])
    store.insert_entities([a, b])
    store.insert_relationships([_rel(a, b)])
    store.set_source_hashes({"f": "h"})

    store.clear()

    assert store.chunk_count() == 0
    assert store.entity_count() == 0
    assert store.relationship_count() == 0
    assert store.get_source_hashes() is None
    assert store.search_chunks(_unit(0), k=3) == []
    assert store.get_meta("dimensions") == str(DIMS)
    assert store.has_data() is False


def test_replace_contents_swaps_index(store):
    store.insert_chunks([Chunk(content="old", embedding=_unit(0))])
    a, b = _entity("a"), _entity("b")
    new_chunks = [Chunk(content="new", embedding=_unit(1))]

    store.replace_contents(new_chunks, [a, b], [_rel(a, b)], {"doc.md": "abc"})

    assert [h.content for h in store.search_chunks(_unit(0), k=5)] == ["new"]
    assert new_chunks[0].id is not None
    assert store.entity_count() == 2
    assert store.relationship_count() == 1
    assert store.get_source_hashes() == {"doc.md": "abc"}


def test_replace_contents_failure_keeps_previous_contents(store):
    store.insert_chunks([Chunk(content="old", embedding=_unit(0))])
    store.set_source_hashes({"doc.md": "v1"})

    with pytest.raises(ValueError):
        store.replace_contents(
            [Chunk(content="new", embedding=_unit(1)), Chunk(content="broken", embedding=[1.0])],
            source_hashes={"doc.md": "v2"},
        )

    assert [h.content for h in store.search_chunks(_unit(0), k=5)] == ["old"]
    assert store.get_source_hashes() == {"doc.md": "v1"}


def test_transaction_rolls_back_on_error(store):
    with pytest.raises(RuntimeError):
        with store.transaction() as conn:
            conn.execute("INSERT INTO metadata (key, value) VALUES ('k', 'v')")
            raise RuntimeError("boom")
    assert store.get_meta("k") is None


# ---------------------------------------------------------------------------
# Read-only access
# ---------------------------------------------------------------------------


def test_open_readonly_searches_existing_store(tmp_path):
    path = tmp_path / "kb.db"
    with KnowledgeDB.open(path, DIMS) as kdb:
        kdb.insert_chunks([Chunk(content="kept", embedding=_unit(2))])

    with KnowledgeDB.open_readonly(path) as kdb:
        assert kdb.dimensions == DIMS
        assert kdb.search_chunks(_unit(2), k=1)[0].content == "kept"
        with pytest.raises(sqlite3.OperationalError):
            kdb.insert_chunks([Chunk(content="new", embedding=_unit(3))])


def test_open_readonly_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        KnowledgeDB.open_readonly(tmp_path / "absent.db")
    assert not (tmp_path / "absent.db").exists()


def test_open_readonly_without_dimension(tmp_path):
    path = tmp_path / "other.db"
    sqlite3.connect(path).close()
    with pytest.raises(ValueError, match="no embedding dimension"):
        KnowledgeDB.open_readonly(path)


def test_read_dimensions_leaves_journal_mode_alone(tmp_path):
    path = tmp_path / "plain.db"
    conn = sqlite3.connect(path)
    conn.execute("CREATE TABLE metadata (key TEXT PRIMARY KEY, value TEXT)")
    conn.execute("INSERT INTO metadata VALUES ('dimensions', '4')")
    conn.commit()
    conn.close()

    assert read_dimensions(path) == 4

    conn = sqlite3.connect(path)
    assert conn.execute("PRAGMA journal_mode").fetchone()[0] == "delete"
    conn.close()


def test_validate_dimensions_of_non_database_file(tmp_path):
    path = tmp_path / "garbage.db"
    path.write_bytes(b"this is not a sqlite database" * 100)

    with pytest.raises(sqlite3.DatabaseError):
        read_dimensions(path)
    assert validate_dimensions(path, 8) is True
    assert path.read_bytes().startswith(b"this is not")
