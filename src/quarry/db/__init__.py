"""quarry store engine."""

from quarry.db.connection import Database
from quarry.db.models import (
    Chunk,
    Entity,
    Neighborhood,
    Relationship,
    ScoredChunk,
    ScoredEntity,
    SearchResult,
    normalize_id,
)
from quarry.db.schema import initialize
from quarry.db.store import KnowledgeDB, read_dimensions, validate_dimensions
from quarry.db.vectors import ensure_vec_table, recreate_vec_table

__all__ = [
    "Database",
    "KnowledgeDB",
    "initialize",
    "ensure_vec_table",
    "recreate_vec_table",
    "read_dimensions",
    "validate_dimensions",
    "normalize_id",
    "Chunk",
    "Entity",
    "Neighborhood",
    "Relationship",
    "ScoredChunk",
    "ScoredEntity",
    "SearchResult",
]
