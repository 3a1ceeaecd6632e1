"""Graph construction from structured data."""

from quarry.graph.mapper import (
    DirectMapping,
    EntityMapping,
    ExtractedEntity,
    ExtractedRelationship,
    MappingResult,
    RelationshipMapping,
    build_relationships,
    map_rows,
)

__all__ = [
    "DirectMapping",
    "EntityMapping",
    "ExtractedEntity",
    "ExtractedRelationship",
    "MappingResult",
    "RelationshipMapping",
    "build_relationships",
    "map_rows",
]
