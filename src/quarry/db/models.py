"""Domain models for the quarry store engine."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any


def normalize_id(name: str, type: str) -> str:
    """Stable entity id derived from (type, name).

    Examples:
        ("Alice", "Person")          -> "person::alice"
        ("Hello World!", "Post")     -> "post::hello-world"
    """
    return re.sub(r"[^a-z0-9:]+", "-", f"{type}::{name}".lower()).strip("-")


def dump_json(value: Any) -> str:
    """Serialize a property bag / metadata map to the JSON column format.

    Values without a JSON form (dates, decimals, bytes from database rows) are
    stored as their string representation.
    """
    return json.dumps(value, ensure_ascii=False, default=str)


@dataclass
class Chunk:
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)
    source: str = ""
    embedding: list[float] = field(default_factory=list)
    id: int | None = None  # set after insert; None for unsaved chunks


@dataclass
class Entity:
    id: str
    type: str
    name: str
    description: str = ""
    properties: dict[str, Any] = field(default_factory=dict)
    embedding: list[float] = field(default_factory=list)

    @property
    def source_chunk_ids(self) -> list[str]:
        """Ids of the chunks this entity was derived from (empty for mapped rows)."""
        ids = self.properties.get("sourceChunkIds") or []
        if not isinstance(ids, list):
            raise TypeError(
                f"Entity '{self.id}': sourceChunkIds must be a list, got {type(ids).__name__}"
            )
        return [str(i) for i in ids]


@dataclass
class Relationship:
    id: str
    type: str
    source_id: str
    target_id: str
    description: str = ""
    weight: float = 1.0
    properties: dict[str, Any] = field(default_factory=dict)


@dataclass
class ScoredChunk:
    """A chunk returned by similarity search; score = 1 - cosine distance."""

    id: int
    content: str
    metadata: dict[str, Any]
    source: str
    score: float


@dataclass
class ScoredEntity:
    entity: Entity
    score: float


@dataclass
class Neighborhood:
    """Entities and edges reachable from a seed entity within a bounded number of hops."""

    entities: list[Entity] = field(default_factory=list)
    relationships: list[Relationship] = field(default_factory=list)

    @property
    def entity_ids(self) -> set[str]:
        return {e.id for e in self.entities}


@dataclass
class SearchResult:
    """One ranked hit returned by the orchestrator's merged search."""

    content: str
    metadata: dict[str, Any]
    score: float
