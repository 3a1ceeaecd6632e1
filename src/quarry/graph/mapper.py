"""Direct (model-free) mapping of structured rows to entities and relationships.

Every row contributes to the graph: an entity is materialised the first time
its ``type::id`` key is seen, and a relationship whose endpoints are missing is
skipped without dropping the row's entities.

Example mapping (YAML, under ``graph.direct_mapping``)::

    entities:
      - type: User
        id_column: user_id
        name_column: username
        properties: [email, {joined: created_at}]
      - type: Post
        id_column: post_id
        name_column: title
    relationships:
      - type: AUTHORED
        source: User
        target: Post
        source_id_column: user_id
        target_id_column: post_id
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Union

from quarry.db.models import Relationship, normalize_id
from quarry.errors import ConfigError
from quarry.log_config import get_logger

log = get_logger(__name__)

GROUP_NODE_TYPE = "GroupNode"
CHILD_OF = "CHILD_OF"

# A property spec copies a column verbatim ("email") or renames it ({"body": "content"}).
PropertySpec = Union[str, dict[str, str]]


# ---------------------------------------------------------------------------
# Mapping config
# ---------------------------------------------------------------------------


@dataclass
class EntityMapping:
    type: str
    id_column: str
    name_column: str | None = None
    properties: list[PropertySpec] = field(default_factory=list)


@dataclass
class RelationshipMapping:
    """One relationship type between two mapped entity types.

    Attributes:
        group_node: Optional label. When set, the source is linked to a synthetic
            ``GroupNode`` ("<label> (<target name>)") which is itself linked
            ``CHILD_OF`` the real target.
    """

    type: str
    source: str
    target: str
    source_id_column: str
    target_id_column: str
    group_node: str | None = None


@dataclass
class DirectMapping:
    entities: list[EntityMapping] = field(default_factory=list)
    relationships: list[RelationshipMapping] = field(default_factory=list)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> DirectMapping:
        """Parse a ``direct_mapping`` block. Accepts snake_case or camelCase keys.

        Raises:
            ConfigError: If an entity or relationship mapping lacks a required key.
        """
        if not isinstance(raw, Mapping):
            raise ConfigError("direct_mapping must be a mapping")

        entities: list[EntityMapping] = []
        for i, e in enumerate(raw.get("entities") or []):
            entities.append(
                EntityMapping(
                    type=_required(e, "type", f"direct_mapping.entities[{i}]"),
                    id_column=_required(e, "id_column", f"direct_mapping.entities[{i}]"),
                    name_column=_key(e, "name_column"),
                    properties=[_parse_property(p) for p in e.get("properties") or []],
                )
            )
        if not entities:
            raise ConfigError("direct_mapping requires at least one entity mapping")

        relationships: list[RelationshipMapping] = []
        for i, r in enumerate(raw.get("relationships") or []):
            where = f"direct_mapping.relationships[{i}]"
            relationships.append(
                RelationshipMapping(
                    type=_required(r, "type", where),
                    source=_required(r, "source", where),
                    target=_required(r, "target", where),
                    source_id_column=_required(r, "source_id_column", where),
                    target_id_column=_required(r, "target_id_column", where),
                    group_node=_key(r, "group_node"),
                )
            )
        return cls(entities=entities, relationships=relationships)


def _key(raw: Mapping[str, Any], name: str) -> Any:
    if name in raw:
        return raw[name]
    head, *rest = name.split("_")
    return raw.get(head + "".join(p.title() for p in rest))


def _required(raw: Mapping[str, Any], name: str, where: str) -> str:
    value = _key(raw, name)
    if not value:
        raise ConfigError(f"{where}.{name} is required")
    return str(value)


def _parse_property(spec: Any) -> PropertySpec:
    if isinstance(spec, str):
        return spec
    if isinstance(spec, Mapping) and len(spec) == 1:
        (out, col), = spec.items()
        return {str(out): str(col)}
    raise ConfigError(f"Invalid property spec {spec!r}: use 'column' or {{output: column}}")


# ---------------------------------------------------------------------------
# Mapping output
# ---------------------------------------------------------------------------


@dataclass
class ExtractedEntity:
    name: str
    type: str
    description: str
    properties: dict[str, Any] = field(default_factory=dict)

    @property
    def id(self) -> str:
        return normalize_id(self.name, self.type)


@dataclass
class ExtractedRelationship:
    """An edge whose endpoints are still named, not yet resolved to entity ids."""

    source_name: str
    source_type: str
    target_name: str
    target_type: str
    type: str
    description: str
    weight: float = 1.0


@dataclass
class MappingResult:
    entities: list[ExtractedEntity] = field(default_factory=list)
    relationships: list[ExtractedRelationship] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Mapper
# ---------------------------------------------------------------------------


def map_rows(rows: Iterable[Any], mapping: DirectMapping) -> MappingResult:
    """Map structured rows straight to entities and relationships.

    Args:
        rows: Row dicts, or loaded documents whose ``metadata["_raw_row"]``
            (falling back to ``metadata``) holds the row.
        mapping: Entity and relationship mappings.

    Returns:
        MappingResult with deduplicated entities (first occurrence wins) and
        one relationship per row per resolvable relationship mapping.
    """
    result = MappingResult()
    seen: dict[str, ExtractedEntity] = {}
    n_rows = 0

    for item in rows:
        n_rows += 1
        row = _row_of(item)
        if row is None:
            log.warning("Skipping document without valid row data")
            continue

        for em in mapping.entities:
            entity_id = row.get(em.id_column)
            if not _present(entity_id):
                continue
            key = f"{em.type}::{entity_id}"
            if key in seen:
                continue

            name = row.get(em.name_column) if em.name_column else f"{em.type}-{entity_id}"
            if not _present(name):
                continue

            properties = _resolve_properties(row, em.properties)
            properties["sourceChunkIds"] = []
            entity = ExtractedEntity(
                name=str(name),
                type=em.type,
                description=f"{em.type} entity from database",
                properties=properties,
            )
            result.entities.append(entity)
            seen[key] = entity

        for rm in mapping.relationships:
            _map_relationship(row, rm, seen, result)

    log.info(
        f"Direct mapping complete: {n_rows} rows → {len(result.entities)} entities, "
        f"{len(result.relationships)} relationships"
    )
    return result


def _map_relationship(
    row: Mapping[str, Any],
    rm: RelationshipMapping,
    seen: dict[str, ExtractedEntity],
    result: MappingResult,
) -> None:
    source_id = row.get(rm.source_id_column)
    target_id = row.get(rm.target_id_column)
    if not (_present(source_id) and _present(target_id)):
        return

    source = seen.get(f"{rm.source}::{source_id}")
    target = seen.get(f"{rm.target}::{target_id}")
    if source is None or target is None:
        log.debug(
            f"Skipping relationship {rm.type}: entity not found "
            f"({rm.source}::{source_id} -> {rm.target}::{target_id})"
        )
        return

    if not rm.group_node:
        result.relationships.append(
            ExtractedRelationship(
                source_name=source.name,
                source_type=source.type,
                target_name=target.name,
                target_type=target.type,
                type=rm.type,
                description=f"{rm.source} {rm.type} {rm.target}",
            )
        )
        return

    group_key = f"{GROUP_NODE_TYPE}::{target_id}::{rm.group_node}"
    group = seen.get(group_key)
    if group is None:
        group = ExtractedEntity(
            name=f"{rm.group_node} ({target.name})",
            type=GROUP_NODE_TYPE,
            description=f"{rm.group_node} group under {target.name}",
            properties={"label": rm.group_node, "parentName": target.name, "sourceChunkIds": []},
        )
        result.entities.append(group)
        seen[group_key] = group
        result.relationships.append(
            ExtractedRelationship(
                source_name=group.name,
                source_type=GROUP_NODE_TYPE,
                target_name=target.name,
                target_type=target.type,
                type=CHILD_OF,
                description=f"{rm.group_node} {CHILD_OF} {target.name}",
            )
        )

    result.relationships.append(
        ExtractedRelationship(
            source_name=source.name,
            source_type=source.type,
            target_name=group.name,
            target_type=GROUP_NODE_TYPE,
            type=rm.type,
            description=f"{rm.source} {rm.type} {rm.group_node}",
        )
    )


def build_relationships(
    extracted: Iterable[ExtractedRelationship],
    entity_ids: Iterable[str],
) -> list[Relationship]:
    """Resolve named edges to persisted entity ids.

    Edges whose endpoints are not among *entity_ids* are dropped. The edge id
    is ``"<source_id>|<type>|<target_id>"``, so the same edge produced by two
    rows collapses into a single upsert.
    """
    known = set(entity_ids)
    relationships: dict[str, Relationship] = {}
    for rel in extracted:
        source_id = normalize_id(rel.source_name, rel.source_type)
        target_id = normalize_id(rel.target_name, rel.target_type)
        if source_id not in known or target_id not in known:
            continue
        rel_id = f"{source_id}|{rel.type.lower()}|{target_id}"
        relationships[rel_id] = Relationship(
            id=rel_id,
            type=rel.type,
            source_id=source_id,
            target_id=target_id,
            description=rel.description,
            weight=rel.weight,
        )
    return list(relationships.values())


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _row_of(item: Any) -> Mapping[str, Any] | None:
    """Return the structured row carried by *item*, or None if it has none."""
    if hasattr(item, "metadata"):
        meta = item.metadata
        if not isinstance(meta, Mapping):
            return None
        raw = meta.get("_raw_row", meta.get("_rawRow"))
        if raw is None and ("_raw_row" in meta or "_rawRow" in meta):
            return None
        row = raw if raw is not None else meta
        return row if isinstance(row, Mapping) else None
    return item if isinstance(item, Mapping) else None


def _present(value: Any) -> bool:
    return value is not None and value != ""


def _resolve_properties(row: Mapping[str, Any], specs: list[PropertySpec]) -> dict[str, Any]:
    properties: dict[str, Any] = {}
    for spec in specs:
        if isinstance(spec, str):
            properties[spec] = row.get(spec)
        else:
            for out, col in spec.items():
                properties[out] = row.get(col)
    return properties
