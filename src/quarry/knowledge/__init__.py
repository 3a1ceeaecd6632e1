"""Knowledge store orchestration: build pipeline, status records, hybrid search."""

from quarry.knowledge.hashing import compute_source_hashes
from quarry.knowledge.manager import KnowledgeManager, KnowledgeStore, format_neighborhood
from quarry.knowledge.metadata import MetadataManager, ProgressEvent, StoreMetadata

__all__ = [
    "KnowledgeManager",
    "KnowledgeStore",
    "MetadataManager",
    "ProgressEvent",
    "StoreMetadata",
    "compute_source_hashes",
    "format_neighborhood",
]
