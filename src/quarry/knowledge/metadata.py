"""Per-store status records, kept outside the store file.

Each store gets ``<cache_dir>/<name>/metadata.json`` so that its status can
be reported before (or without) the data file existing.
"""

from __future__ import annotations

import json
import shutil
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Callable, Literal

from quarry.log_config import get_logger

log = get_logger(__name__)

METADATA_FILE = "metadata.json"
STALE_INDEXING_MESSAGE = "Process was interrupted during indexing"

StoreStatus = Literal["not_indexed", "indexing", "indexed", "error"]
StoreKind = Literal["vector", "graph"]
IndexingPhase = Literal["loading", "splitting", "embedding", "extracting", "building", "done", "error"]


@dataclass
class StoreMetadata:
    name: str
    kind: StoreKind = "vector"
    status: StoreStatus = "not_indexed"
    last_indexed_at: str | None = None
    last_index_duration_ms: int | None = None
    document_count: int = 0
    chunk_count: int = 0
    entity_count: int = 0
    edge_count: int = 0
    error_message: str | None = None
    source_hashes: dict[str, str] = field(default_factory=dict)
    embedding_model: str = ""

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> StoreMetadata:
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class ProgressEvent:
    """One progress notification from a running build (progress is 0-100)."""

    name: str
    phase: IndexingPhase
    progress: int
    message: str


ProgressCallback = Callable[[ProgressEvent], None]


class MetadataManager:
    """Reads and writes store status records under *cache_dir*."""

    def __init__(self, cache_dir: Path | str) -> None:
        self.cache_dir = Path(cache_dir)

    def store_dir(self, name: str) -> Path:
        return self.cache_dir / name

    def _path(self, name: str) -> Path:
        return self.store_dir(name) / METADATA_FILE

    def load(self, name: str) -> StoreMetadata | None:
        """The saved record for *name*, or None if missing or unreadable."""
        path = self._path(name)
        if not path.exists():
            return None
        try:
            return StoreMetadata.from_dict(json.loads(path.read_text(encoding="utf-8")))
        except (OSError, ValueError, TypeError) as exc:
            log.warning(f"Ignoring unreadable metadata for '{name}': {exc}")
            return None

    def save(self, metadata: StoreMetadata) -> None:
        path = self._path(metadata.name)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(metadata.to_dict(), indent=2), encoding="utf-8")

    def get_all(self, names: list[str]) -> dict[str, StoreMetadata]:
        result: dict[str, StoreMetadata] = {}
        for name in names:
            if (metadata := self.load(name)) is not None:
                result[name] = metadata
        return result

    def set_status(self, name: str, status: StoreStatus, error_message: str | None = None) -> None:
        """Update status (and clear or set the error message) of an existing record."""
        metadata = self.load(name)
        if metadata is None:
            log.warning(f"No metadata found for '{name}' when setting status to '{status}', skipping")
            return
        metadata.status = status
        metadata.error_message = error_message
        self.save(metadata)

    def delete(self, name: str) -> None:
        shutil.rmtree(self.store_dir(name), ignore_errors=True)

    def reset_stale_indexing(self, names: list[str]) -> list[str]:
        """Mark records left in ``indexing`` by a previous process as ``error``.

        Returns:
            Names that were reset.
        """
        reset: list[str] = []
        for name in names:
            metadata = self.load(name)
            if metadata is not None and metadata.status == "indexing":
                log.warning(f"'{name}' has stale 'indexing' status from a previous run, resetting to 'error'")
                metadata.status = "error"
                metadata.error_message = STALE_INDEXING_MESSAGE
                self.save(metadata)
                reset.append(name)
        return reset
