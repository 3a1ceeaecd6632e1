"""Source fingerprints used to decide whether a store must be rebuilt."""

from __future__ import annotations

import hashlib
import json
from pathlib import Path

from quarry.config import DatabaseSource, DirectorySource, FileSource, KnowledgeConfig, WebSource
from quarry.ingest.loaders import list_source_files


def _sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def compute_source_hashes(config: KnowledgeConfig, project_root: Path) -> dict[str, str]:
    """Map each source identifier to a sha256 content hash.

    - directory / file sources: one entry per matched file, keyed by its
      absolute path, hashing the file bytes.
    - database sources: ``database:query`` → hash of the query text.
    - web sources: ``web:url`` → hash of the URL.

    Raises:
        LoaderError: If a configured file or directory does not exist.
    """
    source = config.source
    if isinstance(source, DatabaseSource):
        return {"database:query": _sha256(source.query.encode("utf-8"))}
    if isinstance(source, WebSource):
        return {"web:url": _sha256(source.url.encode("utf-8"))}
    if isinstance(source, (DirectorySource, FileSource)):
        return {str(path): _sha256(path.read_bytes()) for path in list_source_files(source, project_root)}
    return {}


def hashes_equal(a: dict[str, str] | None, b: dict[str, str] | None) -> bool:
    """Compare two hash maps by their canonical (sorted-key) JSON form."""
    if a is None or b is None:
        return False
    return json.dumps(a, sort_keys=True) == json.dumps(b, sort_keys=True)
