"""Source dispatch: turn a store's ``source`` + ``loader`` config into documents."""

from __future__ import annotations

from pathlib import Path
from typing import Callable

from quarry.config import DatabaseSource, DirectorySource, FileSource, KnowledgeConfig, WebSource
from quarry.errors import ConfigError, LoaderError
from quarry.ingest.base import Document
from quarry.ingest.database import load_database
from quarry.ingest.files import load_csv, load_html, load_json, load_text
from quarry.ingest.pdf import load_pdf
from quarry.ingest.web import WebLoader
from quarry.log_config import get_logger

log = get_logger(__name__)

FileLoader = Callable[[Path], list[Document]]

_FILE_LOADERS: dict[str, FileLoader] = {
    "text": load_text,
    "markdown": load_text,
    "json": load_json,
    "csv": load_csv,
    "pdf": load_pdf,
    "html": load_html,
}


def list_source_files(source: DirectorySource | FileSource, project_root: Path) -> list[Path]:
    """Files covered by a directory or file source, sorted by path.

    Raises:
        LoaderError: If the configured path does not exist.
    """
    base = (project_root / source.path).resolve()
    if isinstance(source, FileSource):
        if not base.is_file():
            raise LoaderError(f"Source file not found: {base}")
        return [base]
    if not base.is_dir():
        raise LoaderError(f"Source directory not found: {base}")
    matches = base.rglob(source.pattern) if source.recursive else base.glob(source.pattern)
    return sorted(p for p in matches if p.is_file())


def load_documents(config: KnowledgeConfig, project_root: Path) -> list[Document]:
    """Load every document of *config*'s source.

    Raises:
        ConfigError: For an unknown source or loader type.
        LoaderError: If the source cannot be read.
    """
    source = config.source
    if isinstance(source, DatabaseSource):
        return load_database(source)
    if isinstance(source, WebSource):
        return WebLoader(source, config.loader.type).load()
    if not isinstance(source, (DirectorySource, FileSource)):
        raise ConfigError(f"Unknown source type: {getattr(source, 'type', source)!r}")

    loader = _FILE_LOADERS.get(config.loader.type)
    if loader is None:
        raise ConfigError(f"Unknown loader type: {config.loader.type!r}")

    files = list_source_files(source, project_root)
    if isinstance(source, DirectorySource):
        log.info(f"Found {len(files)} file(s) in {project_root / source.path}")

    documents: list[Document] = []
    for path in files:
        documents.extend(loader(path))
    return documents
