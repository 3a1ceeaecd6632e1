"""Database loader: one document per row of a SQL query."""

from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Any

from quarry.config import DatabaseSource
from quarry.errors import ConfigError, LoaderError
from quarry.ingest.base import Document
from quarry.log_config import get_logger

log = get_logger(__name__)

_SQLITE_PREFIX = "sqlite://"


def sqlite_path(connection_string: str) -> Path:
    """File path of a ``sqlite://`` connection string.

    Raises:
        ConfigError: For any other scheme.
    """
    if not connection_string.startswith(_SQLITE_PREFIX):
        scheme = connection_string.split("://", 1)[0] if "://" in connection_string else connection_string
        raise ConfigError(
            f"Unsupported database connection '{scheme}'. Only sqlite:// connection strings are supported."
        )
    return Path(connection_string[len(_SQLITE_PREFIX):])


def load_database(source: DatabaseSource) -> list[Document]:
    """Run ``source.query`` and turn every row into a document.

    Content comes from ``content_column``; metadata holds the selected
    ``metadata_columns`` (every column when unset) and the whole row under
    ``_raw_row`` for direct graph mapping.

    Raises:
        ConfigError: If the connection string is not ``sqlite://``.
        LoaderError: If the database is missing, the query fails, or a row has
            no value in the content column.
    """
    path = sqlite_path(source.connection_string)
    if not path.exists():
        raise LoaderError(f"Database file not found: {path}")

    preview = source.query[:100] + ("..." if len(source.query) > 100 else "")
    log.info(f"Loading documents from database: {preview}")

    documents: list[Document] = []
    # Read-only: the query must not be able to modify the source database.
    conn = sqlite3.connect(f"file:{path}?mode=ro", uri=True)
    conn.row_factory = sqlite3.Row
    try:
        cursor = conn.execute(source.query)
        while rows := cursor.fetchmany(source.batch_size):
            for row in rows:
                documents.append(_row_to_document(dict(row), source))
            log.debug(f"Processed {len(documents)} row(s)")
    except sqlite3.Error as exc:
        raise LoaderError(f"Failed to load documents from database: {exc}") from exc
    finally:
        conn.close()

    log.info(f"Loaded {len(documents)} document(s) from database")
    return documents


def _row_to_document(row: dict[str, Any], source: DatabaseSource) -> Document:
    content = row.get(source.content_column)
    if content is None:
        raise LoaderError(f"Content column '{source.content_column}' not found or is null in row")

    columns = source.metadata_columns if source.metadata_columns else list(row)
    metadata: dict[str, Any] = {col: row[col] for col in columns if col in row}
    metadata.setdefault("source", "database")
    metadata["_raw_row"] = row
    return Document(page_content=str(content), metadata=metadata)
