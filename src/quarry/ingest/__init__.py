"""quarry ingest: document loaders and text splitters."""

from quarry.ingest.base import Document, TextSplitter
from quarry.ingest.loaders import list_source_files, load_documents
from quarry.ingest.splitters import (
    CharacterTextSplitter,
    RecursiveCharacterTextSplitter,
    create_splitter,
    split_documents,
)

__all__ = [
    "CharacterTextSplitter",
    "Document",
    "RecursiveCharacterTextSplitter",
    "TextSplitter",
    "create_splitter",
    "list_source_files",
    "load_documents",
    "split_documents",
]
