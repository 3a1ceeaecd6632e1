"""Document record and the text splitter base class."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from quarry.log_config import get_logger

log = get_logger(__name__)


@dataclass
class Document:
    """A unit of loaded or split text.

    ``metadata["source"]`` names where the text came from (file path, URL or
    ``database``). Structured loaders keep the full source row under
    ``metadata["_raw_row"]`` for graph mapping.
    """

    page_content: str
    metadata: dict[str, Any] = field(default_factory=dict)


class TextSplitter(ABC):
    """Abstract base for all splitters.

    Subclasses implement ``split_text()`` and use ``_merge_splits()`` to pack
    small pieces into chunks of at most ``chunk_size`` characters, carrying up
    to ``chunk_overlap`` characters from the end of one chunk into the next.
    """

    def __init__(self, chunk_size: int = 1000, chunk_overlap: int = 200) -> None:
        if chunk_size < 1:
            raise ValueError("chunk_size must be >= 1")
        if not 0 <= chunk_overlap < chunk_size:
            raise ValueError("chunk_overlap must be >= 0 and smaller than chunk_size")
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap

    @abstractmethod
    def split_text(self, text: str) -> list[str]:
        """Split *text* into ordered chunks."""

    def split_documents(self, documents: list[Document]) -> list[Document]:
        """Split each document, copying its metadata and recording ``chunk_index``."""
        out: list[Document] = []
        for doc in documents:
            for i, text in enumerate(self.split_text(doc.page_content)):
                out.append(Document(page_content=text, metadata={**doc.metadata, "chunk_index": i}))
        return out

    def _merge_splits(self, splits: list[str], separator: str) -> list[str]:
        """Greedily join *splits* with *separator* into chunks no larger than ``chunk_size``.

        A single split longer than ``chunk_size`` becomes its own oversized chunk.
        """
        sep_len = len(separator)
        chunks: list[str] = []
        current: list[str] = []
        total = 0

        for piece in splits:
            length = len(piece)
            if total + length + (sep_len if current else 0) > self.chunk_size:
                if total > self.chunk_size:
                    log.warning(
                        f"Created a chunk of size {total}, "
                        f"which is longer than the specified {self.chunk_size}"
                    )
                if current:
                    joined = separator.join(current).strip()
                    if joined:
                        chunks.append(joined)
                    # Drop from the front until what is left fits the overlap
                    # and leaves room for the next piece.
                    while total > self.chunk_overlap or (
                        total + length + (sep_len if current else 0) > self.chunk_size
                        and total > 0
                    ):
                        total -= len(current[0]) + (sep_len if len(current) > 1 else 0)
                        current.pop(0)
            current.append(piece)
            total += length + (sep_len if len(current) > 1 else 0)

        joined = separator.join(current).strip()
        if joined:
            chunks.append(joined)
        return chunks
