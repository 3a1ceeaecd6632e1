"""Character-count text splitters."""

from __future__ import annotations

from quarry.config import SplitterCfg
from quarry.ingest.base import Document, TextSplitter

DEFAULT_SEPARATORS = ["\n\n", "\n", " ", ""]


def _split_on(text: str, separator: str) -> list[str]:
    pieces = text.split(separator) if separator else list(text)
    return [p for p in pieces if p != ""]


class CharacterTextSplitter(TextSplitter):
    """Split on a single separator, then merge the pieces back up to ``chunk_size``.

    Default: paragraph separator ``"\\n\\n"``.
    """

    def __init__(
        self,
        separator: str = "\n\n",
        chunk_size: int = 1000,
        chunk_overlap: int = 200,
    ) -> None:
        super().__init__(chunk_size=chunk_size, chunk_overlap=chunk_overlap)
        self.separator = separator

    def split_text(self, text: str) -> list[str]:
        if not text.strip():
            return []
        return self._merge_splits(_split_on(text, self.separator), self.separator)


class RecursiveCharacterTextSplitter(TextSplitter):
    """Split on the coarsest separator present, recursing into oversized pieces.

    Separators are tried in order (paragraph, line, word, character) so that
    chunks break at the most natural boundary that still fits ``chunk_size``.
    """

    def __init__(
        self,
        separators: list[str] | None = None,
        chunk_size: int = 1000,
        chunk_overlap: int = 200,
    ) -> None:
        super().__init__(chunk_size=chunk_size, chunk_overlap=chunk_overlap)
        self.separators = separators or list(DEFAULT_SEPARATORS)

    def split_text(self, text: str) -> list[str]:
        if not text.strip():
            return []
        return self._split(text, self.separators)

    def _split(self, text: str, separators: list[str]) -> list[str]:
        separator = separators[-1]
        remaining: list[str] = []
        for i, candidate in enumerate(separators):
            if candidate == "":
                separator = candidate
                break
            if candidate in text:
                separator = candidate
                remaining = separators[i + 1 :]
                break

        chunks: list[str] = []
        fitting: list[str] = []
        for piece in _split_on(text, separator):
            if len(piece) < self.chunk_size:
                fitting.append(piece)
                continue
            if fitting:
                chunks.extend(self._merge_splits(fitting, separator))
                fitting = []
            if remaining:
                chunks.extend(self._split(piece, remaining))
            else:
                chunks.append(piece)
        if fitting:
            chunks.extend(self._merge_splits(fitting, separator))
        return chunks


def create_splitter(cfg: SplitterCfg) -> TextSplitter:
    """Build the splitter described by a store's ``splitter:`` section."""
    if cfg.type == "recursive":
        separators = [cfg.separator, *DEFAULT_SEPARATORS] if cfg.separator else None
        return RecursiveCharacterTextSplitter(
            separators=separators,
            chunk_size=cfg.chunk_size,
            chunk_overlap=cfg.chunk_overlap,
        )
    return CharacterTextSplitter(
        separator=cfg.separator if cfg.separator is not None else "\n\n",
        chunk_size=cfg.chunk_size,
        chunk_overlap=cfg.chunk_overlap,
    )


def split_documents(cfg: SplitterCfg, documents: list[Document]) -> list[Document]:
    return create_splitter(cfg).split_documents(documents)
