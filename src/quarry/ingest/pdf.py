"""PDF loader: page text extraction via pypdf."""

from __future__ import annotations

from pathlib import Path

import pypdf

from quarry.errors import LoaderError
from quarry.ingest.base import Document


def load_pdf(path: Path) -> list[Document]:
    """Load the PDF at *path* as a single document.

    Page text is joined with blank lines; pages that yield no text (scanned
    images, etc.) are skipped. An empty PDF produces no documents.
    """
    try:
        reader = pypdf.PdfReader(str(path))
    except (OSError, pypdf.errors.PdfReadError) as exc:
        raise LoaderError(f"Cannot read PDF {path}: {exc}") from exc

    parts: list[str] = []
    for page in reader.pages:
        stripped = (page.extract_text() or "").strip()
        if stripped:
            parts.append(stripped)
    if not parts:
        return []
    return [
        Document(
            page_content="\n\n".join(parts),
            metadata={"source": str(path), "pdf_pages": len(reader.pages)},
        )
    ]
