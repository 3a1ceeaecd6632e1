"""Loaders for local text-like files: plain text, markdown, JSON, CSV and HTML."""

from __future__ import annotations

import csv
import io
import json
from pathlib import Path
from typing import Any

import html2text
from bs4 import BeautifulSoup

from quarry.errors import LoaderError
from quarry.ingest.base import Document


def _converter() -> html2text.HTML2Text:
    h2t = html2text.HTML2Text()
    h2t.ignore_links = True
    h2t.ignore_images = True
    h2t.body_width = 0
    return h2t


def load_text(path: Path) -> list[Document]:
    """Whole file as one document. Markdown is loaded the same way."""
    content = _read(path)
    return [Document(page_content=content, metadata={"source": str(path)})]


def load_json(path: Path) -> list[Document]:
    """One document per string leaf of the JSON value, in document order."""
    return parse_json_content(_read(path), str(path))


def load_csv(path: Path) -> list[Document]:
    return parse_csv_content(_read(path), str(path))


def load_html(path: Path, selector: str | None = None) -> list[Document]:
    text = html_to_text(_read(path), selector)
    if not text:
        return []
    return [Document(page_content=text, metadata={"source": str(path)})]


def html_to_text(html: str, selector: str | None = None) -> str:
    """Strip non-content tags and convert the page (or the *selector* matches) to text."""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup.find_all(["script", "style", "nav", "footer", "head"]):
        tag.decompose()
    if selector:
        nodes = soup.select(selector)
        markup = "\n".join(str(n) for n in nodes)
    else:
        markup = str(soup)
    return _converter().handle(markup).strip() if markup else ""


def parse_json_content(content: str, source: str) -> list[Document]:
    try:
        data = json.loads(content)
    except json.JSONDecodeError as exc:
        raise LoaderError(f"Invalid JSON in {source}: {exc}") from exc
    return [
        Document(page_content=text, metadata={"source": source})
        for text in _extract_strings(data)
    ]


def parse_csv_content(content: str, source: str) -> list[Document]:
    """One document per data row, formatted as ``column: value`` lines.

    The parsed row is kept under ``metadata["_raw_row"]`` so a direct graph
    mapping can read its columns.
    """
    reader = csv.DictReader(io.StringIO(content, newline=""))
    documents: list[Document] = []
    for i, row in enumerate(reader, start=1):
        if not any((v or "").strip() for v in row.values()):
            continue
        cleaned = {str(k).strip(): (v or "").strip() for k, v in row.items() if k is not None}
        documents.append(
            Document(
                page_content="\n".join(f"{k}: {v}" for k, v in cleaned.items()),
                metadata={"source": source, "row": i, "_raw_row": cleaned},
            )
        )
    return documents


def _extract_strings(data: Any) -> list[str]:
    if isinstance(data, str):
        return [data]
    if isinstance(data, list):
        return [s for item in data for s in _extract_strings(item)]
    if isinstance(data, dict):
        return [s for value in data.values() for s in _extract_strings(value)]
    return []


def _read(path: Path) -> str:
    try:
        return Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise LoaderError(f"Cannot read {path}: {exc}") from exc
