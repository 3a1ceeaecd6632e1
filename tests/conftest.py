"""Shared pytest fixtures."""

from __future__ import annotations

import hashlib
import re
from pathlib import Path

import pytest
import yaml

from quarry.config import QuarryConfig
from quarry.db.connection import Database
from quarry.db.schema import initialize
from quarry.db.store import KnowledgeDB

DIMS = 8


def word_vector(text: str, dims: int = DIMS) -> list[float]:
    """Deterministic bag-of-words vector: texts sharing words point the same way."""
    vector = [0.01] * dims
    for word in re.findall(r"[a-z0-9]+", text.lower()):
        bucket = int(hashlib.md5(word.encode()).hexdigest(), 16) % dims
        vector[bucket] += 1.0
    return vector


class FakeEmbeddings:
    """Offline embeddings provider that records every call."""

    def __init__(self, dims: int = DIMS, fail: bool = False) -> None:
        self.dims = dims
        self.fail = fail
        self.query_calls: list[str] = []
        self.document_calls: list[list[str]] = []

    async def embed_query(self, text: str) -> list[float]:
        self.query_calls.append(text)
        if self.fail:
            raise RuntimeError("provider unavailable")
        return word_vector(text, self.dims)

    async def embed_documents(self, texts):
        self.document_calls.append(list(texts))
        if self.fail:
            raise RuntimeError("provider unavailable")
        return [word_vector(t, self.dims) for t in texts]

    @property
    def documents_embedded(self) -> int:
        return sum(len(batch) for batch in self.document_calls)


@pytest.fixture
def tmp_db(tmp_path):
    """File-based connection in tmp_path with record tables initialized, closed after test."""
    db = Database(tmp_path / "store.db")
    conn = db.connect()
    initialize(conn)
    yield conn
    conn.close()


@pytest.fixture
def store(tmp_path):
    """An open KnowledgeDB with 8-dimensional vector indexes."""
    kdb = KnowledgeDB.open(tmp_path / "store.db", DIMS)
    yield kdb
    kdb.close()


@pytest.fixture
def fake_embeddings() -> FakeEmbeddings:
    return FakeEmbeddings()


@pytest.fixture
def quarry_config() -> QuarryConfig:
    return QuarryConfig()


@pytest.fixture
def project(tmp_path) -> Path:
    """A project with a ``docs`` directory store over two markdown files."""
    docs = tmp_path / "docs"
    docs.mkdir()
    (docs / "alpha.md").write_text("Alice maintains the billing service.\n\nBilling runs nightly.", encoding="utf-8")
    (docs / "beta.md").write_text("Bob owns the search cluster.\n\nSearch uses vectors.", encoding="utf-8")

    knowledge = tmp_path / "knowledge"
    knowledge.mkdir()
    write_knowledge(
        knowledge / "docs.knowledge.yaml",
        {
            "name": "docs",
            "description": "Team docs",
            "source": {"type": "directory", "path": "docs", "pattern": "*.md"},
            "loader": {"type": "markdown"},
            "splitter": {"type": "recursive", "chunk_size": 200, "chunk_overlap": 20},
        },
    )
    return tmp_path


def write_knowledge(path: Path, data: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(data, sort_keys=False), encoding="utf-8")
