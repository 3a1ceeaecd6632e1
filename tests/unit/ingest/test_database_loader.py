"""Tests for the SQL database loader."""

from __future__ import annotations

import sqlite3

import pytest

from quarry.config import DatabaseSource
from quarry.errors import ConfigError, LoaderError
from quarry.ingest.database import load_database, sqlite_path


@pytest.fixture
def blog_db(tmp_path):
    path = tmp_path / "blog.db"
    conn = sqlite3.connect(path)
    conn.executescript(
        """
        CREATE TABLE posts (post_id INTEGER, user_id INTEGER, username TEXT, title TEXT, body TEXT);
        INSERT INTO posts VALUES (1, 10, 'alice', 'Hello', 'First post');
        INSERT INTO posts VALUES (2, 11, 'bob', 'Again', 'Second post');
        INSERT INTO posts VALUES (3, 10, 'alice', 'More', 'Third post');
        """
    )
    conn.commit()
    conn.close()
    return path


def _source(path, **kwargs) -> DatabaseSource:
    return DatabaseSource(
        connection_string=f"sqlite://{path}",
        query=kwargs.pop("query", "SELECT * FROM posts ORDER BY post_id"),
        content_column=kwargs.pop("content_column", "body"),
        **kwargs,
    )


def test_one_document_per_row(blog_db):
    docs = load_database(_source(blog_db, batch_size=2))
    assert [d.page_content for d in docs] == ["First post", "Second post", "Third post"]


def test_metadata_defaults_to_all_columns_and_keeps_row(blog_db):
    doc = load_database(_source(blog_db))[0]
    assert doc.metadata["title"] == "Hello"
    assert doc.metadata["source"] == "database"
    assert doc.metadata["_raw_row"] == {
        "post_id": 1, "user_id": 10, "username": "alice", "title": "Hello", "body": "First post",
    }


def test_metadata_columns_selects_subset(blog_db):
    doc = load_database(_source(blog_db, metadata_columns=["title"]))[0]
    assert set(doc.metadata) == {"title", "source", "_raw_row"}


def test_null_content_raises(blog_db):
    with pytest.raises(LoaderError, match="Content column 'missing'"):
        load_database(_source(blog_db, content_column="missing"))


def test_bad_query_raises(blog_db):
    with pytest.raises(LoaderError, match="Failed to load"):
        load_database(_source(blog_db, query="SELECT * FROM nope"))


def test_query_cannot_write(blog_db):
    with pytest.raises(LoaderError):
        load_database(_source(blog_db, query="DELETE FROM posts"))
    conn = sqlite3.connect(blog_db)
    assert conn.execute("SELECT COUNT(*) FROM posts").fetchone()[0] == 3
    conn.close()


def test_missing_database_file(tmp_path):
    with pytest.raises(LoaderError, match="not found"):
        load_database(_source(tmp_path / "nope.db"))


def test_non_sqlite_scheme_rejected():
    with pytest.raises(ConfigError, match="postgresql"):
        sqlite_path("postgresql://user@host/db")
