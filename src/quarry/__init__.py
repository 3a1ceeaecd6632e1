"""quarry: embedded hybrid knowledge store: chunks, entity graph and vectors in one SQLite file."""

__version__ = "0.1.0"
