"""Exception hierarchy shared by the store engine, loaders and orchestrator."""

from __future__ import annotations


class QuarryError(Exception):
    """Base class for all quarry errors."""


class ConfigError(QuarryError, ValueError):
    """Raised when a config file contains an invalid or forbidden value."""


class DimensionMismatchError(QuarryError):
    """Raised when a store file was created with a different embedding dimension.

    The file cannot be reused; the caller must delete it and create a new one.
    """

    def __init__(self, path: str, stored: int, expected: int) -> None:
        super().__init__(
            f"Store '{path}' was created with {stored} dimensions, "
            f"but {expected} were requested."
        )
        self.path = path
        self.stored = stored
        self.expected = expected


class EmbeddingError(QuarryError, RuntimeError):
    """Raised when the embedding provider fails or returns a degenerate vector."""


class StoreNotFoundError(QuarryError, KeyError):
    """Raised when a knowledge store name has no loaded configuration."""

    def __str__(self) -> str:
        return f"Knowledge config not found: {self.args[0]}"


class LoaderError(QuarryError, RuntimeError):
    """Raised when documents cannot be loaded from a configured source."""


class SsrfError(LoaderError, ValueError):
    """Raised when a URL resolves to a private or reserved address."""


class StoreNotReadyError(QuarryError, RuntimeError):
    """Raised when a configured store is used before it has been initialized."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Knowledge store '{name}' is not initialized")
        self.name = name
