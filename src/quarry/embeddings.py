"""Embedding providers for the indexing pipeline.

Every store talks to its provider through the small ``Embeddings`` protocol.
The production provider is LiteLLM (any ``provider/model`` string it knows);
the orchestrator always wraps it in ``ValidatedEmbeddings`` so that a provider
returning an empty, NaN or all-zero vector fails the build instead of
silently poisoning the vector index.
"""

from __future__ import annotations

import math
import os
from typing import Protocol, Sequence, runtime_checkable

import litellm

from quarry.errors import EmbeddingError
from quarry.log_config import get_logger

log = get_logger(__name__)

DEFAULT_MODEL = "openai/text-embedding-3-small"

_PROVIDER_KEYS = {
    "openai": "OPENAI_API_KEY",
    "cohere": "COHERE_API_KEY",
    "gemini": "GEMINI_API_KEY",
    "voyage": "VOYAGE_API_KEY",
    "mistral": "MISTRAL_API_KEY",
}


@runtime_checkable
class Embeddings(Protocol):
    async def embed_query(self, text: str) -> list[float]: ...

    async def embed_documents(self, texts: Sequence[str]) -> list[list[float]]: ...


class LiteLLMEmbeddings:
    """Embeddings via ``litellm.aembedding``.

    Args:
        model: LiteLLM model string (provider/model format).
        batch_size: Max texts per API call.
        dimensions: Requested output size, for models that support it.
    """

    def __init__(
        self,
        model: str = DEFAULT_MODEL,
        batch_size: int = 100,
        dimensions: int | None = None,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.model = model
        self.batch_size = batch_size
        self.dimensions = dimensions

    async def embed_query(self, text: str) -> list[float]:
        vectors = await self._embed([text])
        return vectors[0]

    async def embed_documents(self, texts: Sequence[str]) -> list[list[float]]:
        vectors: list[list[float]] = []
        for start in range(0, len(texts), self.batch_size):
            batch = list(texts[start : start + self.batch_size])
            log.debug(f"Embedding batch {start // self.batch_size + 1}: {len(batch)} texts")
            vectors.extend(await self._embed(batch))
        return vectors

    async def _embed(self, texts: list[str]) -> list[list[float]]:
        self._check_api_key()
        kwargs = {"model": self.model, "input": texts}
        if self.dimensions:
            kwargs["dimensions"] = self.dimensions
        response = await litellm.aembedding(**kwargs)
        return [list(item["embedding"]) for item in response.data]

    def _check_api_key(self) -> None:
        """Raise EmbeddingError if the model's provider needs a key that is not set."""
        provider = self.model.split("/")[0].lower() if "/" in self.model else ""
        required_env = _PROVIDER_KEYS.get(provider)
        if required_env and not os.environ.get(required_env):
            raise EmbeddingError(
                f"No API key found for provider '{provider}'. "
                f"Set the {required_env} environment variable."
            )


class ValidatedEmbeddings:
    """Wraps a provider: appends an optional EOS token and rejects degenerate vectors.

    Any failure of the inner provider, and any vector that is empty, contains
    NaN/inf, is all zeros or has a different length than the rest of the
    batch, raises ``EmbeddingError``.
    """

    def __init__(self, inner: Embeddings, eos_token: str | None = None) -> None:
        self.inner = inner
        self.eos_token = eos_token

    async def embed_query(self, text: str) -> list[float]:
        try:
            vector = await self.inner.embed_query(self._prepare(text))
        except EmbeddingError:
            raise
        except Exception as exc:
            raise EmbeddingError(f"Embedding provider failed: {exc}") from exc
        _check_vector(vector, 0)
        return vector

    async def embed_documents(self, texts: Sequence[str]) -> list[list[float]]:
        if not texts:
            return []
        try:
            vectors = await self.inner.embed_documents([self._prepare(t) for t in texts])
        except EmbeddingError:
            raise
        except Exception as exc:
            raise EmbeddingError(f"Embedding provider failed: {exc}") from exc
        if len(vectors) != len(texts):
            raise EmbeddingError(
                f"Embedding provider returned {len(vectors)} vectors for {len(texts)} texts"
            )
        for i, vector in enumerate(vectors):
            _check_vector(vector, i)
            if len(vector) != len(vectors[0]):
                raise EmbeddingError(
                    f"Embedding {i} has {len(vector)} dimensions, expected {len(vectors[0])}"
                )
        return vectors

    def _prepare(self, text: str) -> str:
        return f"{text}{self.eos_token}" if self.eos_token else text


def _check_vector(vector: Sequence[float], index: int) -> None:
    if not vector:
        raise EmbeddingError(f"Embedding {index} is empty")
    if not all(math.isfinite(v) for v in vector):
        raise EmbeddingError(f"Embedding {index} contains NaN or infinite values")
    if all(v == 0 for v in vector):
        raise EmbeddingError(f"Embedding {index} is all zeros")


def create_embeddings(
    model: str | None = None,
    *,
    eos_token: str | None = None,
    batch_size: int = 100,
    dimensions: int | None = None,
) -> ValidatedEmbeddings:
    """Build the validated LiteLLM provider used by the orchestrator."""
    inner = LiteLLMEmbeddings(model or DEFAULT_MODEL, batch_size=batch_size, dimensions=dimensions)
    return ValidatedEmbeddings(inner, eos_token=eos_token)
