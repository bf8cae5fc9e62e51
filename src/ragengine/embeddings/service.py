"""Embedding providers used to vectorize queries and candidate texts."""

from __future__ import annotations

import hashlib
import logging
import math
from dataclasses import dataclass
from typing import Protocol, Sequence, Tuple

from langchain_community.embeddings import HuggingFaceEmbeddings
from langchain_core.embeddings import Embeddings as LangChainEmbeddings

LOGGER = logging.getLogger(__name__)

Vector = Tuple[float, ...]


@dataclass(frozen=True)
class EmbeddingConfig:
    """Configuration for embedding providers."""

    model: str = "BAAI/bge-small-en-v1.5"
    dim: int = 384
    use_model: bool = False
    device: str | None = None
    normalize: bool = True
    cache_folder: str | None = None


class EmbeddingProvider(Protocol):
    """Protocol describing embedding behaviour."""

    async def embed(self, text: str, *, model: str | None = None) -> Vector:
        """Return the embedding vector for ``text``."""

    async def embed_many(self, texts: Sequence[str], *, model: str | None = None) -> Sequence[Vector]:
        """Return embedding vectors for ``texts`` in order."""


def _normalize(vector: Sequence[float]) -> Vector:
    norm = math.sqrt(sum(value * value for value in vector)) or 1.0
    return tuple(value / norm for value in vector)


class HashEmbeddingProvider:
    """Deterministic lightweight embedding fallback used for testing."""

    def __init__(self, config: EmbeddingConfig | None = None) -> None:
        self._config = config or EmbeddingConfig()

    def _hash_to_vector(self, text: str) -> Vector:
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        repeat = (self._config.dim + len(digest) - 1) // len(digest)
        raw = (digest * repeat)[: self._config.dim]
        vector = [byte / 255.0 for byte in raw]
        if self._config.normalize:
            return _normalize(vector)
        return tuple(vector)

    async def embed(self, text: str, *, model: str | None = None) -> Vector:
        return self._hash_to_vector(text)

    async def embed_many(self, texts: Sequence[str], *, model: str | None = None) -> Sequence[Vector]:
        return [self._hash_to_vector(text) for text in texts]


class LangChainEmbeddingProvider:
    """Adapter over any LangChain ``Embeddings`` implementation."""

    def __init__(self, client: LangChainEmbeddings, *, normalize: bool = True, dim: int | None = None) -> None:
        self._client = client
        self._normalize = normalize
        self._dim = dim

    async def embed(self, text: str, *, model: str | None = None) -> Vector:
        vector = await self._client.aembed_query(text)
        return self._finish(vector)

    async def embed_many(self, texts: Sequence[str], *, model: str | None = None) -> Sequence[Vector]:
        if not texts:
            return []
        vectors = await self._client.aembed_documents(list(texts))
        if len(vectors) != len(texts):
            LOGGER.error("Embedding provider returned %d vectors for %d texts", len(vectors), len(texts))
            raise ValueError("Mismatch between number of texts and embedding vectors")
        return [self._finish(vector) for vector in vectors]

    def _finish(self, vector: Sequence[float]) -> Vector:
        if self._dim is not None and len(vector) != self._dim:
            LOGGER.warning("Embedding dim mismatch: configured=%d, actual=%d", self._dim, len(vector))
        if self._normalize:
            return _normalize(vector)
        return tuple(vector)


def build_embedding_provider(config: EmbeddingConfig | None = None) -> EmbeddingProvider:
    """Return a HuggingFace-backed provider when enabled, else the hash provider."""

    config = config or EmbeddingConfig()
    if not config.use_model:
        LOGGER.info("Embedding provider running in hash-only mode.")
        return HashEmbeddingProvider(config)
    model_kwargs = {"device": config.device} if config.device else {}
    client = HuggingFaceEmbeddings(
        model_name=config.model,
        model_kwargs=model_kwargs,
        cache_folder=config.cache_folder,
        encode_kwargs={"normalize_embeddings": config.normalize},
    )
    LOGGER.info("Loaded embedding model %s", config.model)
    return LangChainEmbeddingProvider(client, normalize=config.normalize, dim=config.dim)
