"""Embedding spaces, providers and similarity-search backends."""

from .service import (
    EmbeddingConfig,
    EmbeddingProvider,
    HashEmbeddingProvider,
    LangChainEmbeddingProvider,
    build_embedding_provider,
)
from .spaces import (
    EmbeddingSpace,
    EmbeddingSpaceRegistry,
    find_embedding_space,
    list_embedding_spaces,
    resolve_embedding_space,
)
from .store import ChromaSearchBackend, ChunkRecord, SimilaritySearchBackend

__all__ = [
    "ChromaSearchBackend",
    "ChunkRecord",
    "EmbeddingConfig",
    "EmbeddingProvider",
    "EmbeddingSpace",
    "EmbeddingSpaceRegistry",
    "HashEmbeddingProvider",
    "LangChainEmbeddingProvider",
    "SimilaritySearchBackend",
    "build_embedding_provider",
    "find_embedding_space",
    "list_embedding_spaces",
    "resolve_embedding_space",
]
