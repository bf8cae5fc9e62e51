"""Final-stage ranking and K reconciliation."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Literal, Optional, Sequence

import numpy as np
from langchain_core.vectorstores.utils import maximal_marginal_relevance

from ragengine.embeddings.service import EmbeddingProvider
from ragengine.metrics.observability import get_logger
from ragengine.models import RetrievalCandidate

RankerMode = Literal["none", "mmr", "cohere-rerank"]

DEFAULT_RERANK_K = 20
MMR_LAMBDA = 0.5

logger = get_logger("rag.ranker")


@dataclass(frozen=True)
class RagK:
    retrieve_k: int
    rerank_k: Optional[int]
    final_k: int


def normalize_rag_k(
    retrieve_k: int,
    final_k: int,
    *,
    rerank_k: int | None = None,
    rerank_enabled: bool = False,
) -> RagK:
    """Reconcile vector-search, rerank and final result counts.

    Retrieval always fetches at least ``final_k``; with reranking enabled it
    also fetches at least ``rerank_k`` and the final count never exceeds it.
    """

    if not rerank_enabled:
        retrieve = max(retrieve_k, final_k)
        return RagK(retrieve_k=retrieve, rerank_k=None, final_k=min(final_k, retrieve))
    retrieve_base = max(retrieve_k, final_k)
    rerank_base = rerank_k if rerank_k is not None else min(retrieve_base, DEFAULT_RERANK_K)
    retrieve = max(retrieve_base, rerank_base)
    rerank = min(rerank_base, retrieve)
    return RagK(retrieve_k=retrieve, rerank_k=rerank, final_k=min(final_k, rerank))


async def _run_mmr(
    docs: Sequence[RetrievalCandidate],
    max_results: int,
    query_embedding: Sequence[float] | None,
    embedder: EmbeddingProvider,
    model: str | None,
    mmr_lambda: float,
) -> List[RetrievalCandidate]:
    if not query_embedding:
        return list(docs[:max_results])
    texted = [(index, doc.chunk.strip()) for index, doc in enumerate(docs) if doc.chunk and doc.chunk.strip()]
    if not texted:
        return list(docs[:max_results])

    vectors = await embedder.embed_many([text for _, text in texted], model=model)
    selected = maximal_marginal_relevance(
        np.asarray(query_embedding, dtype=float),
        [list(vector) for vector in vectors],
        lambda_mult=max(0.0, min(1.0, mmr_lambda)),
        k=max_results,
    )
    return [docs[texted[position][0]] for position in selected]


async def apply_ranker(
    docs: Sequence[RetrievalCandidate],
    *,
    mode: RankerMode | str,
    max_results: int,
    embedder: EmbeddingProvider,
    query_embedding: Sequence[float] | None = None,
    model: str | None = None,
    mmr_lambda: float = MMR_LAMBDA,
) -> List[RetrievalCandidate]:
    if not docs:
        return []
    limit = max(1, int(max_results))
    if mode == "mmr":
        try:
            return await _run_mmr(docs, limit, query_embedding, embedder, model, mmr_lambda)
        except Exception as exc:
            logger.warning("ranker.mmr_failed", detail=str(exc))
            return list(docs[:limit])
    if mode == "cohere-rerank":
        logger.warning("ranker.cohere_rerank_unavailable", fallback="vector-order")
    return list(docs[:limit])


__all__ = [
    "DEFAULT_RERANK_K",
    "MMR_LAMBDA",
    "RagK",
    "RankerMode",
    "apply_ranker",
    "normalize_rag_k",
]
