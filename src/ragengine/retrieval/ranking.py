"""Metadata-weighted re-scoring and visibility filtering of retrieved candidates."""

from __future__ import annotations

import math
from dataclasses import replace
from typing import Any, List, Mapping, Sequence

from ragengine.metrics.observability import PipelineMetrics, get_logger
from ragengine.models import RagDocumentMetadata, RankingWeights, RetrievalCandidate
from ragengine.retrieval.metadata import normalize_metadata, resolve_doc_id

logger = get_logger("rag.ranking")

DOC_TYPE_WEIGHTS: Mapping[str, float] = {
    "profile": 1.15,
    "project_article": 1.15,
    "kb_article": 1.1,
    "blog_post": 1.0,
    "insight_note": 0.95,
    "other": 0.9,
    "photo": 0.3,
}

PERSONA_WEIGHTS: Mapping[str, float] = {
    "professional": 1.1,
    "hybrid": 1.0,
    "personal": 0.95,
}


def _override(weights: Mapping[str, Any] | None, key: str) -> float | None:
    value = (weights or {}).get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value) if math.isfinite(value) else None


def get_doc_type_weight(doc_type: Any, ranking: RankingWeights | None = None) -> float:
    if not isinstance(doc_type, str) or not doc_type:
        return 1.0
    override = _override(ranking.doc_type_weights if ranking else None, doc_type)
    if override is not None:
        return override
    return DOC_TYPE_WEIGHTS.get(doc_type, 1.0)


def get_persona_weight(persona_type: Any, ranking: RankingWeights | None = None) -> float:
    if not isinstance(persona_type, str) or not persona_type:
        return 1.0
    override = _override(ranking.persona_type_weights if ranking else None, persona_type)
    if override is not None:
        return override
    return PERSONA_WEIGHTS.get(persona_type, 1.0)


def compute_metadata_weight(
    metadata: Mapping[str, Any] | None,
    ranking: RankingWeights | None = None,
) -> float:
    """Doc-type weight times persona weight; ``1.0`` when neither is set."""

    metadata = metadata or {}
    return get_doc_type_weight(metadata.get("doc_type"), ranking) * get_persona_weight(
        metadata.get("persona_type"),
        ranking,
    )


def enrich_candidate(
    candidate: RetrievalCandidate,
    metadata_by_doc_id: Mapping[str, RagDocumentMetadata | None],
    ranking: RankingWeights | None = None,
) -> RetrievalCandidate:
    """Attach authoritative metadata and weighted similarity to one candidate."""

    doc_id = resolve_doc_id(candidate)
    hydrated = metadata_by_doc_id.get(doc_id) if doc_id else None
    if hydrated is None:
        hydrated = normalize_metadata(candidate.metadata)

    if hydrated is not None and hydrated.get("is_public") is False:
        return replace(candidate, doc_id=doc_id, metadata=hydrated, filtered_out=True)

    weight = compute_metadata_weight(hydrated, ranking)
    merged = {**(candidate.metadata or {}), **(hydrated or {}), "doc_id": doc_id}
    return replace(
        candidate,
        doc_id=doc_id,
        metadata=merged,
        similarity=candidate.base_similarity * weight,
        metadata_weight=weight,
        filtered_out=False,
    )


def enrich_and_filter(
    candidates: Sequence[RetrievalCandidate],
    metadata_by_doc_id: Mapping[str, RagDocumentMetadata | None],
    ranking: RankingWeights | None = None,
) -> List[RetrievalCandidate]:
    """Enrich, drop private documents and sort by weighted similarity.

    The sort is stable and has no secondary key: candidates with equal
    weighted similarity keep the order the backend returned them in.
    """

    enriched = [enrich_candidate(candidate, metadata_by_doc_id, ranking) for candidate in candidates]
    visible = [candidate for candidate in enriched if not candidate.filtered_out]
    dropped = len(enriched) - len(visible)
    if dropped:
        PipelineMetrics.observe_filtered(dropped)
        logger.info("ranking.filtered_private", count=dropped)
    visible.sort(key=lambda candidate: candidate.similarity or 0.0, reverse=True)
    return visible


__all__ = [
    "DOC_TYPE_WEIGHTS",
    "PERSONA_WEIGHTS",
    "compute_metadata_weight",
    "enrich_and_filter",
    "enrich_candidate",
    "get_doc_type_weight",
    "get_persona_weight",
]
