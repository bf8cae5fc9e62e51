"""Merging candidate sets produced by more than one query variant."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Literal, Mapping, Optional, Sequence

from ragengine.cache import hash_payload
from ragengine.models import MultiQueryAltType, RetrievalCandidate

TEXT_WINDOW = 512

# A pass is weak when its best score sits within this margin of the threshold.
AUTO_SCORE_MARGIN = 0.05
AUTO_MIN_INCLUDED = 3
AUTO_PASS_TIMEOUT_SECONDS = 2.0

MultiQuerySkipReason = Literal["not_enabled", "not_weak", "no_alt", "timeout", "error"]


def candidate_score(candidate: RetrievalCandidate) -> float:
    """Weighted similarity when present, else the raw backend score."""

    if candidate.similarity is not None:
        return candidate.similarity
    return candidate.base_similarity


def _first_present(metadata: Mapping[str, Any], *names: str) -> Any:
    for name in names:
        value = metadata.get(name)
        if value is not None:
            return value
    return None


def _chunk_id_key(metadata: Mapping[str, Any]) -> Optional[str]:
    value = _first_present(metadata, "chunk_id", "chunkId")
    return f"chunk:{value}" if value else None


def _content_hash_key(metadata: Mapping[str, Any]) -> Optional[str]:
    value = _first_present(metadata, "content_hash", "contentHash")
    return f"hash:{value}" if value else None


def _chunk_index_key(metadata: Mapping[str, Any]) -> Optional[str]:
    value = _first_present(metadata, "chunk_index", "chunkIndex")
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return f"idx:{value}"


# Cheap stable identifiers first; text hashing only when none are present.
KEY_STRATEGIES: Sequence[Callable[[Mapping[str, Any]], Optional[str]]] = (
    _chunk_id_key,
    _content_hash_key,
    _chunk_index_key,
)


def candidate_key(candidate: RetrievalCandidate) -> str:
    """Identity used to deduplicate candidates across query variants."""

    metadata = candidate.metadata or {}
    doc_id = candidate.doc_id or metadata.get("doc_id") or None
    source_url = metadata.get("source_url") or None
    prefix = f"doc:{doc_id or 'unknown'}:src:{source_url or 'unknown'}"
    for strategy in KEY_STRATEGIES:
        suffix = strategy(metadata)
        if suffix is not None:
            return f"{prefix}:{suffix}"

    text = (candidate.chunk or "").strip()
    text_hash = hash_payload(
        {
            "docId": doc_id,
            "sourceUrl": source_url,
            "head": text[:TEXT_WINDOW],
            "tail": text[-TEXT_WINDOW:] if len(text) > TEXT_WINDOW else "",
            "len": len(text),
        },
    )
    return f"{prefix}:text:{text_hash}"


@dataclass
class _Entry:
    candidate: RetrievalCandidate
    score: float
    order: int


def merge_candidates(
    base: Sequence[RetrievalCandidate],
    alt: Sequence[RetrievalCandidate],
) -> List[RetrievalCandidate]:
    """Deduplicate ``base`` + ``alt`` by candidate key, keeping the best score.

    A later duplicate replaces an earlier one only when its score is strictly
    higher. Output is ordered by score descending, then by first-seen position.
    """

    merged: Dict[str, _Entry] = {}
    for order, candidate in enumerate([*base, *alt]):
        key = candidate_key(candidate)
        score = candidate_score(candidate)
        existing = merged.get(key)
        if existing is None or score > existing.score:
            merged[key] = _Entry(candidate=candidate, score=score, order=order)
    entries = sorted(merged.values(), key=lambda entry: (-entry.score, entry.order))
    return [entry.candidate for entry in entries]


def pick_alt_query_type(
    *,
    fired_rewrite: bool,
    fired_hyde: bool,
    rewrite_query: str | None = None,
    hyde_query: str | None = None,
) -> MultiQueryAltType:
    if fired_rewrite and rewrite_query and rewrite_query.strip():
        return "rewrite"
    if fired_hyde and hyde_query and hyde_query.strip():
        return "hyde"
    return "none"


def highest_score(candidates: Sequence[RetrievalCandidate]) -> float:
    return max((candidate_score(candidate) for candidate in candidates), default=0.0)


def is_weak_retrieval(
    candidates: Sequence[RetrievalCandidate],
    *,
    similarity_threshold: float,
    final_k: int,
) -> bool:
    """True when a pass scored close to the threshold or returned too few results."""

    if not candidates:
        return True
    if highest_score(candidates) < similarity_threshold + AUTO_SCORE_MARGIN:
        return True
    return len(candidates) < min(final_k, AUTO_MIN_INCLUDED)


def select_better_retrieval(
    base: Sequence[RetrievalCandidate],
    alt: Sequence[RetrievalCandidate],
) -> Literal["base", "alt"]:
    """Prefer the higher top score, then the larger result set; ties go to ``base``."""

    base_top, alt_top = highest_score(base), highest_score(alt)
    if alt_top != base_top:
        return "alt" if alt_top > base_top else "base"
    return "alt" if len(alt) > len(base) else "base"


__all__ = [
    "AUTO_MIN_INCLUDED",
    "AUTO_PASS_TIMEOUT_SECONDS",
    "AUTO_SCORE_MARGIN",
    "KEY_STRATEGIES",
    "MultiQuerySkipReason",
    "candidate_key",
    "candidate_score",
    "highest_score",
    "is_weak_retrieval",
    "merge_candidates",
    "pick_alt_query_type",
    "select_better_retrieval",
]
