"""Similarity-search dispatch across retrieval modes and embedding providers."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Mapping, Sequence

from ragengine.embeddings.store import SimilaritySearchBackend
from ragengine.metrics.observability import PipelineMetrics, TimedSection, get_logger
from ragengine.models import RetrievalCandidate

RetrievalMode = Literal["native", "langchain"]
RetrievalProvider = Literal["openai", "gemini"]

DEFAULT_SIMILARITY_THRESHOLD = 0.78

logger = get_logger("rag.retrieval")


class RetrievalBackendError(RuntimeError):
    """A similarity-search call failed; carries the match function name."""

    def __init__(self, match_function: str, detail: str) -> None:
        super().__init__(f"Error matching RAG chunks via {match_function}: {detail}")
        self.match_function = match_function


def get_match_function_name(
    mode: RetrievalMode,
    provider: RetrievalProvider | str,
    rpc_version: str = "1",
) -> str:
    suffix = "gemini_te4" if provider == "gemini" else "openai_te3s"
    prefix = "match_native_chunks" if mode == "native" else "match_langchain_chunks"
    version = "2" if rpc_version == "2" else "1"
    return f"{prefix}_{suffix}_v{version}"


def low_recall_threshold(match_count: int) -> int:
    return max(1, match_count // 2)


def _float(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0.0
    return float(value)


def row_to_candidate(row: Mapping[str, Any]) -> RetrievalCandidate:
    metadata = row.get("metadata")
    doc_id = row.get("doc_id")
    chunk = row.get("chunk") or row.get("content") or row.get("text") or ""
    return RetrievalCandidate(
        doc_id=doc_id if isinstance(doc_id, str) and doc_id else None,
        chunk=chunk if isinstance(chunk, str) else "",
        base_similarity=_float(row.get("similarity")),
        metadata=dict(metadata) if isinstance(metadata, Mapping) else None,
        raw=dict(row),
    )


@dataclass(frozen=True)
class RetrievalRequest:
    embedding: Sequence[float]
    match_count: int
    mode: RetrievalMode = "native"
    embedding_provider: RetrievalProvider | str = "openai"
    similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD
    filter: Mapping[str, Any] = field(default_factory=dict)


class RetrievalDispatcher:
    """Pick the match function for a request and call the backend."""

    def __init__(self, backend: SimilaritySearchBackend, *, rpc_version: str = "1") -> None:
        self._backend = backend
        self._rpc_version = rpc_version

    def match_function(self, request: RetrievalRequest) -> str:
        return get_match_function_name(request.mode, request.embedding_provider, self._rpc_version)

    def build_payload(self, request: RetrievalRequest) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "query_embedding": list(request.embedding),
            "match_count": request.match_count,
            "filter": dict(request.filter or {}),
        }
        if request.mode == "native":
            payload["similarity_threshold"] = request.similarity_threshold
        return payload

    async def retrieve(self, request: RetrievalRequest) -> List[RetrievalCandidate]:
        match_function = self.match_function(request)
        payload = self.build_payload(request)
        with TimedSection() as timer:
            try:
                rows = await self._backend.rpc(match_function, payload)
            except Exception as exc:
                logger.error("retrieval.backend_error", match_function=match_function, detail=str(exc))
                raise RetrievalBackendError(match_function, str(exc)) from exc

        candidates = [row_to_candidate(row) for row in rows or []]
        PipelineMetrics.observe_retrieval(
            timer.duration,
            len(candidates),
            (candidate.base_similarity for candidate in candidates),
        )
        if not candidates or len(candidates) < low_recall_threshold(request.match_count):
            PipelineMetrics.observe_low_recall(match_function)
            logger.warning(
                "retrieval.low_result_count",
                match_function=match_function,
                mode=request.mode,
                embedding_provider=request.embedding_provider,
                match_count=request.match_count,
                returned=len(candidates),
                status_policy="active-only",
            )
        return candidates


__all__ = [
    "DEFAULT_SIMILARITY_THRESHOLD",
    "RetrievalBackendError",
    "RetrievalDispatcher",
    "RetrievalMode",
    "RetrievalProvider",
    "RetrievalRequest",
    "get_match_function_name",
    "low_recall_threshold",
    "row_to_candidate",
]
