"""Retrieval orchestration from question to ranked, filtered candidates."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from ragengine.cache import CacheClient, hash_payload, memory_cache_client
from ragengine.config import Settings, get_settings
from ragengine.embeddings.service import EmbeddingProvider, HashEmbeddingProvider
from ragengine.embeddings.spaces import (
    EmbeddingSpace,
    EmbeddingSpaceRegistry,
    ProviderAvailability,
    enforce_provider_availability,
)
from ragengine.embeddings.store import SimilaritySearchBackend
from ragengine.metrics.observability import PipelineMetrics, get_logger, log_debug_rag
from ragengine.models import (
    ConfigSnapshot,
    MultiQueryAltType,
    PreRetrievalResult,
    RankingWeights,
    RetrievalCandidate,
    RetrievalResult,
)
from ragengine.retrieval.dispatcher import RetrievalDispatcher, RetrievalRequest, get_match_function_name
from ragengine.retrieval.metadata import DocumentMetadataStore, extract_doc_ids, fetch_refined_metadata
from ragengine.retrieval.multi_query import (
    AUTO_PASS_TIMEOUT_SECONDS,
    MultiQuerySkipReason,
    is_weak_retrieval,
    merge_candidates,
    pick_alt_query_type,
    select_better_retrieval,
)
from ragengine.retrieval.pre_retrieval import PreRetrievalOptions, prepare
from ragengine.retrieval.ranker import apply_ranker, normalize_rag_k
from ragengine.retrieval.ranking import enrich_and_filter
from ragengine.services.generation import EchoLLMProvider, LLMProvider
from ragengine.telemetry.sink import NullTelemetrySink, SafeTelemetrySink, TelemetryPolicy, TelemetrySink
from ragengine.telemetry.snapshot import build_snapshot

# Option name -> Settings field it overrides for one request.
_OPTION_FIELDS: Mapping[str, str] = {
    "top_k": "rag_top_k",
    "candidate_k": "candidate_k",
    "similarity_threshold": "similarity_threshold",
    "rewrite_enabled": "reverse_rag_enabled",
    "rewrite_mode": "reverse_rag_mode",
    "hyde_enabled": "hyde_enabled",
    "ranker_mode": "ranker_mode",
    "multi_query_mode": "multi_query_mode",
    "retrieval_mode": "retrieval_mode",
    "preset_key": "preset_key",
    "llm_model": "llm_model",
}


class RetrievalUnavailableError(RuntimeError):
    """Raised when a backend or provider fails; the message is safe to show callers."""

    def __init__(self, stage: str) -> None:
        super().__init__("retrieval unavailable")
        self.stage = stage


@dataclass(frozen=True)
class RetrievalOptions:
    """Per-request overrides; ``None`` means use the configured value."""

    top_k: int | None = None
    candidate_k: int | None = None
    similarity_threshold: float | None = None
    rewrite_enabled: bool | None = None
    rewrite_mode: str | None = None
    hyde_enabled: bool | None = None
    ranker_mode: str | None = None
    multi_query_mode: str | None = None
    retrieval_mode: str | None = None
    preset_key: str | None = None
    llm_model: str | None = None
    embedding_space_id: str | None = None
    embedding_model: str | None = None
    embedding_provider: str | None = None
    filter: Mapping[str, Any] = field(default_factory=dict)
    use_cache: bool = True


@dataclass(frozen=True)
class _Pass:
    label: str
    query: str
    candidates: List[RetrievalCandidate]
    filtered_out: int
    query_embedding: Tuple[float, ...]


class RetrievalPipeline:
    """Orchestrates pre-retrieval, similarity search, enrichment and ranking."""

    def __init__(
        self,
        backend: SimilaritySearchBackend,
        metadata_store: DocumentMetadataStore,
        *,
        settings: Settings | None = None,
        embedder: EmbeddingProvider | None = None,
        llm: LLMProvider | None = None,
        cache: CacheClient | None = None,
        telemetry: TelemetrySink | None = None,
        policy: TelemetryPolicy | None = None,
        registry: EmbeddingSpaceRegistry | None = None,
        availability: ProviderAvailability | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._metadata_store = metadata_store
        self._embedder = embedder or HashEmbeddingProvider()
        self._llm = llm or EchoLLMProvider()
        self._cache = cache if cache is not None else memory_cache_client
        self._telemetry = SafeTelemetrySink(telemetry or NullTelemetrySink())
        self._policy = policy or TelemetryPolicy(
            enabled=self._settings.telemetry_enabled,
            sample_rate=self._settings.telemetry_sample_rate,
            include_pii=self._settings.telemetry_include_pii,
            detail_level=self._settings.telemetry_detail_level,
        )
        self._registry = registry or EmbeddingSpaceRegistry.from_settings(self._settings)
        self._availability = availability
        self._dispatcher = RetrievalDispatcher(backend, rpc_version=self._settings.match_rpc_version)
        self._logger = get_logger("pipeline")

    @property
    def settings(self) -> Settings:
        return self._settings

    def effective_settings(self, options: RetrievalOptions | None = None) -> Settings:
        options = options or RetrievalOptions()
        update = {
            field_name: getattr(options, option)
            for option, field_name in _OPTION_FIELDS.items()
            if getattr(options, option) is not None
        }
        return self._settings.model_copy(update=update) if update else self._settings

    def resolve_space(self, options: RetrievalOptions | None = None) -> EmbeddingSpace:
        options = options or RetrievalOptions()
        space = self._registry.resolve(
            space_id=options.embedding_space_id,
            model=options.embedding_model,
            provider=options.embedding_provider,
        )
        if self._availability is None:
            return space
        selection = enforce_provider_availability(space, self._availability, self._registry.find_by_provider)
        if selection.reason != "ok":
            self._logger.warning(
                "pipeline.embedding_fallback",
                reason=selection.reason,
                requested=space.embedding_space_id,
                selected=selection.selection.embedding_space_id,
            )
        return selection.selection

    def snapshot(self, options: RetrievalOptions | None = None) -> ConfigSnapshot:
        space = self.resolve_space(options)
        effective = self.effective_settings(options)
        return build_snapshot(effective.to_config_snapshot(embedding_model=space.embedding_model_id))

    def cache_key(
        self,
        question: str,
        effective: Settings,
        space: EmbeddingSpace,
        snapshot: ConfigSnapshot,
        options: RetrievalOptions,
    ) -> str:
        digest = hash_payload(
            {
                "question": question.strip(),
                "preset_key": effective.preset_key,
                "rag_top_k": effective.rag_top_k,
                "similarity_threshold": effective.similarity_threshold,
                "candidate_k": effective.candidate_k,
                "reverse_rag_enabled": effective.reverse_rag_enabled,
                "reverse_rag_mode": effective.reverse_rag_mode,
                "hyde_enabled": effective.hyde_enabled,
                "ranker_mode": effective.ranker_mode,
                "multi_query_mode": effective.multi_query_mode,
                "multi_query_max_queries": effective.multi_query_max_queries,
                "retrieval_mode": effective.retrieval_mode,
                "match_rpc_version": effective.match_rpc_version,
                "embedding_space_id": space.embedding_space_id,
                "filter": dict(options.filter or {}),
                "config_hash": snapshot.hash,
            },
        )
        return f"chat:retrieval:{effective.preset_key}:{digest}"

    async def run(self, question: str, options: RetrievalOptions | None = None) -> RetrievalResult:
        """Return ranked, filtered candidates for ``question``.

        Base-pass backend and provider failures surface as
        :class:`RetrievalUnavailableError`; alternate-pass failures fall back to the
        base result.
        Cancellation propagates unchanged and leaves the cache untouched.
        """

        options = options or RetrievalOptions()
        start = time.perf_counter()
        effective = self.effective_settings(options)
        space = self.resolve_space(options)
        snapshot = build_snapshot(effective.to_config_snapshot(embedding_model=space.embedding_model_id))
        sampled = self._policy.should_sample()

        ttl = effective.retrieval_cache_ttl_seconds
        use_cache = options.use_cache and ttl > 0
        key = self.cache_key(question, effective, space, snapshot, options) if use_cache else None
        if key is not None:
            cached = await self._cache.get(key)
            PipelineMetrics.observe_cache(cached is not None)
            log_debug_rag("retrieval-cache", {"hit": cached is not None, "preset_key": effective.preset_key})
            if isinstance(cached, RetrievalResult):
                result = replace(cached, cache_hit=True)
                self._emit_retrieval(result, sampled, duration=time.perf_counter() - start)
                return result

        pre = await prepare(
            question,
            PreRetrievalOptions(
                rewrite_enabled=effective.reverse_rag_enabled,
                rewrite_mode=effective.reverse_rag_mode,
                hyde_enabled=effective.hyde_enabled,
                ranker_mode=effective.ranker_mode,
                provider=effective.llm_provider,
                model=effective.llm_model,
            ),
            self._llm,
        )
        self._emit_pre_retrieval(pre, sampled)

        rag_k = normalize_rag_k(
            effective.candidate_k,
            effective.rag_top_k,
            rerank_enabled=effective.ranker_mode != "none",
        )
        multi_query_enabled = effective.multi_query_mode == "auto" and effective.multi_query_max_queries >= 2
        alt_type = self._alt_query_type(question, pre, effective)
        base_query = question if alt_type != "none" else pre.embedding_target
        try:
            base = await self._run_pass("base", base_query, space, effective, options, rag_k.retrieve_k)
        except asyncio.CancelledError:
            self._logger.info("pipeline.cancelled", stage="retrieval")
            raise
        except Exception as exc:
            self._logger.error("pipeline.retrieval_failed", detail=str(exc), error_type=type(exc).__name__)
            if sampled:
                self._telemetry.record("rag.retrieval_failed", {"embedding_space_id": space.embedding_space_id})
            raise RetrievalUnavailableError("retrieval") from exc

        weak = is_weak_retrieval(
            base.candidates,
            similarity_threshold=effective.similarity_threshold,
            final_k=rag_k.final_k,
        )
        alt: Optional[_Pass] = None
        skipped: Optional[MultiQuerySkipReason] = None
        if not multi_query_enabled:
            skipped = "not_enabled"
        elif not weak:
            skipped = "not_weak"
        elif alt_type == "none":
            skipped = "no_alt"
        else:
            alt, skipped = await self._run_alt_pass(pre.embedding_target, space, effective, options, rag_k.retrieve_k)

        winner = "base"
        selected = base
        if alt is not None:
            merged = merge_candidates(base.candidates, alt.candidates)
            winner = select_better_retrieval(base.candidates, alt.candidates)
            if winner == "alt":
                selected = alt
            PipelineMetrics.observe_merge(alt_type)
        else:
            merged = base.candidates
            if multi_query_enabled and skipped is not None:
                PipelineMetrics.observe_multi_query_skip(skipped)
        passes = [base] if alt is None else [base, alt]

        pool = merged[: rag_k.rerank_k] if rag_k.rerank_k is not None else merged
        final = await apply_ranker(
            pool,
            mode=effective.ranker_mode,
            max_results=rag_k.final_k,
            embedder=self._embedder,
            query_embedding=selected.query_embedding,
            model=space.model,
        )
        reported_alt_type: MultiQueryAltType = alt_type if alt is not None else "none"
        result = RetrievalResult(
            candidates=tuple(final),
            pre_retrieval=pre,
            embedding_space_id=space.embedding_space_id,
            config=snapshot,
            cache_key=key,
            cache_hit=False,
            alt_query_type=reported_alt_type,
            metrics={
                "match_function": get_match_function_name(
                    effective.retrieval_mode,
                    space.provider,
                    effective.match_rpc_version,
                ),
                "retrieve_k": rag_k.retrieve_k,
                "final_k": rag_k.final_k,
                "base_candidates": len(base.candidates),
                "alt_candidates": len(alt.candidates) if alt is not None else 0,
                "merged_candidates": len(merged),
                "filtered_out": sum(item.filtered_out for item in passes),
                "returned": len(final),
                "weak_base": weak,
                "multi_query_ran": alt is not None,
                "multi_query_skipped": skipped,
                "winner": winner,
                "duration_ms": round((time.perf_counter() - start) * 1000, 3),
            },
        )
        # Results degraded by an alternate-pass timeout or error are not cached.
        if key is not None and skipped not in ("timeout", "error"):
            await self._cache.set(key, result, ttl)
        self._logger.info(
            "retrieval.complete",
            embedding_space_id=space.embedding_space_id,
            candidate_count=len(final),
            alt_query_type=reported_alt_type,
            multi_query_skipped=skipped,
            duration_seconds=time.perf_counter() - start,
        )
        self._emit_retrieval(result, sampled, duration=time.perf_counter() - start)
        return result

    async def _run_alt_pass(
        self,
        query: str,
        space: EmbeddingSpace,
        effective: Settings,
        options: RetrievalOptions,
        match_count: int,
    ) -> Tuple[Optional[_Pass], Optional[MultiQuerySkipReason]]:
        """Run the alternate pass under a deadline; failures fall back to the base pass."""

        timeout = min(AUTO_PASS_TIMEOUT_SECONDS, effective.multi_query_timeout_seconds)
        try:
            alt = await asyncio.wait_for(
                self._run_pass("alt", query, space, effective, options, match_count),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            self._logger.warning("pipeline.alt_pass_timeout", timeout_seconds=timeout)
            return None, "timeout"
        except Exception as exc:
            self._logger.warning("pipeline.alt_pass_failed", detail=str(exc), error_type=type(exc).__name__)
            return None, "error"
        return alt, None

    def _alt_query_type(self, question: str, pre: PreRetrievalResult, effective: Settings) -> MultiQueryAltType:
        if effective.multi_query_mode != "auto" or effective.multi_query_max_queries < 2:
            return "none"
        if pre.embedding_target.strip() == question.strip():
            return "none"
        return pick_alt_query_type(
            fired_rewrite=pre.rewritten_query.strip() != question.strip(),
            fired_hyde=pre.hyde_document is not None,
            rewrite_query=pre.rewritten_query,
            hyde_query=pre.hyde_document,
        )

    def _request(
        self,
        space: EmbeddingSpace,
        effective: Settings,
        options: RetrievalOptions,
        embedding: Sequence[float],
        match_count: int,
    ) -> RetrievalRequest:
        return RetrievalRequest(
            embedding=embedding,
            match_count=match_count,
            mode=effective.retrieval_mode,
            embedding_provider=space.provider,
            similarity_threshold=effective.similarity_threshold,
            filter=dict(options.filter or {}),
        )

    async def _run_pass(
        self,
        label: str,
        query: str,
        space: EmbeddingSpace,
        effective: Settings,
        options: RetrievalOptions,
        match_count: int,
    ) -> _Pass:
        embedding = tuple(await self._embedder.embed(query, model=space.model))
        candidates = await self._dispatcher.retrieve(self._request(space, effective, options, embedding, match_count))
        metadata = await fetch_refined_metadata(extract_doc_ids(candidates), self._metadata_store)
        ranking = RankingWeights(
            doc_type_weights=effective.doc_type_weight_map,
            persona_type_weights=effective.persona_type_weight_map,
        )
        visible = enrich_and_filter(candidates, metadata, ranking)
        log_debug_rag(
            "retrieval-pass",
            {"pass": label, "retrieved": len(candidates), "visible": len(visible)},
        )
        return _Pass(
            label=label,
            query=query,
            candidates=visible,
            filtered_out=len(candidates) - len(visible),
            query_embedding=embedding,
        )

    def _emit_pre_retrieval(self, pre: PreRetrievalResult, sampled: bool) -> None:
        if not sampled:
            return
        payload: Dict[str, Any] = pre.summary.to_dict()
        if not self._policy.include_pii:
            payload = _redact_summary(payload)
        self._telemetry.record("rag.pre_retrieval", payload)

    def _emit_retrieval(self, result: RetrievalResult, sampled: bool, *, duration: float) -> None:
        if not sampled:
            return
        payload: Dict[str, Any] = {
            "embedding_space_id": result.embedding_space_id,
            "config_hash": result.config.hash,
            "cache_hit": result.cache_hit,
            "alt_query_type": result.alt_query_type,
            "candidate_count": len(result.candidates),
            "duration_ms": round(duration * 1000, 3),
        }
        if self._policy.verbose:
            payload["candidates"] = [
                {
                    "doc_id": candidate.doc_id,
                    "similarity": candidate.similarity,
                    "base_similarity": candidate.base_similarity,
                    "metadata_weight": candidate.metadata_weight,
                }
                for candidate in result.candidates
            ]
            payload["metrics"] = dict(result.metrics)
        self._telemetry.record("rag.retrieval", payload)


def _redact_text(value: Optional[str]) -> Optional[Dict[str, Any]]:
    if value is None:
        return None
    return {"length": len(value), "hash": hash_payload(value)}


def _redact_summary(summary: Dict[str, Any]) -> Dict[str, Any]:
    reverse_rag = dict(summary.get("reverseRag") or {})
    hyde = dict(summary.get("hyde") or {})
    reverse_rag["original"] = _redact_text(reverse_rag.get("original"))
    reverse_rag["rewritten"] = _redact_text(reverse_rag.get("rewritten"))
    hyde["generated"] = _redact_text(hyde.get("generated"))
    return {**summary, "reverseRag": reverse_rag, "hyde": hyde}


__all__ = [
    "RetrievalOptions",
    "RetrievalPipeline",
    "RetrievalUnavailableError",
]
