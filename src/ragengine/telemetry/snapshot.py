"""Config snapshot hashing for cache invalidation and audit."""

from __future__ import annotations

import math
from typing import Any, Dict, Literal, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

from ragengine.cache import CacheKeyError, hash_payload
from ragengine.models import ConfigSnapshot


class NumericLimits(BaseModel):
    rag_top_k: int = 0
    similarity_threshold: float = 0


class RankingConfig(BaseModel):
    doc_type_weights: Dict[str, float] = Field(default_factory=dict)
    persona_type_weights: Dict[str, float] = Field(default_factory=dict)


class RagSection(BaseModel):
    enabled: bool = False
    top_k: Optional[int] = None
    similarity: Optional[float] = None
    ranker: str = "none"
    candidate_k: Optional[int] = None
    reverse_rag: bool = False
    reverse_rag_mode: Optional[str] = None
    multi_query_mode: str = "off"
    multi_query_max_queries: Optional[int] = None
    multi_query_timeout_seconds: Optional[float] = None
    match_rpc_version: Optional[str] = None
    hyde: bool = False
    summary_level: Optional[str] = "minimal"
    numeric_limits: NumericLimits = Field(default_factory=NumericLimits)
    ranking: RankingConfig = Field(default_factory=RankingConfig)


class ContextSection(BaseModel):
    token_budget: int = 0
    history_budget: int = 0
    clip_tokens: int = 0


class TelemetrySection(BaseModel):
    sample_rate: float = 0
    detail_level: Literal["minimal", "standard", "verbose"] = "minimal"


class CacheSection(BaseModel):
    response_ttl_seconds: float = 0
    retrieval_ttl_seconds: float = 0
    response_enabled: Optional[bool] = None
    retrieval_enabled: Optional[bool] = None


class PromptSection(BaseModel):
    base_version: Optional[str] = None


class GuardrailSection(BaseModel):
    route: str = "normal"


class ChatConfigSnapshot(BaseModel):
    """Live runtime policy captured at request time."""

    model_config = ConfigDict(extra="ignore")

    preset_key: str = "default"
    safe_mode: bool = False
    chat_engine: str = "native"
    llm_model: str = "unknown"
    embedding_model: str = "unknown"
    rag: RagSection = Field(default_factory=RagSection)
    context: ContextSection = Field(default_factory=ContextSection)
    telemetry: TelemetrySection = Field(default_factory=TelemetrySection)
    cache: CacheSection = Field(default_factory=CacheSection)
    prompt: PromptSection = Field(default_factory=PromptSection)
    guardrails: GuardrailSection = Field(default_factory=GuardrailSection)


def _safe_number(value: Any, fallback: float = 0) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return fallback
    return value if math.isfinite(value) else fallback


def stable_hash(value: Any) -> str:
    """Order-independent digest for audit payloads; never raises."""

    try:
        return hash_payload(value)
    except CacheKeyError:
        return "hash:error"


def build_ranking_hash(
    doc_type_weights: Mapping[str, float],
    persona_type_weights: Mapping[str, float],
) -> str | None:
    if not doc_type_weights and not persona_type_weights:
        return None
    return stable_hash(
        {
            "doc_type_weights": dict(doc_type_weights),
            "persona_type_weights": dict(persona_type_weights),
        },
    )


def build_config_summary(config: ChatConfigSnapshot) -> Dict[str, Any]:
    rag = config.rag
    cache = config.cache
    ranking = rag.ranking
    response_ttl = _safe_number(cache.response_ttl_seconds)
    retrieval_ttl = _safe_number(cache.retrieval_ttl_seconds)
    similarity = rag.similarity if rag.similarity is not None else rag.numeric_limits.similarity_threshold
    return {
        "preset_key": config.preset_key,
        "engine": {
            "chat_engine": config.chat_engine,
            "safe_mode": bool(config.safe_mode),
            "llm_model": config.llm_model,
            "embedding_model": config.embedding_model,
        },
        "rag": {
            "enabled": bool(rag.enabled),
            "top_k": _safe_number(rag.top_k, _safe_number(rag.numeric_limits.rag_top_k)),
            "similarity_threshold": _safe_number(similarity),
            "ranker": rag.ranker,
            "candidate_k": _safe_number(rag.candidate_k),
            "reverse_rag": bool(rag.reverse_rag),
            "reverse_rag_mode": rag.reverse_rag_mode,
            "multi_query_mode": rag.multi_query_mode,
            "multi_query_max_queries": _safe_number(rag.multi_query_max_queries),
            "multi_query_timeout_seconds": _safe_number(rag.multi_query_timeout_seconds),
            "match_rpc_version": rag.match_rpc_version,
            "hyde": bool(rag.hyde),
            "summary_level": rag.summary_level,
        },
        "context": {
            "token_budget": _safe_number(config.context.token_budget),
            "history_budget": _safe_number(config.context.history_budget),
            "clip_tokens": _safe_number(config.context.clip_tokens),
        },
        "telemetry": {
            "detail_level": config.telemetry.detail_level,
            "sample_rate": _safe_number(config.telemetry.sample_rate),
        },
        "cache": {
            "response_enabled": cache.response_enabled if cache.response_enabled is not None else response_ttl > 0,
            "retrieval_enabled": cache.retrieval_enabled if cache.retrieval_enabled is not None else retrieval_ttl > 0,
            "response_ttl_seconds": response_ttl,
            "retrieval_ttl_seconds": retrieval_ttl,
        },
        "prompt": {"base_version": config.prompt.base_version},
        "guardrails": {"route": config.guardrails.route},
        "ranking": {
            "has_doc_type_weights": bool(ranking.doc_type_weights),
            "has_persona_type_weights": bool(ranking.persona_type_weights),
            "ranking_hash": build_ranking_hash(ranking.doc_type_weights, ranking.persona_type_weights),
        },
    }


def build_snapshot(config: ChatConfigSnapshot | Mapping[str, Any] | None = None) -> ConfigSnapshot:
    """Summarize ``config`` and hash the summary.

    Weight maps are hashed by value, so re-inserting the same weights in a
    different key order yields the same hash.
    """

    if config is None:
        parsed = ChatConfigSnapshot()
    elif isinstance(config, ChatConfigSnapshot):
        parsed = config
    else:
        parsed = ChatConfigSnapshot.model_validate(config)
    summary = build_config_summary(parsed)
    return ConfigSnapshot(summary=summary, hash=stable_hash(summary))


__all__ = [
    "ChatConfigSnapshot",
    "build_config_summary",
    "build_ranking_hash",
    "build_snapshot",
    "stable_hash",
]
