"""Runtime configuration for the retrieval engine."""

from __future__ import annotations

import math
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal, Mapping, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

from ragengine.telemetry.snapshot import ChatConfigSnapshot

ReverseRagMode = Literal["precision", "recall"]
RankerMode = Literal["none", "mmr", "cohere-rerank"]
RetrievalMode = Literal["native", "langchain"]
MultiQueryMode = Literal["off", "auto"]
DetailLevel = Literal["minimal", "standard", "verbose"]
GuardrailRoute = Literal["normal", "chitchat", "command"]


class Settings(BaseSettings):
    """Environment-backed configuration model."""

    model_config = SettingsConfigDict(env_prefix="ragengine_", env_file=".env", case_sensitive=False)

    environment: Literal["dev", "test", "prod"] = "dev"
    preset_key: str = "default"

    # Embedding space selection (see embeddings.spaces.resolve_embedding_space)
    embedding_space_id: str | None = None
    embedding_model: str | None = None
    embedding_provider: str | None = None
    llm_provider: str | None = None
    use_model_embeddings: bool = False
    local_embedding_model: str = "BAAI/bge-small-en-v1.5"
    embedding_dim: int = 384

    # Pre-retrieval LLM
    llm_model: str = "gpt-4o-mini"
    use_model_llm: bool = False
    local_llm_model: str = "Qwen/Qwen2.5-1.8B-Instruct"
    local_llm_max_new_tokens: int = 256

    # Retrieval
    retrieval_mode: RetrievalMode = "native"
    match_rpc_version: Literal["1", "2"] = "1"
    rag_enabled: bool = True
    rag_top_k: int = 5
    candidate_k: int = 15
    similarity_threshold: float = 0.78
    reverse_rag_enabled: bool = False
    reverse_rag_mode: ReverseRagMode = "precision"
    hyde_enabled: bool = False
    ranker_mode: RankerMode = "none"
    multi_query_mode: MultiQueryMode = "off"
    multi_query_max_queries: int = 2
    multi_query_timeout_seconds: float = 1.2

    # Ranking weight overrides (JSON objects when set from the environment)
    doc_type_weights: dict[str, float] = {}
    persona_type_weights: dict[str, float] = {}

    # Context budgets (recorded in config snapshots)
    context_token_budget: int = 4096
    history_token_budget: int = 1024
    context_clip_tokens: int = 256

    # Cache
    retrieval_cache_ttl_seconds: int = 300
    response_cache_ttl_seconds: int = 0

    # Telemetry
    telemetry_enabled: bool = True
    telemetry_sample_rate: float = 1.0
    telemetry_detail_level: DetailLevel = "standard"
    telemetry_include_pii: bool = False
    debug_rag_steps: bool = False
    prompt_base_version: str | None = None
    guardrail_route: GuardrailRoute = "normal"

    # Chroma similarity-search backend
    chroma_persist_dir: Path = Path("./.chroma")
    chroma_host: str | None = None
    chroma_port: int | None = None
    chroma_ssl: bool = False

    # Security
    api_key: str | None = None  # if set, required in X-API-Key header

    @property
    def is_test(self) -> bool:
        return self.environment == "test"

    @property
    def doc_type_weight_map(self) -> dict[str, float]:
        return _parse_weights(self.doc_type_weights)

    @property
    def persona_type_weight_map(self) -> dict[str, float]:
        return _parse_weights(self.persona_type_weights)

    def to_config_snapshot(self, *, embedding_model: str | None = None) -> ChatConfigSnapshot:
        """Project the live settings into the shape hashed by ``build_snapshot``."""

        return ChatConfigSnapshot.model_validate(
            {
                "preset_key": self.preset_key,
                "chat_engine": self.retrieval_mode,
                "llm_model": self.llm_model,
                "embedding_model": embedding_model or self.embedding_model or "unknown",
                "rag": {
                    "enabled": self.rag_enabled,
                    "top_k": self.rag_top_k,
                    "similarity": self.similarity_threshold,
                    "ranker": self.ranker_mode,
                    "candidate_k": self.candidate_k,
                    "reverse_rag": self.reverse_rag_enabled,
                    "reverse_rag_mode": self.reverse_rag_mode,
                    "multi_query_mode": self.multi_query_mode,
                    "multi_query_max_queries": self.multi_query_max_queries,
                    "multi_query_timeout_seconds": self.multi_query_timeout_seconds,
                    "match_rpc_version": self.match_rpc_version,
                    "hyde": self.hyde_enabled,
                    "summary_level": self.telemetry_detail_level,
                    "numeric_limits": {
                        "rag_top_k": self.rag_top_k,
                        "similarity_threshold": self.similarity_threshold,
                    },
                    "ranking": {
                        "doc_type_weights": self.doc_type_weight_map,
                        "persona_type_weights": self.persona_type_weight_map,
                    },
                },
                "context": {
                    "token_budget": self.context_token_budget,
                    "history_budget": self.history_token_budget,
                    "clip_tokens": self.context_clip_tokens,
                },
                "telemetry": {
                    "sample_rate": self.telemetry_sample_rate,
                    "detail_level": self.telemetry_detail_level,
                },
                "cache": {
                    "response_ttl_seconds": self.response_cache_ttl_seconds,
                    "retrieval_ttl_seconds": self.retrieval_cache_ttl_seconds,
                },
                "prompt": {"base_version": self.prompt_base_version},
                "guardrails": {"route": self.guardrail_route},
            },
        )


def _parse_weights(value: Mapping[str, Any] | None) -> dict[str, float]:
    weights: dict[str, float] = {}
    for key, raw in (value or {}).items():
        if isinstance(raw, bool) or not isinstance(raw, (int, float)):
            continue
        if not math.isfinite(raw):
            continue
        weights[str(key)] = float(raw)
    return weights


@lru_cache(maxsize=1)
def _cached_settings() -> Settings:
    return Settings()


def get_settings(override: Optional[dict[str, object]] = None) -> Settings:
    """Return settings, optionally overriding values without mutating cache."""

    if override:
        return Settings(**override)
    return _cached_settings()
