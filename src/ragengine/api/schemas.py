"""Pydantic models for the retrieval API."""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class RetrieveRequest(BaseModel):
    question: str = Field(..., min_length=1, description="End-user question to retrieve context for")
    top_k: Optional[int] = Field(default=None, ge=1, le=50, description="Override the final number of candidates")
    candidate_k: Optional[int] = Field(default=None, ge=1, le=200, description="Override the vector search limit")
    similarity_threshold: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    rewrite_enabled: Optional[bool] = None
    rewrite_mode: Optional[Literal["precision", "recall"]] = None
    hyde_enabled: Optional[bool] = None
    ranker_mode: Optional[Literal["none", "mmr", "cohere-rerank"]] = None
    multi_query_mode: Optional[Literal["off", "auto"]] = None
    retrieval_mode: Optional[Literal["native", "langchain"]] = None
    embedding_space_id: Optional[str] = Field(default=None, description="Embedding space id or alias")
    embedding_model: Optional[str] = None
    embedding_provider: Optional[str] = None
    filter: Dict[str, Any] = Field(default_factory=dict, description="Backend metadata filter")
    use_cache: bool = True


class CandidateModel(BaseModel):
    doc_id: Optional[str]
    chunk: str
    similarity: float
    base_similarity: float
    metadata_weight: Optional[float] = None
    source_url: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class RetrieveResponse(BaseModel):
    candidates: List[CandidateModel]
    embedding_space_id: str
    config_hash: str
    cache_hit: bool
    alt_query_type: Literal["rewrite", "hyde", "none"]
    enhancements: Dict[str, Any]
    metrics: Dict[str, Any] = Field(default_factory=dict)
    latency_ms: float


class ConfigSnapshotResponse(BaseModel):
    hash: str
    summary: Dict[str, Any]


class EmbeddingSpaceModel(BaseModel):
    embedding_space_id: str
    provider: str
    model: str
    version: str
    label: str
    match_rpc: str
    lc_match_rpc: str
