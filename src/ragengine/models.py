"""Shared domain models used across the retrieval pipeline."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Literal, Mapping, Optional, Sequence

# Authoritative per-document descriptor (doc_type, persona_type, is_public,
# source attribution, tags, ...). Kept as a plain mapping because the document
# store owns its schema and may add fields at any time.
RagDocumentMetadata = Dict[str, Any]

DocType = Literal["profile", "blog_post", "kb_article", "insight_note", "project_article", "photo", "other"]
PersonaType = Literal["personal", "professional", "hybrid"]
MultiQueryAltType = Literal["rewrite", "hyde", "none"]


@dataclass(frozen=True)
class RankingWeights:
    """Doc-type and persona-type weight overrides from the admin config."""

    doc_type_weights: Mapping[str, float] = field(default_factory=dict)
    persona_type_weights: Mapping[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class RetrievalCandidate:
    """One retrieved chunk, before or after enrichment."""

    doc_id: str | None
    chunk: str
    base_similarity: float
    metadata: Optional[RagDocumentMetadata] = None
    similarity: float | None = None
    metadata_weight: float | None = None
    filtered_out: bool = False
    raw: Mapping[str, Any] = field(default_factory=dict)

    @property
    def score(self) -> float:
        if self.similarity is not None:
            return self.similarity
        return self.base_similarity

    @property
    def source_url(self) -> str | None:
        value = (self.metadata or {}).get("source_url")
        return value if isinstance(value, str) and value else None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ReverseRagRecord:
    enabled: bool
    mode: str
    original: str
    rewritten: str


@dataclass(frozen=True)
class HydeRecord:
    enabled: bool
    generated: str | None


@dataclass(frozen=True)
class EnhancementSummary:
    """Auditable before/after record of the pre-retrieval transformations."""

    reverse_rag: ReverseRagRecord
    hyde: HydeRecord
    ranker_mode: str = "none"

    def to_dict(self) -> dict[str, Any]:
        return {
            "reverseRag": asdict(self.reverse_rag),
            "hyde": asdict(self.hyde),
            "ranker": {"mode": self.ranker_mode},
        }


@dataclass(frozen=True)
class PreRetrievalResult:
    rewritten_query: str
    hyde_document: str | None
    embedding_target: str
    summary: EnhancementSummary


@dataclass(frozen=True)
class ConfigSnapshot:
    """Normalized, hashed view of the active runtime policy."""

    summary: Mapping[str, Any]
    hash: str


@dataclass(frozen=True)
class RetrievalResult:
    """Final ordered, filtered candidates handed to the generation stage."""

    candidates: Sequence[RetrievalCandidate]
    pre_retrieval: PreRetrievalResult
    embedding_space_id: str
    config: ConfigSnapshot
    cache_key: str | None = None
    cache_hit: bool = False
    alt_query_type: MultiQueryAltType = "none"
    metrics: Mapping[str, Any] = field(default_factory=dict)
