"""Document metadata normalization and batched lookup by document id."""

from __future__ import annotations

import json
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence

from ragengine.metrics.observability import get_logger
from ragengine.models import RagDocumentMetadata, RetrievalCandidate

logger = get_logger("rag.metadata")

DOC_TYPE_OPTIONS = ("profile", "blog_post", "kb_article", "insight_note", "project_article", "photo", "other")
PERSONA_TYPE_OPTIONS = ("personal", "professional", "hybrid")


def _normalize_tags(tags: Any) -> List[str] | None:
    if not isinstance(tags, (list, tuple)):
        return None
    cleaned: set[str] = set()
    for tag in tags:
        if isinstance(tag, str):
            value = tag.strip()
        elif isinstance(tag, (int, float)) and not isinstance(tag, bool):
            value = str(tag)
        else:
            value = ""
        if value:
            cleaned.add(value)
    return sorted(cleaned)


def normalize_metadata(metadata: Mapping[str, Any] | None) -> Optional[RagDocumentMetadata]:
    """Drop ``None`` values, clean tags and sort keys; empty input yields ``None``."""

    if not metadata:
        return None
    entries: Dict[str, Any] = {}
    for key, value in metadata.items():
        if value is None:
            continue
        if key == "tags":
            tags = _normalize_tags(value)
            if tags is not None:
                entries[key] = tags
            continue
        entries[key] = value
    if not entries:
        return None
    return {key: entries[key] for key in sorted(entries)}


def metadata_equals(a: Mapping[str, Any] | None, b: Mapping[str, Any] | None) -> bool:
    left = normalize_metadata(a)
    right = normalize_metadata(b)
    if left is None and right is None:
        return True
    if left is None or right is None:
        return False
    return json.dumps(left, sort_keys=True, default=str) == json.dumps(right, sort_keys=True, default=str)


def merge_metadata(
    existing: Mapping[str, Any] | None,
    incoming: Mapping[str, Any] | None,
) -> Optional[RagDocumentMetadata]:
    """Overlay ``incoming`` onto ``existing``; incoming keys win."""

    merged = dict(normalize_metadata(existing) or {})
    merged.update(normalize_metadata(incoming) or {})
    return normalize_metadata(merged)


def normalize_page_id(page_id: Any) -> str | None:
    """Return the 32-character, dash-free, lowercase form of a page id."""

    if not isinstance(page_id, str) or not page_id:
        return None
    stripped = page_id.replace("-", "").strip().lower()
    if len(stripped) != 32:
        return None
    return stripped


def format_page_id(page_id: Any) -> str | None:
    """Return the dashed 8-4-4-4-12 form of a page id."""

    normalized = normalize_page_id(page_id)
    if normalized is None:
        return None
    return "-".join(
        (normalized[:8], normalized[8:12], normalized[12:16], normalized[16:20], normalized[20:]),
    )


def id_variants(value: Any) -> List[str]:
    """Raw, normalized and formatted variants of an id, in that order, deduplicated."""

    if not isinstance(value, str):
        return []
    trimmed = value.strip()
    if not trimmed:
        return []
    variants = [trimmed]
    for variant in (normalize_page_id(trimmed), format_page_id(trimmed)):
        if variant and variant not in variants:
            variants.append(variant)
    return variants


DocIdStrategy = Callable[[RetrievalCandidate], Any]


def _metadata_field(name: str) -> DocIdStrategy:
    return lambda candidate: (candidate.metadata or {}).get(name)


# Evaluated in order; the first strategy that yields a non-empty string wins.
CANDIDATE_DOC_ID_STRATEGIES: Sequence[DocIdStrategy] = (
    lambda candidate: candidate.doc_id,
    _metadata_field("doc_id"),
    _metadata_field("docId"),
)

# Extra metadata fields checked when collecting ids for a batched lookup.
LOOKUP_DOC_ID_STRATEGIES: Sequence[DocIdStrategy] = (
    *CANDIDATE_DOC_ID_STRATEGIES,
    _metadata_field("document_id"),
    _metadata_field("documentId"),
)


def resolve_doc_id(
    candidate: RetrievalCandidate,
    strategies: Sequence[DocIdStrategy] = CANDIDATE_DOC_ID_STRATEGIES,
) -> str | None:
    for strategy in strategies:
        value = strategy(candidate)
        if isinstance(value, str) and value.strip():
            return value
    return None


def extract_doc_ids(candidates: Iterable[RetrievalCandidate]) -> List[str]:
    """Collect every id variant worth looking up for ``candidates``."""

    seen: Dict[str, None] = {}
    for candidate in candidates:
        if candidate.doc_id and candidate.doc_id.strip():
            values: Iterable[Any] = (candidate.doc_id,)
        else:
            values = (strategy(candidate) for strategy in LOOKUP_DOC_ID_STRATEGIES[1:])
        for value in values:
            for variant in id_variants(value):
                seen.setdefault(variant, None)
    ids = list(seen)
    logger.debug("metadata.doc_ids", count=len(ids))
    return ids


class DocumentMetadataStore(Protocol):
    """Authoritative per-document metadata, read in batches."""

    async def get_metadata_by_ids(self, ids: Sequence[str]) -> Mapping[str, Mapping[str, Any] | None]:
        """Return metadata for the ids that exist; unknown ids are omitted."""


class InMemoryMetadataStore:
    """Dictionary-backed metadata store for tests and single-process deployments."""

    def __init__(self, documents: Mapping[str, Mapping[str, Any] | None] | None = None) -> None:
        self._documents: Dict[str, Mapping[str, Any] | None] = dict(documents or {})

    def put(self, doc_id: str, metadata: Mapping[str, Any] | None) -> None:
        self._documents[doc_id] = metadata

    async def get_metadata_by_ids(self, ids: Sequence[str]) -> Mapping[str, Mapping[str, Any] | None]:
        return {doc_id: self._documents[doc_id] for doc_id in ids if doc_id in self._documents}


async def fetch_refined_metadata(
    doc_ids: Sequence[str],
    store: DocumentMetadataStore,
) -> Dict[str, Optional[RagDocumentMetadata]]:
    """Look up ``doc_ids`` and index normalized metadata under every id variant."""

    if not doc_ids:
        return {}
    rows = await store.get_metadata_by_ids(list(doc_ids))
    refined: Dict[str, Optional[RagDocumentMetadata]] = {}
    for doc_id, metadata in rows.items():
        normalized = normalize_metadata(metadata)
        for variant in id_variants(doc_id):
            refined[variant] = normalized
    logger.debug(
        "metadata.snapshot",
        entries=[
            {
                "doc_id": doc_id,
                "doc_type": (metadata or {}).get("doc_type"),
                "persona_type": (metadata or {}).get("persona_type"),
            }
            for doc_id, metadata in refined.items()
        ],
    )
    return refined


__all__ = [
    "CANDIDATE_DOC_ID_STRATEGIES",
    "DOC_TYPE_OPTIONS",
    "DocumentMetadataStore",
    "InMemoryMetadataStore",
    "LOOKUP_DOC_ID_STRATEGIES",
    "PERSONA_TYPE_OPTIONS",
    "extract_doc_ids",
    "fetch_refined_metadata",
    "format_page_id",
    "id_variants",
    "merge_metadata",
    "metadata_equals",
    "normalize_metadata",
    "normalize_page_id",
    "resolve_doc_id",
]
