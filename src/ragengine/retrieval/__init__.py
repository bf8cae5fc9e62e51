"""Retrieval components: dispatch, enrichment, merging and ranking."""

from .dispatcher import RetrievalBackendError, RetrievalDispatcher, RetrievalRequest, get_match_function_name
from .multi_query import merge_candidates, pick_alt_query_type
from .pre_retrieval import PreRetrievalOptions, prepare
from .ranker import apply_ranker, normalize_rag_k
from .ranking import compute_metadata_weight, enrich_and_filter

__all__ = [
    "PreRetrievalOptions",
    "RetrievalBackendError",
    "RetrievalDispatcher",
    "RetrievalRequest",
    "apply_ranker",
    "compute_metadata_weight",
    "enrich_and_filter",
    "get_match_function_name",
    "merge_candidates",
    "normalize_rag_k",
    "pick_alt_query_type",
    "prepare",
]
