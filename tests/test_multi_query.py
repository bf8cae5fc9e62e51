from __future__ import annotations

from ragengine.models import RetrievalCandidate
from ragengine.retrieval.multi_query import (
    TEXT_WINDOW,
    candidate_key,
    is_weak_retrieval,
    merge_candidates,
    pick_alt_query_type,
    select_better_retrieval,
)


def _candidate(key: str, score: float, **metadata) -> RetrievalCandidate:
    return RetrievalCandidate(
        doc_id="doc",
        chunk=f"text for {key}",
        base_similarity=score,
        similarity=score,
        metadata={"chunk_id": key, "source_url": "https://example.com", **metadata},
    )


def _keys(candidates):
    return [candidate.metadata["chunk_id"] for candidate in candidates]


def test_duplicate_keeps_higher_score():
    merged = merge_candidates([_candidate("k1", 0.4)], [_candidate("k1", 0.8)])
    assert len(merged) == 1
    assert merged[0].similarity == 0.8


def test_equal_score_duplicate_keeps_earlier_occurrence():
    first = _candidate("k1", 0.5)
    merged = merge_candidates([first], [_candidate("k1", 0.5)])
    assert merged == [first]


def test_exact_ties_keep_insertion_order():
    merged = merge_candidates([_candidate("a", 0.5)], [_candidate("b", 0.5)])
    assert _keys(merged) == ["a", "b"]


def test_merge_with_empty_alt_preserves_sorted_base():
    base = [_candidate("a", 0.9), _candidate("b", 0.7), _candidate("c", 0.7)]
    assert merge_candidates(base, []) == base


def test_output_sorted_by_score():
    merged = merge_candidates([_candidate("a", 0.2), _candidate("b", 0.6)], [_candidate("c", 0.4)])
    assert _keys(merged) == ["b", "c", "a"]


def test_raw_score_used_when_unweighted():
    unweighted = RetrievalCandidate(doc_id="doc", chunk="x", base_similarity=0.9, metadata={"chunk_id": "z"})
    merged = merge_candidates([_candidate("a", 0.5)], [unweighted])
    assert merged[0] is unweighted


def test_key_strategy_order():
    assert candidate_key(_candidate("c1", 0.1, content_hash="h")) == "doc:doc:src:https://example.com:chunk:c1"
    hashed = RetrievalCandidate(doc_id="d", chunk="x", base_similarity=0.1, metadata={"contentHash": "h", "chunk_index": 2})
    assert candidate_key(hashed) == "doc:d:src:unknown:hash:h"
    indexed = RetrievalCandidate(doc_id=None, chunk="x", base_similarity=0.1, metadata={"chunkIndex": 0})
    assert candidate_key(indexed) == "doc:unknown:src:unknown:idx:0"


def test_text_key_uses_head_and_tail():
    middle_a = "a" * 100
    middle_b = "b" * 100
    head = "h" * TEXT_WINDOW
    tail = "t" * TEXT_WINDOW

    def text_candidate(text: str) -> RetrievalCandidate:
        return RetrievalCandidate(doc_id="d", chunk=text, base_similarity=0.1)

    first = candidate_key(text_candidate(head + middle_a + tail))
    second = candidate_key(text_candidate(head + middle_b + tail))
    assert first.startswith("doc:d:src:unknown:text:")
    assert first == second
    assert candidate_key(text_candidate("short one")) != candidate_key(text_candidate("short two"))


def test_pick_alt_query_type_prefers_rewrite():
    assert pick_alt_query_type(fired_rewrite=True, fired_hyde=True, rewrite_query="r", hyde_query="h") == "rewrite"
    assert pick_alt_query_type(fired_rewrite=False, fired_hyde=True, rewrite_query="r", hyde_query="h") == "hyde"
    assert pick_alt_query_type(fired_rewrite=True, fired_hyde=False, rewrite_query="  ") == "none"
    assert pick_alt_query_type(fired_rewrite=False, fired_hyde=False) == "none"


def test_weak_when_top_score_is_near_the_threshold():
    strong = [_candidate(f"k{i}", 0.9) for i in range(3)]
    assert is_weak_retrieval(strong, similarity_threshold=0.78, final_k=5) is False
    near = [_candidate(f"k{i}", 0.82) for i in range(3)]
    assert is_weak_retrieval(near, similarity_threshold=0.78, final_k=5) is True
    assert is_weak_retrieval([], similarity_threshold=0.0, final_k=1) is True


def test_weak_when_fewer_results_than_needed():
    one = [_candidate("k1", 0.95)]
    assert is_weak_retrieval(one, similarity_threshold=0.78, final_k=5) is True
    assert is_weak_retrieval(one, similarity_threshold=0.78, final_k=1) is False


def test_select_better_compares_top_score_then_size():
    base = [_candidate("b1", 0.7)]
    assert select_better_retrieval(base, [_candidate("a1", 0.8)]) == "alt"
    assert select_better_retrieval(base, [_candidate("a1", 0.6)]) == "base"
    assert select_better_retrieval(base, [_candidate("a1", 0.7), _candidate("a2", 0.5)]) == "alt"
    assert select_better_retrieval(base, [_candidate("a1", 0.7)]) == "base"
