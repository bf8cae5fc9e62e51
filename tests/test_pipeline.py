from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Mapping, Sequence, Tuple

import pytest

from ragengine.cache import MemoryCacheClient
from ragengine.config import Settings
from ragengine.embeddings.spaces import ProviderAvailability
from ragengine.retrieval.metadata import InMemoryMetadataStore
from ragengine.services.pipeline import RetrievalOptions, RetrievalPipeline, RetrievalUnavailableError
from ragengine.telemetry import BufferedTelemetrySink, TelemetryPolicy

QUESTION = "what does ada build"
QUESTION_VECTOR = (1.0,)
ALT_VECTOR = (2.0,)


class KeyedEmbedder:
    def __init__(self, table: Mapping[str, Tuple[float, ...]]) -> None:
        self.table = dict(table)

    async def embed(self, text: str, *, model: str | None = None) -> Tuple[float, ...]:
        return self.table.get(text, (0.0,))

    async def embed_many(self, texts: Sequence[str], *, model: str | None = None):
        return [await self.embed(text) for text in texts]


class ScriptedLLM:
    def __init__(self, rewrite: str | None = None, hyde: str | None = None) -> None:
        self.rewrite = rewrite
        self.hyde = hyde

    async def generate(self, prompt, *, model, temperature, system_prompt=None, max_tokens=None):
        if system_prompt and system_prompt.startswith("You rewrite"):
            return self.rewrite or prompt.splitlines()[-1]
        return self.hyde or ""


class FakeBackend:
    def __init__(
        self,
        rows: Mapping[Tuple[float, ...], List[Dict[str, Any]]] | None = None,
        *,
        fail_for: Sequence[Tuple[float, ...]] = (),
        block_for: Sequence[Tuple[float, ...]] = (),
    ) -> None:
        self.rows = dict(rows or {})
        self.fail_for = set(fail_for)
        self.block_for = set(block_for)
        self.calls: List[Tuple[str, Tuple[float, ...], Dict[str, Any]]] = []
        self.cancelled: List[Tuple[float, ...]] = []
        self.started = asyncio.Event()

    async def rpc(self, name: str, payload: Mapping[str, Any]) -> Sequence[Mapping[str, Any]]:
        vector = tuple(payload["query_embedding"])
        self.calls.append((name, vector, dict(payload)))
        if vector in self.block_for:
            self.started.set()
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                self.cancelled.append(vector)
                raise
        if vector in self.fail_for:
            raise ConnectionError("backend offline")
        return self.rows.get(vector, [])


def _row(chunk_id: str, doc_id: str, similarity: float) -> Dict[str, Any]:
    return {
        "doc_id": doc_id,
        "chunk": f"text {chunk_id}",
        "similarity": similarity,
        "metadata": {"chunk_id": chunk_id},
    }


def _pipeline(
    backend: FakeBackend,
    *,
    llm: ScriptedLLM | None = None,
    documents: Mapping[str, Mapping[str, Any]] | None = None,
    telemetry: Any = None,
    policy: TelemetryPolicy | None = None,
    cache: MemoryCacheClient | None = None,
    availability: ProviderAvailability | None = None,
    **settings: Any,
) -> RetrievalPipeline:
    return RetrievalPipeline(
        backend,
        InMemoryMetadataStore(documents),
        settings=Settings(environment="test", **settings),
        embedder=KeyedEmbedder({QUESTION: QUESTION_VECTOR, "rewritten query": ALT_VECTOR, "hypothetical": ALT_VECTOR}),
        llm=llm or ScriptedLLM(),
        cache=cache if cache is not None else MemoryCacheClient(),
        telemetry=telemetry,
        policy=policy,
        availability=availability,
    )


def _chunk_ids(result) -> List[str]:
    return [candidate.metadata["chunk_id"] for candidate in result.candidates]


def test_single_pass_enriches_filters_and_ranks():
    backend = FakeBackend(
        {
            QUESTION_VECTOR: [
                _row("photo-1", "doc-photo", 0.9),
                _row("private-1", "doc-private", 0.95),
                _row("profile-1", "doc-profile", 0.8),
            ],
        },
    )
    documents = {
        "doc-photo": {"doc_type": "photo"},
        "doc-private": {"is_public": False},
        "doc-profile": {"doc_type": "profile"},
    }
    result = asyncio.run(_pipeline(backend, documents=documents).run(QUESTION))

    assert _chunk_ids(result) == ["profile-1", "photo-1"]
    assert result.candidates[0].similarity == pytest.approx(0.8 * 1.15)
    assert result.alt_query_type == "none"
    assert result.embedding_space_id == "openai_te3s_v1"
    assert result.cache_key.startswith("chat:retrieval:default:")
    assert result.metrics["match_function"] == "match_native_chunks_openai_te3s_v1"
    assert result.metrics["filtered_out"] == 1
    assert result.metrics["returned"] == 2

    name, _, payload = backend.calls[0]
    assert name == "match_native_chunks_openai_te3s_v1"
    assert payload["match_count"] == 15
    assert payload["similarity_threshold"] == 0.78


def test_results_are_truncated_to_top_k():
    rows = [_row(f"c{i}", f"doc-{i}", 0.9 - i * 0.01) for i in range(6)]
    backend = FakeBackend({QUESTION_VECTOR: rows})
    result = asyncio.run(_pipeline(backend).run(QUESTION, RetrievalOptions(top_k=3)))
    assert _chunk_ids(result) == ["c0", "c1", "c2"]


def test_second_identical_request_is_served_from_cache():
    backend = FakeBackend({QUESTION_VECTOR: [_row("c1", "doc-1", 0.9)]})
    pipeline = _pipeline(backend)

    async def scenario():
        first = await pipeline.run(QUESTION)
        second = await pipeline.run(QUESTION)
        return first, second

    first, second = asyncio.run(scenario())
    assert first.cache_hit is False
    assert second.cache_hit is True
    assert second.cache_key == first.cache_key
    assert _chunk_ids(second) == ["c1"]
    assert len(backend.calls) == 1


def test_changed_policy_uses_a_different_cache_key():
    backend = FakeBackend({QUESTION_VECTOR: [_row("c1", "doc-1", 0.9)]})
    pipeline = _pipeline(backend)

    async def scenario():
        first = await pipeline.run(QUESTION)
        second = await pipeline.run(QUESTION, RetrievalOptions(similarity_threshold=0.5))
        return first, second

    first, second = asyncio.run(scenario())
    assert second.cache_hit is False
    assert first.cache_key != second.cache_key
    assert first.config.hash != second.config.hash


def test_cache_can_be_bypassed():
    backend = FakeBackend({QUESTION_VECTOR: [_row("c1", "doc-1", 0.9)]})
    cache = MemoryCacheClient()
    pipeline = _pipeline(backend, cache=cache, retrieval_cache_ttl_seconds=0)

    async def scenario():
        await pipeline.run(QUESTION)
        await pipeline.run(QUESTION)

    asyncio.run(scenario())
    assert len(backend.calls) == 2
    assert len(cache) == 0


def test_multi_query_merges_base_and_rewrite_passes():
    backend = FakeBackend(
        {
            QUESTION_VECTOR: [_row("k1", "doc-1", 0.4), _row("a", "doc-2", 0.5)],
            ALT_VECTOR: [_row("k1", "doc-1", 0.8), _row("b", "doc-3", 0.6)],
        },
    )
    pipeline = _pipeline(
        backend,
        llm=ScriptedLLM(rewrite="rewritten query"),
        reverse_rag_enabled=True,
        multi_query_mode="auto",
    )
    result = asyncio.run(pipeline.run(QUESTION))

    assert result.alt_query_type == "rewrite"
    assert _chunk_ids(result) == ["k1", "b", "a"]
    assert result.candidates[0].similarity == pytest.approx(0.8)
    assert result.metrics["base_candidates"] == 2
    assert result.metrics["alt_candidates"] == 2
    assert result.metrics["merged_candidates"] == 3
    assert result.metrics["multi_query_ran"] is True
    assert sorted(vector for _, vector, _ in backend.calls) == [QUESTION_VECTOR, ALT_VECTOR]


def test_hyde_labels_the_alternate_pass():
    backend = FakeBackend({ALT_VECTOR: [_row("h", "doc-1", 0.7)]})
    pipeline = _pipeline(backend, llm=ScriptedLLM(hyde="hypothetical"), hyde_enabled=True, multi_query_mode="auto")
    result = asyncio.run(pipeline.run(QUESTION))
    assert result.alt_query_type == "hyde"
    assert result.pre_retrieval.embedding_target == "hypothetical"
    assert _chunk_ids(result) == ["h"]


def test_multi_query_off_embeds_only_the_target():
    backend = FakeBackend({ALT_VECTOR: [_row("r", "doc-1", 0.7)]})
    pipeline = _pipeline(backend, llm=ScriptedLLM(rewrite="rewritten query"), reverse_rag_enabled=True)
    result = asyncio.run(pipeline.run(QUESTION))
    assert result.alt_query_type == "none"
    assert [vector for _, vector, _ in backend.calls] == [ALT_VECTOR]
    assert result.metrics["multi_query_skipped"] == "not_enabled"


def test_backend_failure_is_reported_as_unavailable_and_not_cached():
    backend = FakeBackend(fail_for=[QUESTION_VECTOR])
    cache = MemoryCacheClient()
    sink = BufferedTelemetrySink()
    pipeline = _pipeline(backend, cache=cache, telemetry=sink)

    with pytest.raises(RetrievalUnavailableError) as excinfo:
        asyncio.run(pipeline.run(QUESTION))

    assert str(excinfo.value) == "retrieval unavailable"
    assert "backend offline" not in str(excinfo.value)
    assert len(cache) == 0
    assert "rag.retrieval_failed" in sink.names()


def test_failed_alternate_pass_falls_back_to_base():
    backend = FakeBackend({QUESTION_VECTOR: [_row("c1", "doc-1", 0.5)]}, fail_for=[ALT_VECTOR])
    cache = MemoryCacheClient()
    pipeline = _pipeline(
        backend,
        llm=ScriptedLLM(rewrite="rewritten query"),
        cache=cache,
        reverse_rag_enabled=True,
        multi_query_mode="auto",
    )
    result = asyncio.run(pipeline.run(QUESTION))

    assert _chunk_ids(result) == ["c1"]
    assert result.alt_query_type == "none"
    assert result.metrics["multi_query_ran"] is False
    assert result.metrics["multi_query_skipped"] == "error"
    assert len(cache) == 0


def test_slow_alternate_pass_times_out_to_base():
    backend = FakeBackend({QUESTION_VECTOR: [_row("c1", "doc-1", 0.5)]}, block_for=[ALT_VECTOR])
    pipeline = _pipeline(
        backend,
        llm=ScriptedLLM(rewrite="rewritten query"),
        reverse_rag_enabled=True,
        multi_query_mode="auto",
        multi_query_timeout_seconds=0.05,
    )
    result = asyncio.run(pipeline.run(QUESTION))

    assert _chunk_ids(result) == ["c1"]
    assert result.metrics["multi_query_skipped"] == "timeout"
    assert backend.cancelled == [ALT_VECTOR]


def test_strong_base_pass_skips_the_alternate_pass():
    rows = [_row("c1", "doc-1", 0.92), _row("c2", "doc-2", 0.9), _row("c3", "doc-3", 0.88)]
    backend = FakeBackend({QUESTION_VECTOR: rows, ALT_VECTOR: [_row("r", "doc-9", 0.99)]})
    pipeline = _pipeline(
        backend,
        llm=ScriptedLLM(rewrite="rewritten query"),
        reverse_rag_enabled=True,
        multi_query_mode="auto",
    )
    result = asyncio.run(pipeline.run(QUESTION))

    assert _chunk_ids(result) == ["c1", "c2", "c3"]
    assert result.alt_query_type == "none"
    assert result.metrics["weak_base"] is False
    assert result.metrics["multi_query_skipped"] == "not_weak"
    assert [vector for _, vector, _ in backend.calls] == [QUESTION_VECTOR]


def test_too_few_strong_results_still_count_as_weak():
    backend = FakeBackend(
        {QUESTION_VECTOR: [_row("c1", "doc-1", 0.95)], ALT_VECTOR: [_row("r", "doc-2", 0.9)]},
    )
    pipeline = _pipeline(
        backend,
        llm=ScriptedLLM(rewrite="rewritten query"),
        reverse_rag_enabled=True,
        multi_query_mode="auto",
    )
    result = asyncio.run(pipeline.run(QUESTION))

    assert result.metrics["weak_base"] is True
    assert result.metrics["multi_query_ran"] is True
    assert result.metrics["winner"] == "base"
    assert _chunk_ids(result) == ["c1", "r"]


def test_rpc_version_changes_cache_key_and_match_function():
    backend = FakeBackend({QUESTION_VECTOR: [_row("c1", "doc-1", 0.9)]})
    cache = MemoryCacheClient()

    async def scenario():
        first = await _pipeline(backend, cache=cache).run(QUESTION)
        second = await _pipeline(backend, cache=cache, match_rpc_version="2").run(QUESTION)
        return first, second

    first, second = asyncio.run(scenario())
    assert second.cache_hit is False
    assert first.cache_key != second.cache_key
    assert second.metrics["match_function"] == "match_native_chunks_openai_te3s_v2"


def test_cancellation_propagates_and_leaves_cache_empty():
    backend = FakeBackend(block_for=[QUESTION_VECTOR])
    cache = MemoryCacheClient()
    pipeline = _pipeline(backend, cache=cache)

    async def scenario():
        task = asyncio.create_task(pipeline.run(QUESTION))
        await backend.started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(scenario())
    assert backend.cancelled == [QUESTION_VECTOR]
    assert len(cache) == 0


def test_telemetry_redacts_query_text_by_default():
    sink = BufferedTelemetrySink()
    backend = FakeBackend({ALT_VECTOR: [_row("r", "doc-1", 0.7)]})
    pipeline = _pipeline(backend, llm=ScriptedLLM(rewrite="rewritten query"), reverse_rag_enabled=True, telemetry=sink)
    asyncio.run(pipeline.run(QUESTION))

    assert sink.names() == ["rag.pre_retrieval", "rag.retrieval"]
    pre = sink.events[0].payload
    assert pre["reverseRag"]["original"]["length"] == len(QUESTION)
    assert QUESTION not in str(pre)
    assert pre["hyde"]["generated"] is None
    assert "candidates" not in sink.events[1].payload


def test_telemetry_includes_text_and_candidates_when_allowed():
    sink = BufferedTelemetrySink()
    backend = FakeBackend({QUESTION_VECTOR: [_row("c1", "doc-1", 0.9)]})
    policy = TelemetryPolicy(include_pii=True, detail_level="verbose")
    asyncio.run(_pipeline(backend, telemetry=sink, policy=policy).run(QUESTION))

    pre, retrieval = sink.events
    assert pre.payload["reverseRag"]["original"] == QUESTION
    assert retrieval.payload["candidates"][0]["doc_id"] == "doc-1"
    assert retrieval.payload["metrics"]["returned"] == 1


def test_unsampled_requests_emit_nothing():
    sink = BufferedTelemetrySink()
    backend = FakeBackend({QUESTION_VECTOR: [_row("c1", "doc-1", 0.9)]})
    asyncio.run(_pipeline(backend, telemetry=sink, policy=TelemetryPolicy(sample_rate=0.0)).run(QUESTION))
    assert sink.events == []


def test_telemetry_failure_does_not_break_retrieval():
    class ExplodingSink:
        def record(self, event, payload):
            raise RuntimeError("collector offline")

    backend = FakeBackend({QUESTION_VECTOR: [_row("c1", "doc-1", 0.9)]})
    result = asyncio.run(_pipeline(backend, telemetry=ExplodingSink()).run(QUESTION))
    assert _chunk_ids(result) == ["c1"]


def test_embedding_provider_selects_match_function():
    backend = FakeBackend()
    result = asyncio.run(
        _pipeline(backend).run(QUESTION, RetrievalOptions(embedding_provider="gemini", retrieval_mode="langchain")),
    )
    assert result.embedding_space_id == "gemini_te4_v1"
    name, _, payload = backend.calls[0]
    assert name == "match_langchain_chunks_gemini_te4_v1"
    assert "similarity_threshold" not in payload


def test_disabled_provider_falls_back():
    backend = FakeBackend()
    pipeline = _pipeline(backend, availability=ProviderAvailability(gemini_enabled=False))
    result = asyncio.run(pipeline.run(QUESTION, RetrievalOptions(embedding_space_id="gemini_te4_v1")))
    assert result.embedding_space_id == "openai_te3s_v1"


def test_snapshot_reflects_request_overrides():
    pipeline = _pipeline(FakeBackend())
    assert pipeline.snapshot().summary["rag"]["top_k"] == 5
    assert pipeline.snapshot(RetrievalOptions(top_k=9)).summary["rag"]["top_k"] == 9
    assert pipeline.snapshot().summary["engine"]["embedding_model"] == "text-embedding-3-small"
