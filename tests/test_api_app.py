"""Tests for the FastAPI application."""

from __future__ import annotations

import asyncio
from typing import Any, Mapping, Sequence, Tuple

import chromadb
from fastapi.testclient import TestClient

from ragengine.api.app import AppDependencies, create_app
from ragengine.config import Settings
from ragengine.embeddings.spaces import EmbeddingSpaceRegistry
from ragengine.embeddings.store import ChromaSearchBackend, ChunkRecord
from ragengine.retrieval.metadata import InMemoryMetadataStore
from ragengine.services.generation import EchoLLMProvider
from ragengine.services.pipeline import RetrievalPipeline

VOCABULARY = ("alpha", "beta")


class AxisEmbedder:
    async def embed(self, text: str, *, model: str | None = None) -> Tuple[float, ...]:
        words = text.lower().replace("?", "").split()
        return tuple(float(words.count(word)) for word in VOCABULARY) + (0.01,)

    async def embed_many(self, texts: Sequence[str], *, model: str | None = None):
        return [await self.embed(text) for text in texts]


class OfflineBackend:
    async def rpc(self, name: str, payload: Mapping[str, Any]):
        raise ConnectionError("connection refused by 10.0.0.5")

    async def count(self, space_id: str) -> int:
        raise ConnectionError("connection refused by 10.0.0.5")


def _dependencies(settings: Settings, backend: Any = None) -> AppDependencies:
    registry = EmbeddingSpaceRegistry.from_settings(settings)
    embedder = AxisEmbedder()
    if backend is None:
        backend = ChromaSearchBackend(embedder, registry=registry, client=chromadb.EphemeralClient())
        asyncio.run(backend.reset())
        asyncio.run(
            backend.upsert(
                registry.default_space_id,
                [
                    ChunkRecord("c-alpha", "doc-a", "alpha notes", {"source_url": "https://example.com/a"}),
                    ChunkRecord("c-beta", "doc-b", "beta notes"),
                    ChunkRecord("c-private", "doc-p", "alpha secrets"),
                ],
            ),
        )
    metadata_store = InMemoryMetadataStore({"doc-a": {"doc_type": "profile"}, "doc-p": {"is_public": False}})
    pipeline = RetrievalPipeline(
        backend,
        metadata_store,
        settings=settings,
        embedder=embedder,
        llm=EchoLLMProvider(),
        registry=registry,
    )
    return AppDependencies(backend=backend, metadata_store=metadata_store, pipeline=pipeline, registry=registry)


def create_test_client(settings: Settings | None = None, backend: Any = None) -> TestClient:
    settings = settings or Settings(environment="test")
    app = create_app(settings=settings, dependencies=_dependencies(settings, backend))
    return TestClient(app, raise_server_exceptions=False)


def test_retrieve_returns_ranked_public_candidates() -> None:
    client = create_test_client()
    response = client.post("/retrieve", json={"question": "alpha?"})
    assert response.status_code == 200
    payload = response.json()
    assert [candidate["doc_id"] for candidate in payload["candidates"]] == ["doc-a"]
    candidate = payload["candidates"][0]
    assert candidate["source_url"] == "https://example.com/a"
    assert candidate["metadata_weight"] == 1.15
    assert payload["embedding_space_id"] == "openai_te3s_v1"
    assert payload["cache_hit"] is False
    assert payload["enhancements"]["reverseRag"]["original"] == "alpha?"
    assert payload["metrics"]["filtered_out"] == 1


def test_repeated_retrieve_hits_cache() -> None:
    client = create_test_client()
    client.post("/retrieve", json={"question": "beta", "similarity_threshold": 0.5})
    response = client.post("/retrieve", json={"question": "beta", "similarity_threshold": 0.5})
    assert response.json()["cache_hit"] is True
    assert [candidate["doc_id"] for candidate in response.json()["candidates"]] == ["doc-b"]


def test_retrieve_validates_payload() -> None:
    client = create_test_client()
    assert client.post("/retrieve", json={"question": ""}).status_code == 422
    assert client.post("/retrieve", json={"question": "alpha", "ranker_mode": "bogus"}).status_code == 422


def test_backend_failure_maps_to_503_without_details() -> None:
    client = create_test_client(backend=OfflineBackend())
    response = client.post("/retrieve", json={"question": "alpha"}, headers={"X-Request-ID": "req-42"})
    assert response.status_code == 503
    assert response.json() == {"detail": "retrieval unavailable", "correlation_id": "req-42"}
    assert "10.0.0.5" not in response.text


def test_api_key_is_enforced() -> None:
    client = create_test_client(Settings(environment="test", api_key="secret"))
    assert client.post("/retrieve", json={"question": "alpha"}).status_code == 401
    authorized = client.post("/retrieve", json={"question": "alpha"}, headers={"X-API-Key": "secret"})
    assert authorized.status_code == 200


def test_config_snapshot_matches_pipeline() -> None:
    settings = Settings(environment="test", rag_top_k=7)
    client = create_test_client(settings)
    response = client.get("/config/snapshot")
    assert response.status_code == 200
    payload = response.json()
    assert payload["summary"]["rag"]["top_k"] == 7
    assert payload["hash"] == client.app.state.dependencies.pipeline.snapshot().hash


def test_embedding_spaces_listing() -> None:
    response = create_test_client().get("/embedding-spaces")
    ids = [space["embedding_space_id"] for space in response.json()]
    assert ids == ["openai_te3s_v1", "gemini_te4_v1"]


def test_health_endpoints_and_correlation_header() -> None:
    client = create_test_client()
    response = client.get("/healthz", headers={"X-Request-ID": "abc"})
    assert response.json()["status"] == "ok"
    assert response.json()["environment"] == "test"
    assert response.headers["X-Correlation-ID"] == "abc"
    assert client.head("/healthz").status_code == 200
    assert client.get("/livez").json() == {"status": "alive"}
    assert client.get("/healthz/ready").json() == {"status": "ready"}


def test_readiness_reports_backend_errors() -> None:
    client = create_test_client(backend=OfflineBackend())
    assert client.get("/healthz/ready").json() == {"status": "error", "detail": "backend unavailable"}


def test_metrics_endpoint_exposes_prometheus_text() -> None:
    client = create_test_client()
    client.post("/retrieve", json={"question": "alpha"})
    response = client.get("/metrics")
    assert response.status_code == 200
    assert "ragengine_retrieval_duration_seconds" in response.text
