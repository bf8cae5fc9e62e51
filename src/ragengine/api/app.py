"""FastAPI application exposing the retrieval pipeline."""

from __future__ import annotations

import time
from dataclasses import dataclass
from uuid import uuid4

import chromadb
from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from ragengine.api.schemas import (
    CandidateModel,
    ConfigSnapshotResponse,
    EmbeddingSpaceModel,
    RetrieveRequest,
    RetrieveResponse,
)
from ragengine.config import Settings, get_settings
from ragengine.embeddings import ChromaSearchBackend, EmbeddingConfig, EmbeddingSpaceRegistry, build_embedding_provider
from ragengine.metrics.observability import bind_correlation_id, clear_correlation_id, configure_logging, get_logger
from ragengine.retrieval.metadata import DocumentMetadataStore, InMemoryMetadataStore
from ragengine.services.generation import GenerationConfig, build_llm_provider
from ragengine.services.pipeline import RetrievalOptions, RetrievalPipeline, RetrievalUnavailableError
from ragengine.telemetry import LoggingTelemetrySink


@dataclass(frozen=True)
class AppDependencies:
    backend: ChromaSearchBackend
    metadata_store: DocumentMetadataStore
    pipeline: RetrievalPipeline
    registry: EmbeddingSpaceRegistry


def _build_dependencies(settings: Settings) -> AppDependencies:
    registry = EmbeddingSpaceRegistry.from_settings(settings)
    embedder = build_embedding_provider(
        EmbeddingConfig(
            model=settings.local_embedding_model,
            dim=settings.embedding_dim,
            use_model=settings.use_model_embeddings,
            normalize=True,
        ),
    )
    llm = build_llm_provider(
        GenerationConfig(
            model=settings.local_llm_model,
            max_new_tokens=settings.local_llm_max_new_tokens,
            use_model=settings.use_model_llm,
        ),
    )
    chroma_client = None
    if settings.chroma_host:
        chroma_client = chromadb.HttpClient(
            host=settings.chroma_host,
            port=settings.chroma_port or 8000,
            ssl=settings.chroma_ssl,
        )
    backend = ChromaSearchBackend(
        embedder,
        registry=registry,
        client=chroma_client,
        persist_directory=None if chroma_client else settings.chroma_persist_dir,
    )
    metadata_store = InMemoryMetadataStore()
    pipeline = RetrievalPipeline(
        backend,
        metadata_store,
        settings=settings,
        embedder=embedder,
        llm=llm,
        telemetry=LoggingTelemetrySink(),
        registry=registry,
    )
    return AppDependencies(backend=backend, metadata_store=metadata_store, pipeline=pipeline, registry=registry)


def _options_from_request(payload: RetrieveRequest) -> RetrievalOptions:
    return RetrievalOptions(
        top_k=payload.top_k,
        candidate_k=payload.candidate_k,
        similarity_threshold=payload.similarity_threshold,
        rewrite_enabled=payload.rewrite_enabled,
        rewrite_mode=payload.rewrite_mode,
        hyde_enabled=payload.hyde_enabled,
        ranker_mode=payload.ranker_mode,
        multi_query_mode=payload.multi_query_mode,
        retrieval_mode=payload.retrieval_mode,
        embedding_space_id=payload.embedding_space_id,
        embedding_model=payload.embedding_model,
        embedding_provider=payload.embedding_provider,
        filter=payload.filter,
        use_cache=payload.use_cache,
    )


def create_app(*, settings: Settings | None = None, dependencies: AppDependencies | None = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(debug_rag_steps=settings.debug_rag_steps)
    deps = dependencies or _build_dependencies(settings)

    logger = get_logger("api")
    app = FastAPI(title="RAG Engine API", version="0.1.0")
    app.state.dependencies = deps

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):  # type: ignore[override]
        correlation_id = request.headers.get("X-Request-ID", uuid4().hex)
        request.state.correlation_id = correlation_id
        bind_correlation_id(correlation_id)
        try:
            response = await call_next(request)
        finally:
            clear_correlation_id()
        response.headers["X-Correlation-ID"] = correlation_id
        return response

    def require_api_key(request: Request) -> None:
        expected = settings.api_key
        if not expected:
            return
        provided = request.headers.get("X-API-Key")
        if provided != expected:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")

    @app.exception_handler(RetrievalUnavailableError)
    async def handle_retrieval_unavailable(request: Request, exc: RetrievalUnavailableError) -> JSONResponse:
        correlation_id = getattr(request.state, "correlation_id", uuid4().hex)
        logger.error("retrieval.unavailable", correlation_id=correlation_id, stage=exc.stage)
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"detail": "retrieval unavailable", "correlation_id": correlation_id},
        )

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        correlation_id = getattr(request.state, "correlation_id", uuid4().hex)
        logger.error("unhandled.error", correlation_id=correlation_id, detail=str(exc))
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "Internal Server Error", "correlation_id": correlation_id},
        )

    def get_dependencies(request: Request) -> AppDependencies:
        return request.app.state.dependencies

    def get_pipeline(dep: AppDependencies = Depends(get_dependencies)) -> RetrievalPipeline:
        return dep.pipeline

    @app.post("/retrieve", response_model=RetrieveResponse)
    async def retrieve(
        payload: RetrieveRequest,
        pipeline: RetrievalPipeline = Depends(get_pipeline),
        _auth: None = Depends(require_api_key),
    ) -> RetrieveResponse:
        start = time.perf_counter()
        result = await pipeline.run(payload.question, _options_from_request(payload))
        candidates = [
            CandidateModel(
                doc_id=candidate.doc_id,
                chunk=candidate.chunk,
                similarity=candidate.score,
                base_similarity=candidate.base_similarity,
                metadata_weight=candidate.metadata_weight,
                source_url=candidate.source_url,
                metadata=dict(candidate.metadata or {}),
            )
            for candidate in result.candidates
        ]
        return RetrieveResponse(
            candidates=candidates,
            embedding_space_id=result.embedding_space_id,
            config_hash=result.config.hash,
            cache_hit=result.cache_hit,
            alt_query_type=result.alt_query_type,
            enhancements=result.pre_retrieval.summary.to_dict(),
            metrics=dict(result.metrics),
            latency_ms=(time.perf_counter() - start) * 1000,
        )

    @app.get("/config/snapshot", response_model=ConfigSnapshotResponse)
    async def config_snapshot(
        pipeline: RetrievalPipeline = Depends(get_pipeline),
        _auth: None = Depends(require_api_key),
    ) -> ConfigSnapshotResponse:
        snapshot = pipeline.snapshot()
        return ConfigSnapshotResponse(hash=snapshot.hash, summary=dict(snapshot.summary))

    @app.get("/embedding-spaces", response_model=list[EmbeddingSpaceModel])
    async def embedding_spaces(dep: AppDependencies = Depends(get_dependencies)) -> list[EmbeddingSpaceModel]:
        return [
            EmbeddingSpaceModel(
                embedding_space_id=space.embedding_space_id,
                provider=space.provider,
                model=space.model,
                version=space.version,
                label=space.label,
                match_rpc=space.match_rpc,
                lc_match_rpc=space.lc_match_rpc,
            )
            for space in dep.registry.spaces
        ]

    @app.get("/metrics")
    async def metrics() -> Response:
        payload = generate_latest()
        return Response(content=payload, media_type=CONTENT_TYPE_LATEST)

    @app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        from ragengine import __version__

        return {"status": "ok", "version": __version__, "environment": settings.environment}

    @app.head("/healthz")
    async def healthcheck_head() -> Response:
        return Response(status_code=status.HTTP_200_OK)

    @app.get("/livez")
    async def liveness() -> dict[str, str]:
        return {"status": "alive"}

    @app.get("/healthz/ready")
    async def readiness(dep: AppDependencies = Depends(get_dependencies)) -> dict[str, str]:
        try:
            await dep.backend.count(dep.registry.default_space_id)
        except Exception as exc:
            logger.warning("readiness.failed", detail=str(exc))
            return {"status": "error", "detail": "backend unavailable"}
        return {"status": "ready"}

    return app
