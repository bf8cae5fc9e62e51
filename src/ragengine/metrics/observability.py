"""Observability helpers for the retrieval engine."""

from __future__ import annotations

import logging
import time
from contextvars import ContextVar
from typing import Any, Callable, Iterable, Mapping

import structlog
from prometheus_client import Counter, Histogram

_logger_configured = False
_debug_rag_steps = False
_correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="-")


def configure_logging(level: int = logging.INFO, *, debug_rag_steps: bool | None = None) -> None:
    global _logger_configured, _debug_rag_steps  # noqa: PLW0603 - module-level guard
    if debug_rag_steps is not None:
        _debug_rag_steps = debug_rag_steps
    if _logger_configured:
        return
    logging.basicConfig(level=level, format="%(message)s")
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _logger_configured = True


def bind_correlation_id(correlation_id: str) -> None:
    structlog.contextvars.bind_contextvars(correlation_id=correlation_id)
    _correlation_id_var.set(correlation_id)


def clear_correlation_id() -> None:
    structlog.contextvars.clear_contextvars()
    _correlation_id_var.set("-")


def get_correlation_id() -> str:
    return _correlation_id_var.get()


def get_logger(name: str = "ragengine") -> structlog.BoundLogger:
    configure_logging()
    return structlog.get_logger(name)


def log_debug_rag(stage: str, payload: Mapping[str, Any] | None = None) -> None:
    """Emit a per-stage debug snapshot when debug step logging is on."""

    if not _debug_rag_steps:
        return
    get_logger("rag.debug").info(f"rag-debug.{stage}", **dict(payload or {}))


def _clamp_score(score: float) -> float:
    if score < 0.0:
        return 0.0
    if score > 1.0:
        return 1.0
    return score


class PipelineMetrics:
    """Prometheus metrics for retrieval stages."""

    pre_retrieval_latency = Histogram(
        "ragengine_pre_retrieval_duration_seconds",
        "Time spent rewriting queries and generating hypothetical documents.",
        buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0),
    )
    retrieval_latency = Histogram(
        "ragengine_retrieval_duration_seconds",
        "Time spent in similarity search calls.",
        buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.0, 5.0),
    )
    retrieved_candidate_count = Histogram(
        "ragengine_retrieved_candidate_count",
        "Number of candidates returned by similarity search.",
        buckets=(0, 1, 2, 3, 5, 8, 13, 21),
    )
    weighted_similarity = Histogram(
        "ragengine_weighted_similarity",
        "Metadata-weighted similarity of ranked candidates.",
        buckets=(0.0, 0.25, 0.5, 0.75, 1.0),
    )
    low_recall = Counter(
        "ragengine_low_recall_total",
        "Similarity searches returning fewer than half the requested matches.",
        ["match_function"],
    )
    filtered_private = Counter(
        "ragengine_filtered_private_total",
        "Candidates dropped because their document is not public.",
    )
    cache_lookups = Counter(
        "ragengine_cache_lookups_total",
        "Retrieval cache lookups by outcome.",
        ["outcome"],
    )
    multi_query_merges = Counter(
        "ragengine_multi_query_merges_total",
        "Multi-query merges by alternate query type.",
        ["alt_type"],
    )
    multi_query_skips = Counter(
        "ragengine_multi_query_skipped_total",
        "Alternate passes skipped or abandoned, by reason.",
        ["reason"],
    )

    @classmethod
    def observe_pre_retrieval(cls, duration_seconds: float) -> None:
        cls.pre_retrieval_latency.observe(duration_seconds)

    @classmethod
    def observe_retrieval(
        cls,
        duration_seconds: float,
        candidate_count: int,
        scores: Iterable[float],
    ) -> None:
        cls.retrieval_latency.observe(duration_seconds)
        cls.retrieved_candidate_count.observe(candidate_count)
        for score in scores:
            cls.weighted_similarity.observe(_clamp_score(score))

    @classmethod
    def observe_low_recall(cls, match_function: str) -> None:
        cls.low_recall.labels(match_function=match_function).inc()

    @classmethod
    def observe_filtered(cls, count: int) -> None:
        if count:
            cls.filtered_private.inc(count)

    @classmethod
    def observe_cache(cls, hit: bool) -> None:
        cls.cache_lookups.labels(outcome="hit" if hit else "miss").inc()

    @classmethod
    def observe_merge(cls, alt_type: str) -> None:
        cls.multi_query_merges.labels(alt_type=alt_type).inc()

    @classmethod
    def observe_multi_query_skip(cls, reason: str) -> None:
        cls.multi_query_skips.labels(reason=reason).inc()


class TimedSection:
    """Context manager capturing elapsed time for metrics."""

    def __init__(self, callback: Callable[[float], None] | None = None) -> None:
        self._callback = callback
        self._start = 0.0
        self.duration = 0.0

    def __enter__(self) -> "TimedSection":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # noqa: D401
        self.duration = time.perf_counter() - self._start
        if self._callback is not None and exc_type is None:
            self._callback(self.duration)


__all__ = [
    "PipelineMetrics",
    "TimedSection",
    "bind_correlation_id",
    "clear_correlation_id",
    "configure_logging",
    "get_correlation_id",
    "get_logger",
    "log_debug_rag",
]
