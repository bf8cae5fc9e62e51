"""Query rewriting and hypothetical-document generation ahead of retrieval."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from ragengine.metrics.observability import PipelineMetrics, TimedSection, get_logger, log_debug_rag
from ragengine.models import EnhancementSummary, HydeRecord, PreRetrievalResult, ReverseRagRecord
from ragengine.services.generation import LLMProvider

ReverseRagMode = Literal["precision", "recall"]

REWRITE_MAX_TOKENS = 64
REWRITE_TEMPERATURE = 0.2
HYDE_MAX_TOKENS = 220
HYDE_TEMPERATURE = 0.35

REWRITE_SYSTEM_PROMPT = (
    "You rewrite user questions into concise search queries optimized for a document search engine. "
    "Return only the rewritten query."
)
HYDE_SYSTEM_PROMPT = (
    "You are generating a hypothetical document that could plausibly answer the user question. "
    "Provide a short passage that contains potential statements or facts."
)
MODE_DESCRIPTORS = {
    "precision": "Focus the search terms on the most specific and distinguishing concepts.",
    "recall": "Include broader synonyms or related topics to cast a wider net.",
}

logger = get_logger("rag.pre_retrieval")


@dataclass(frozen=True)
class PreRetrievalOptions:
    rewrite_enabled: bool = False
    rewrite_mode: ReverseRagMode = "precision"
    hyde_enabled: bool = False
    ranker_mode: str = "none"
    provider: str | None = None
    model: str = "gpt-4o-mini"


async def rewrite_query(
    question: str,
    llm: LLMProvider,
    *,
    enabled: bool,
    mode: ReverseRagMode = "precision",
    model: str,
) -> str:
    """Return a search-optimized rewrite of ``question``, or ``question`` itself."""

    if not enabled or not question.strip():
        return question
    descriptor = MODE_DESCRIPTORS.get(mode, MODE_DESCRIPTORS["precision"])
    prompt = "\n".join((f"Mode: {mode} ({descriptor})", "Question:", question))
    try:
        rewritten = await llm.generate(
            prompt,
            model=model,
            temperature=REWRITE_TEMPERATURE,
            system_prompt=REWRITE_SYSTEM_PROMPT,
            max_tokens=REWRITE_MAX_TOKENS,
        )
    except Exception as exc:
        logger.warning("pre_retrieval.rewrite_failed", detail=str(exc))
        return question
    return rewritten if rewritten else question


async def generate_hyde_document(
    query: str,
    llm: LLMProvider,
    *,
    enabled: bool,
    model: str,
) -> str | None:
    """Return a short hypothetical answer passage for ``query``, or ``None``."""

    if not enabled or not query.strip():
        return None
    try:
        document = await llm.generate(
            "\n".join(("Question:", query)),
            model=model,
            temperature=HYDE_TEMPERATURE,
            system_prompt=HYDE_SYSTEM_PROMPT,
            max_tokens=HYDE_MAX_TOKENS,
        )
    except Exception as exc:
        logger.warning("pre_retrieval.hyde_failed", detail=str(exc))
        return None
    return document or None


async def prepare(question: str, options: PreRetrievalOptions, llm: LLMProvider) -> PreRetrievalResult:
    """Run rewrite then HyDE and pick the text to embed.

    The enhancement summary is always built; shipping it to telemetry is the
    caller's decision.
    """

    with TimedSection(PipelineMetrics.observe_pre_retrieval):
        rewritten = await rewrite_query(
            question,
            llm,
            enabled=options.rewrite_enabled,
            mode=options.rewrite_mode,
            model=options.model,
        )
        log_debug_rag(
            "reverse-query",
            {
                "enabled": options.rewrite_enabled,
                "mode": options.rewrite_mode,
                "provider": options.provider,
                "model": options.model,
                "original": question,
                "rewritten": rewritten,
            },
        )
        hyde_document = await generate_hyde_document(
            rewritten,
            llm,
            enabled=options.hyde_enabled,
            model=options.model,
        )
        log_debug_rag("hyde", {"enabled": options.hyde_enabled, "generated": hyde_document})

    embedding_target = hyde_document if hyde_document is not None else rewritten
    log_debug_rag("retrieval", {"query": embedding_target, "mode": options.ranker_mode})
    return PreRetrievalResult(
        rewritten_query=rewritten,
        hyde_document=hyde_document,
        embedding_target=embedding_target,
        summary=EnhancementSummary(
            reverse_rag=ReverseRagRecord(
                enabled=options.rewrite_enabled,
                mode=options.rewrite_mode,
                original=question,
                rewritten=rewritten,
            ),
            hyde=HydeRecord(enabled=options.hyde_enabled, generated=hyde_document),
            ranker_mode=options.ranker_mode,
        ),
    )


__all__ = [
    "HYDE_MAX_TOKENS",
    "HYDE_TEMPERATURE",
    "PreRetrievalOptions",
    "REWRITE_MAX_TOKENS",
    "REWRITE_TEMPERATURE",
    "generate_hyde_document",
    "prepare",
    "rewrite_query",
]
