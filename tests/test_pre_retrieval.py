from __future__ import annotations

import asyncio
from typing import Any, Dict, List

import pytest

from ragengine.retrieval.pre_retrieval import (
    HYDE_MAX_TOKENS,
    HYDE_TEMPERATURE,
    REWRITE_MAX_TOKENS,
    REWRITE_TEMPERATURE,
    PreRetrievalOptions,
    generate_hyde_document,
    prepare,
    rewrite_query,
)


class ScriptedLLM:
    """Returns canned responses keyed by system prompt prefix and records calls."""

    def __init__(self, rewrite: str | BaseException = "rewritten query", hyde: str | BaseException = "hypothetical passage"):
        self.rewrite = rewrite
        self.hyde = hyde
        self.calls: List[Dict[str, Any]] = []

    async def generate(self, prompt, *, model, temperature, system_prompt=None, max_tokens=None):
        self.calls.append(
            {"prompt": prompt, "model": model, "temperature": temperature, "max_tokens": max_tokens},
        )
        response = self.rewrite if system_prompt and system_prompt.startswith("You rewrite") else self.hyde
        if isinstance(response, BaseException):
            raise response
        return response


def _prepare(question: str, llm: ScriptedLLM, **options):
    return asyncio.run(prepare(question, PreRetrievalOptions(**options), llm))


def test_disabled_stages_leave_question_untouched():
    llm = ScriptedLLM()
    result = _prepare("Who is Ada?", llm)
    assert result.rewritten_query == "Who is Ada?"
    assert result.hyde_document is None
    assert result.embedding_target == "Who is Ada?"
    assert llm.calls == []


def test_rewrite_uses_low_temperature_and_token_cap():
    llm = ScriptedLLM()
    result = _prepare("Who is Ada?", llm, rewrite_enabled=True, rewrite_mode="recall", model="m-1")
    assert result.rewritten_query == "rewritten query"
    assert result.embedding_target == "rewritten query"
    call = llm.calls[0]
    assert call["temperature"] == REWRITE_TEMPERATURE
    assert call["max_tokens"] == REWRITE_MAX_TOKENS
    assert call["model"] == "m-1"
    assert "Mode: recall" in call["prompt"]


def test_hyde_document_becomes_embedding_target():
    llm = ScriptedLLM()
    result = _prepare("Who is Ada?", llm, rewrite_enabled=True, hyde_enabled=True)
    assert result.hyde_document == "hypothetical passage"
    assert result.embedding_target == "hypothetical passage"
    hyde_call = llm.calls[1]
    assert hyde_call["prompt"].endswith("rewritten query")
    assert hyde_call["temperature"] == HYDE_TEMPERATURE
    assert hyde_call["max_tokens"] == HYDE_MAX_TOKENS


def test_rewrite_failure_falls_back_to_question():
    llm = ScriptedLLM(rewrite=RuntimeError("provider down"))
    result = _prepare("Who is Ada?", llm, rewrite_enabled=True)
    assert result.rewritten_query == "Who is Ada?"
    assert result.summary.reverse_rag.rewritten == "Who is Ada?"


def test_hyde_failure_yields_none():
    llm = ScriptedLLM(hyde=RuntimeError("provider down"))
    result = _prepare("Who is Ada?", llm, hyde_enabled=True)
    assert result.hyde_document is None
    assert result.embedding_target == "Who is Ada?"


def test_empty_responses_are_treated_as_missing():
    llm = ScriptedLLM(rewrite="", hyde="")
    assert asyncio.run(rewrite_query("q", llm, enabled=True, model="m")) == "q"
    assert asyncio.run(generate_hyde_document("q", llm, enabled=True, model="m")) is None


def test_blank_question_skips_llm():
    llm = ScriptedLLM()
    assert asyncio.run(rewrite_query("   ", llm, enabled=True, model="m")) == "   "
    assert llm.calls == []


def test_summary_records_before_and_after():
    llm = ScriptedLLM()
    result = _prepare("Who is Ada?", llm, rewrite_enabled=True, hyde_enabled=True, ranker_mode="mmr")
    assert result.summary.to_dict() == {
        "reverseRag": {
            "enabled": True,
            "mode": "precision",
            "original": "Who is Ada?",
            "rewritten": "rewritten query",
        },
        "hyde": {"enabled": True, "generated": "hypothetical passage"},
        "ranker": {"mode": "mmr"},
    }


def test_cancellation_propagates():
    llm = ScriptedLLM(rewrite=asyncio.CancelledError())
    with pytest.raises(asyncio.CancelledError):
        _prepare("Who is Ada?", llm, rewrite_enabled=True)


def test_hyde_cancellation_is_not_degraded():
    llm = ScriptedLLM(hyde=asyncio.CancelledError())
    with pytest.raises(asyncio.CancelledError):
        _prepare("Who is Ada?", llm, hyde_enabled=True)
