"""Text-generation providers used by query rewriting and HyDE."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, List, Protocol

from langchain_community.llms import HuggingFacePipeline
from langchain_core.language_models import BaseChatModel, BaseLanguageModel
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class GenerationConfig:
    """Configuration for the pre-retrieval language model."""

    model: str = "Qwen/Qwen2.5-1.8B-Instruct"
    max_new_tokens: int = 256
    use_model: bool = False
    device: int | None = None


class LLMProvider(Protocol):
    """Protocol describing text generation behaviour."""

    async def generate(
        self,
        prompt: str,
        *,
        model: str,
        temperature: float,
        system_prompt: str | None = None,
        max_tokens: int | None = None,
    ) -> str:
        """Return the completion for ``prompt``."""


class EchoLLMProvider:
    """Deterministic provider used for tests and offline environments.

    Returns the last line of the prompt, which for the rewrite and HyDE
    prompts is the question itself.
    """

    async def generate(
        self,
        prompt: str,
        *,
        model: str,
        temperature: float,
        system_prompt: str | None = None,
        max_tokens: int | None = None,
    ) -> str:
        lines = [line for line in prompt.splitlines() if line.strip()]
        text = lines[-1].strip() if lines else ""
        if max_tokens is not None:
            text = " ".join(text.split()[:max_tokens])
        return text


class LangChainLLMProvider:
    """Adapter over a LangChain chat model or completion LLM."""

    def __init__(self, llm: BaseLanguageModel) -> None:
        self._llm = llm

    async def generate(
        self,
        prompt: str,
        *,
        model: str,
        temperature: float,
        system_prompt: str | None = None,
        max_tokens: int | None = None,
    ) -> str:
        kwargs: dict[str, Any] = {"temperature": temperature}
        if max_tokens is not None:
            kwargs["max_tokens"] = max_tokens
        if isinstance(self._llm, BaseChatModel):
            messages: List[BaseMessage] = []
            if system_prompt:
                messages.append(SystemMessage(content=system_prompt))
            messages.append(HumanMessage(content=prompt))
            result = await self._llm.ainvoke(messages, **kwargs)
        else:
            text = f"{system_prompt}\n\n{prompt}" if system_prompt else prompt
            result = await self._llm.ainvoke(text, **kwargs)
        content = getattr(result, "content", result)
        return content.strip() if isinstance(content, str) else str(content).strip()


def build_llm_provider(config: GenerationConfig | None = None) -> LLMProvider:
    """Return a Hugging Face pipeline provider when enabled, else the echo provider."""

    config = config or GenerationConfig()
    if not config.use_model:
        LOGGER.info("LLM provider running in echo-only mode.")
        return EchoLLMProvider()
    pipeline = HuggingFacePipeline.from_model_id(
        model_id=config.model,
        task="text-generation",
        device=config.device,
        pipeline_kwargs={"max_new_tokens": config.max_new_tokens, "return_full_text": False},
    )
    LOGGER.info("Loaded generation model %s", config.model)
    return LangChainLLMProvider(pipeline)


__all__ = [
    "EchoLLMProvider",
    "GenerationConfig",
    "LLMProvider",
    "LangChainLLMProvider",
    "build_llm_provider",
]
