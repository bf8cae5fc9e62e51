"""Service layer orchestrations for the retrieval engine."""

from .generation import EchoLLMProvider, GenerationConfig, LangChainLLMProvider, LLMProvider, build_llm_provider

__all__ = [
    "EchoLLMProvider",
    "GenerationConfig",
    "LLMProvider",
    "LangChainLLMProvider",
    "build_llm_provider",
]
