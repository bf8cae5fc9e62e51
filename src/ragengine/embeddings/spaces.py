"""Embedding space registry and resolution.

An embedding space is one (provider, model, version) combination together with
the table and similarity-search entry points that hold its vectors. The
registry is built once from a list of definitions and is read-only afterwards.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Callable, Iterable, Literal, Mapping, Sequence

from ragengine.config import Settings, get_settings

ModelProvider = Literal["openai", "gemini", "huggingface"]

_PROVIDER_ALIASES: Mapping[str, ModelProvider] = {
    "openai": "openai",
    "oa": "openai",
    "open-ai": "openai",
    "gpt": "openai",
    "chatgpt": "openai",
    "gemini": "gemini",
    "google": "gemini",
    "google-ai": "gemini",
    "google-ai-studio": "gemini",
    "huggingface": "huggingface",
    "hugging-face": "huggingface",
    "hf": "huggingface",
}


def to_model_provider(value: str | None) -> ModelProvider | None:
    if not value:
        return None
    return _PROVIDER_ALIASES.get(value.lower().strip())


def normalize_embedding_slug(value: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "_", value.lower())
    return slug.strip("_")


def get_embedding_space_id(provider: str, model_slug: str, version: str) -> str:
    return f"{provider}_{normalize_embedding_slug(model_slug)}_{normalize_embedding_slug(version)}"


def rag_chunks_table_name(space_id: str) -> str:
    return f"rag_chunks_{space_id}"


def lc_chunks_view_name(space_id: str) -> str:
    return f"lc_chunks_{space_id}"


def match_chunks_function_name(space_id: str) -> str:
    return f"match_native_chunks_{space_id}"


def match_lc_chunks_function_name(space_id: str) -> str:
    return f"match_langchain_chunks_{space_id}"


@dataclass(frozen=True)
class EmbeddingModelDefinition:
    """Static description of an embedding model offered by a provider."""

    id: str
    provider: ModelProvider
    model: str
    version: str
    slug: str
    label: str | None = None
    aliases: Sequence[str] = field(default_factory=tuple)


@dataclass(frozen=True)
class EmbeddingSpace:
    embedding_space_id: str
    provider: ModelProvider
    model: str
    version: str
    label: str
    embedding_model_id: str
    table: str
    match_rpc: str
    lc_view: str
    lc_match_rpc: str
    aliases: tuple[str, ...]


EMBEDDING_MODEL_DEFINITIONS: tuple[EmbeddingModelDefinition, ...] = (
    EmbeddingModelDefinition(
        id="text-embedding-3-small",
        provider="openai",
        model="text-embedding-3-small",
        version="v1",
        slug="te3s",
        label="OpenAI text-embedding-3-small (v1)",
        aliases=(
            "openai text-embedding-3-small",
            "openai_te3s_v1",
            "rag_chunks_openai",
            "rag_chunks_openai_te3s_v1",
            "match_chunks_openai",
            "match_chunks_openai_te3s_v1",
            "match_rag_chunks_openai",
            "match_rag_chunks_openai_te3s_v1",
        ),
    ),
    EmbeddingModelDefinition(
        id="text-embedding-004",
        provider="gemini",
        model="text-embedding-004",
        version="v1",
        slug="te4",
        label="Gemini text-embedding-004 (v1)",
        aliases=(
            "gemini text-embedding-004",
            "gemini_te4_v1",
            "rag_chunks_gemini",
            "rag_chunks_gemini_te4_v1",
            "match_chunks_gemini",
            "match_chunks_gemini_te4_v1",
            "match_rag_chunks_gemini",
            "match_rag_chunks_gemini_te4_v1",
        ),
    ),
)


def _build_space(definition: EmbeddingModelDefinition) -> EmbeddingSpace:
    space_id = get_embedding_space_id(definition.provider, definition.slug, definition.version)
    return EmbeddingSpace(
        embedding_space_id=space_id,
        provider=definition.provider,
        model=definition.model,
        version=definition.version,
        label=definition.label or f"{definition.provider} {definition.model} ({definition.version})",
        embedding_model_id=definition.id,
        table=rag_chunks_table_name(space_id),
        match_rpc=match_chunks_function_name(space_id),
        lc_view=lc_chunks_view_name(space_id),
        lc_match_rpc=match_lc_chunks_function_name(space_id),
        aliases=tuple(definition.aliases),
    )


def _clean(value: str | None) -> str | None:
    if value is None or not value.strip():
        return None
    return value.strip()


class EmbeddingSpaceRegistry:
    """Immutable alias lookup over a fixed set of embedding spaces."""

    def __init__(
        self,
        definitions: Iterable[EmbeddingModelDefinition] = EMBEDDING_MODEL_DEFINITIONS,
        *,
        default_space_id: str | None = None,
        env_model: str | None = None,
        env_provider: str | None = None,
    ) -> None:
        spaces = [_build_space(definition) for definition in definitions]
        if not spaces:
            raise ValueError("At least one embedding model definition is required")
        self._spaces: tuple[EmbeddingSpace, ...] = tuple(spaces)
        lookup: dict[str, EmbeddingSpace] = {}
        for space in self._spaces:
            keys = {
                space.embedding_space_id,
                space.embedding_model_id,
                space.label,
                space.model,
                *space.aliases,
            }
            for key in keys:
                lookup[key.lower().strip()] = space
        self._aliases: Mapping[str, EmbeddingSpace] = MappingProxyType(lookup)
        self._default_space_id = default_space_id or self._spaces[0].embedding_space_id
        self._env_model = env_model
        self._env_provider = env_provider

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        definitions: Iterable[EmbeddingModelDefinition] = EMBEDDING_MODEL_DEFINITIONS,
    ) -> "EmbeddingSpaceRegistry":
        settings = settings or get_settings()
        return cls(
            definitions,
            default_space_id=_clean(settings.embedding_space_id),
            env_model=_clean(settings.embedding_model),
            env_provider=_clean(settings.embedding_provider) or _clean(settings.llm_provider),
        )

    @property
    def spaces(self) -> tuple[EmbeddingSpace, ...]:
        return self._spaces

    @property
    def default_space_id(self) -> str:
        return self._default_space_id

    def find(self, value: str | None) -> EmbeddingSpace | None:
        if not value:
            return None
        return self._aliases.get(value.lower().strip())

    def find_by_provider(self, provider: str | None) -> EmbeddingSpace | None:
        normalized = to_model_provider(provider)
        if normalized is None:
            return None
        for space in self._spaces:
            if space.provider == normalized:
                return space
        return None

    def resolve(
        self,
        *,
        space_id: str | None = None,
        model_id: str | None = None,
        provider: str | None = None,
        model: str | None = None,
    ) -> EmbeddingSpace:
        """Return the canonical space for a selection; never fails."""

        explicit = self.find(space_id) or self.find(model_id) or self.find(model)
        if explicit is not None:
            return explicit

        by_provider = self.find_by_provider(provider)
        if by_provider is not None:
            return by_provider

        env_model = self.find(self._env_model)
        if env_model is not None:
            return env_model

        env_provider = self.find_by_provider(self._env_provider)
        if env_provider is not None:
            return env_provider

        return self.find(self._default_space_id) or self._spaces[0]

    def resolve_value(self, value: str | None) -> EmbeddingSpace:
        """Resolve a bare string, trying it as every kind of identifier."""

        return self.resolve(space_id=value, model_id=value, provider=value, model=value)


@dataclass(frozen=True)
class ProviderAvailability:
    openai_enabled: bool = True
    gemini_enabled: bool = True
    huggingface_enabled: bool = False

    def is_enabled(self, provider: str) -> bool:
        return bool(getattr(self, f"{provider}_enabled", False))


@dataclass(frozen=True)
class EmbeddingSelection:
    selection: EmbeddingSpace
    reason: Literal["ok", "provider_disabled", "no_provider_available"]
    fallback_from: EmbeddingSpace | None = None


def enforce_provider_availability(
    space: EmbeddingSpace,
    availability: ProviderAvailability,
    find_for_provider: Callable[[str], EmbeddingSpace | None],
) -> EmbeddingSelection:
    """Swap a space whose provider is disabled for one on an enabled provider."""

    if availability.is_enabled(space.provider):
        return EmbeddingSelection(selection=space, reason="ok")
    for provider in ("openai", "gemini", "huggingface"):
        if provider == space.provider or not availability.is_enabled(provider):
            continue
        candidate = find_for_provider(provider)
        if candidate is not None:
            return EmbeddingSelection(selection=candidate, reason="provider_disabled", fallback_from=space)
    return EmbeddingSelection(selection=space, reason="no_provider_available")


_default_registry: EmbeddingSpaceRegistry | None = None


def get_registry() -> EmbeddingSpaceRegistry:
    """Process-wide registry, built from settings on first use."""

    global _default_registry  # noqa: PLW0603 - module-level singleton
    if _default_registry is None:
        _default_registry = EmbeddingSpaceRegistry.from_settings()
    return _default_registry


def resolve_embedding_space(
    *,
    space_id: str | None = None,
    model_id: str | None = None,
    provider: str | None = None,
    model: str | None = None,
) -> EmbeddingSpace:
    return get_registry().resolve(space_id=space_id, model_id=model_id, provider=provider, model=model)


def find_embedding_space(value: str | None) -> EmbeddingSpace | None:
    return get_registry().find(value)


def list_embedding_spaces() -> tuple[EmbeddingSpace, ...]:
    return get_registry().spaces
