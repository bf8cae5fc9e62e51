"""Similarity-search backends addressed by match-function name."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, MutableMapping, Protocol, Sequence, Tuple

import chromadb
from chromadb.api import ClientAPI
from chromadb.api.types import Documents, Embeddings as ChromaEmbeddings, IDs, Metadatas

from ragengine.embeddings.service import EmbeddingProvider, HashEmbeddingProvider
from ragengine.embeddings.spaces import EmbeddingSpace, EmbeddingSpaceRegistry, get_registry

MATCH_RPC_VERSIONS: Tuple[str, ...] = ("1", "2")

_METADATA_JSON = "metadata_json"


class SimilaritySearchBackend(Protocol):
    """Remote-procedure style similarity search."""

    async def rpc(self, name: str, payload: Mapping[str, Any]) -> Sequence[Mapping[str, Any]]:
        """Invoke the named match function and return its rows."""


class UnknownMatchFunctionError(LookupError):
    """Raised when a match function name is not registered with the backend."""


@dataclass(frozen=True)
class ChunkRecord:
    """A chunk of a document as stored in an embedding space."""

    chunk_id: str
    doc_id: str
    text: str
    metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class _EntryPoint:
    space: EmbeddingSpace
    mode: str


def _space_suffix(space: EmbeddingSpace) -> str:
    version = f"_{space.version}"
    space_id = space.embedding_space_id
    return space_id[: -len(version)] if space_id.endswith(version) else space_id


class ChromaSearchBackend:
    """Chroma-backed similarity search with one collection per embedding space."""

    def __init__(
        self,
        embedder: EmbeddingProvider | None = None,
        *,
        registry: EmbeddingSpaceRegistry | None = None,
        client: ClientAPI | None = None,
        persist_directory: str | Path | None = None,
    ) -> None:
        if client is not None:
            self._client = client
        elif persist_directory is not None:
            self._client = chromadb.PersistentClient(path=str(persist_directory))
        else:
            self._client = chromadb.EphemeralClient()
        self._registry = registry or get_registry()
        self._embedder = embedder or HashEmbeddingProvider()
        self._entry_points: Dict[str, _EntryPoint] = {}
        for space in self._registry.spaces:
            for version in MATCH_RPC_VERSIONS:
                suffix = f"{_space_suffix(space)}_v{version}"
                self._entry_points[f"match_native_chunks_{suffix}"] = _EntryPoint(space, "native")
                self._entry_points[f"match_langchain_chunks_{suffix}"] = _EntryPoint(space, "langchain")

    @property
    def entry_points(self) -> Tuple[str, ...]:
        return tuple(sorted(self._entry_points))

    def _collection(self, space: EmbeddingSpace):
        return self._client.get_or_create_collection(
            name=space.table,
            metadata={"hnsw:space": "cosine"},
        )

    def _resolve_space(self, space_id: str) -> EmbeddingSpace:
        space = self._registry.find(space_id)
        if space is None:
            raise UnknownMatchFunctionError(f"Unknown embedding space: {space_id}")
        return space

    async def upsert(self, space_id: str, records: Sequence[ChunkRecord]) -> Sequence[str]:
        if not records:
            return []
        space = self._resolve_space(space_id)
        vectors = await self._embedder.embed_many([record.text for record in records], model=space.model)
        ids: IDs = [record.chunk_id for record in records]
        documents: Documents = [record.text for record in records]
        metadatas: Metadatas = [self._serialize_metadata(record) for record in records]
        embeddings: ChromaEmbeddings = [list(vector) for vector in vectors]

        def _write() -> None:
            self._collection(space).upsert(
                ids=ids,
                documents=documents,
                embeddings=embeddings,
                metadatas=metadatas,
            )

        await asyncio.to_thread(_write)
        return list(ids)

    async def rpc(self, name: str, payload: Mapping[str, Any]) -> Sequence[Mapping[str, Any]]:
        entry = self._entry_points.get(name)
        if entry is None:
            raise UnknownMatchFunctionError(f"Unknown match function: {name}")
        match_count = int(payload.get("match_count") or 0)
        if match_count <= 0:
            return []
        query_embedding = [float(value) for value in payload.get("query_embedding") or []]
        where = _build_where(payload.get("filter"))

        def _query() -> Mapping[str, Any]:
            return self._collection(entry.space).query(
                query_embeddings=[query_embedding],
                n_results=match_count,
                where=where,
            )

        results = await asyncio.to_thread(_query)
        rows = self._deserialize_results(results)
        if entry.mode == "native":
            threshold = payload.get("similarity_threshold")
            if isinstance(threshold, (int, float)):
                rows = [row for row in rows if row["similarity"] >= threshold]
        return rows

    async def count(self, space_id: str) -> int:
        space = self._resolve_space(space_id)
        return int(await asyncio.to_thread(lambda: self._collection(space).count()))

    async def reset(self, space_id: str | None = None) -> None:
        spaces: List[EmbeddingSpace] = (
            [self._resolve_space(space_id)] if space_id else list(self._registry.spaces)
        )
        await asyncio.to_thread(self._drop_collections, spaces)

    def _drop_collections(self, spaces: Iterable[EmbeddingSpace]) -> None:
        names = {getattr(item, "name", item) for item in self._client.list_collections()}
        for space in spaces:
            if space.table in names:
                self._client.delete_collection(name=space.table)

    @staticmethod
    def _serialize_metadata(record: ChunkRecord) -> MutableMapping[str, Any]:
        metadata: MutableMapping[str, Any] = {
            "doc_id": record.doc_id,
            "chunk_id": record.chunk_id,
            _METADATA_JSON: json.dumps(dict(record.metadata), default=str),
        }
        for key, value in record.metadata.items():
            if isinstance(value, (str, int, float, bool)) and key not in metadata:
                metadata[key] = value
        return metadata

    def _deserialize_results(self, results: Mapping[str, Any]) -> List[Dict[str, Any]]:
        ids = self._first(results.get("ids", []))
        documents = self._first(results.get("documents", []))
        metadatas = self._first(results.get("metadatas", []))
        distances = self._first(results.get("distances", []))
        rows: List[Dict[str, Any]] = []
        for index, chunk_id in enumerate(ids):
            document = documents[index] if index < len(documents) else ""
            stored = metadatas[index] if index < len(metadatas) else {}
            distance = distances[index] if index < len(distances) else None
            metadata = self._loads_dict((stored or {}).get(_METADATA_JSON))
            metadata.setdefault("chunk_id", chunk_id)
            rows.append(
                {
                    "id": chunk_id,
                    "doc_id": (stored or {}).get("doc_id"),
                    "chunk": document,
                    "content": document,
                    "similarity": 1.0 - float(distance) if distance is not None else 0.0,
                    "metadata": metadata,
                },
            )
        return rows

    @staticmethod
    def _first(value: object) -> Sequence[Any]:
        if isinstance(value, list):
            return value[0] if value else []
        return []

    @staticmethod
    def _loads_dict(value: object) -> Dict[str, Any]:
        if isinstance(value, str) and value:
            try:
                loaded = json.loads(value)
            except json.JSONDecodeError:
                return {}
            if isinstance(loaded, dict):
                return loaded
        return {}


def _build_where(filter_: Any) -> Dict[str, Any] | None:
    if not isinstance(filter_, Mapping) or not filter_:
        return None
    clauses = [{str(key): value} for key, value in sorted(filter_.items())]
    if len(clauses) == 1:
        return clauses[0]
    return {"$and": clauses}


__all__ = [
    "ChromaSearchBackend",
    "ChunkRecord",
    "MATCH_RPC_VERSIONS",
    "SimilaritySearchBackend",
    "UnknownMatchFunctionError",
]
