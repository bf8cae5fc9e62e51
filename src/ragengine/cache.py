"""Content-addressed caching with deterministic key hashing."""

from __future__ import annotations

import dataclasses
import hashlib
import json
import math
import threading
import time
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Generic, Mapping, Optional, Protocol, Tuple, TypeVar

from pydantic import BaseModel

T = TypeVar("T")

CacheKey = str


class CacheKeyError(ValueError):
    """Raised when a payload cannot be canonicalized into a cache key."""


class _Unset:
    """Marker for an absent value; dropped from objects, ``null`` in arrays."""

    _instance: Optional["_Unset"] = None

    def __new__(cls) -> "_Unset":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET: Any = _Unset()


def _iso(value: date) -> str:
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
            return value.replace(tzinfo=None).isoformat(timespec="milliseconds") + "Z"
        return value.isoformat(timespec="milliseconds")
    return value.isoformat()


def canonicalize(value: Any) -> Any:
    """Return a JSON-ready structure with recursively sorted mapping keys.

    Sequence order is preserved. ``UNSET`` and callables are omitted from
    mappings and become ``None`` inside sequences. Dates become ISO strings,
    non-finite floats become ``None``. Raises :class:`CacheKeyError` on cycles
    or on values that have no stable serialization.
    """

    active: set[int] = set()

    def inner(item: Any) -> Any:
        if item is None or isinstance(item, (bool, str)):
            return item
        if item is UNSET or (callable(item) and not isinstance(item, type)):
            return UNSET
        if isinstance(item, Enum):
            return inner(item.value)
        if isinstance(item, int):
            return item
        if isinstance(item, float):
            return item if math.isfinite(item) else None
        if isinstance(item, (datetime, date)):
            return _iso(item)

        marker = id(item)
        if marker in active:
            raise CacheKeyError("canonicalize: circular reference")

        if isinstance(item, BaseModel):
            return inner(item.model_dump())
        if dataclasses.is_dataclass(item) and not isinstance(item, type):
            active.add(marker)
            try:
                return inner({f.name: getattr(item, f.name) for f in dataclasses.fields(item)})
            finally:
                active.discard(marker)
        if isinstance(item, Mapping):
            active.add(marker)
            try:
                out: Dict[str, Any] = {}
                for key in sorted(item.keys(), key=str):
                    mapped = inner(item[key])
                    if mapped is not UNSET:
                        out[str(key)] = mapped
                return out
            finally:
                active.discard(marker)
        if isinstance(item, (list, tuple)):
            active.add(marker)
            try:
                mapped_items = [inner(entry) for entry in item]
                return [None if mapped is UNSET else mapped for mapped in mapped_items]
            finally:
                active.discard(marker)
        if isinstance(item, (set, frozenset)):
            entries = [None if mapped is UNSET else mapped for mapped in (inner(entry) for entry in item)]
            return sorted(entries, key=lambda entry: json.dumps(entry, sort_keys=True))
        raise CacheKeyError(f"canonicalize: unsupported type {type(item).__name__}")

    return inner(value)


def stable_stringify(value: Any) -> str:
    normalized = canonicalize(value)
    if normalized is UNSET:
        normalized = None
    return json.dumps(normalized, separators=(",", ":"), ensure_ascii=False, allow_nan=False)


def hash_payload(payload: Any) -> CacheKey:
    """SHA-256 hex digest of the canonical serialization of ``payload``."""

    return hashlib.sha256(stable_stringify(payload).encode("utf-8")).hexdigest()


@dataclasses.dataclass(frozen=True)
class CacheEntry(Generic[T]):
    value: T
    expires_at: float


class CacheClient(Protocol):
    """Async get/set contract shared by in-memory and networked caches."""

    async def get(self, key: CacheKey) -> Any | None:
        """Return the cached value or ``None`` when missing or expired."""

    async def set(self, key: CacheKey, value: Any, ttl_seconds: float) -> None:
        """Store ``value`` under ``key`` for ``ttl_seconds``."""


class MemoryCacheClient:
    """Process-local cache with lazy TTL expiry."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._store: Dict[CacheKey, CacheEntry[Any]] = {}
        self._lock = threading.Lock()

    async def get(self, key: CacheKey) -> Any | None:
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            if self._clock() > entry.expires_at:
                del self._store[key]
                return None
            return entry.value

    async def set(self, key: CacheKey, value: Any, ttl_seconds: float) -> None:
        expires_at = self._clock() + float(ttl_seconds)
        with self._lock:
            self._store[key] = CacheEntry(value=value, expires_at=expires_at)

    def clear(self) -> None:
        with self._lock:
            self._store.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)

    def snapshot(self) -> Tuple[CacheKey, ...]:
        with self._lock:
            return tuple(self._store.keys())


memory_cache_client = MemoryCacheClient()


def clear_memory_cache() -> None:
    memory_cache_client.clear()


__all__ = [
    "CacheClient",
    "CacheEntry",
    "CacheKey",
    "CacheKeyError",
    "MemoryCacheClient",
    "UNSET",
    "canonicalize",
    "clear_memory_cache",
    "hash_payload",
    "memory_cache_client",
    "stable_stringify",
]
