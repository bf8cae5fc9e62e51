"""Fire-and-forget telemetry sinks."""

from __future__ import annotations

import random
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, List, Mapping, Protocol

from ragengine.metrics.observability import get_correlation_id, get_logger


class TelemetrySink(Protocol):
    """Destination for telemetry events; must not block the caller."""

    def record(self, event: str, payload: Mapping[str, Any]) -> None:
        """Record an event."""


@dataclass(frozen=True)
class TelemetryEvent:
    name: str
    payload: Mapping[str, Any]
    ts: float
    correlation_id: str = "-"


class NullTelemetrySink:
    def record(self, event: str, payload: Mapping[str, Any]) -> None:
        return None


class LoggingTelemetrySink:
    """Ships events to the structured log."""

    def __init__(self, name: str = "telemetry") -> None:
        self._logger = get_logger(name)

    def record(self, event: str, payload: Mapping[str, Any]) -> None:
        self._logger.info(event, **dict(payload))


class BufferedTelemetrySink:
    """Keeps events in memory until drained; used by tests and batch exporters."""

    def __init__(self) -> None:
        self._events: List[TelemetryEvent] = []
        self._lock = threading.Lock()

    def record(self, event: str, payload: Mapping[str, Any]) -> None:
        entry = TelemetryEvent(name=event, payload=dict(payload), ts=time.time(), correlation_id=get_correlation_id())
        with self._lock:
            self._events.append(entry)

    @property
    def events(self) -> List[TelemetryEvent]:
        with self._lock:
            return list(self._events)

    def names(self) -> List[str]:
        return [event.name for event in self.events]

    def drain(self) -> List[TelemetryEvent]:
        with self._lock:
            drained = list(self._events)
            self._events.clear()
        return drained

    def reset(self) -> None:
        with self._lock:
            self._events.clear()


@dataclass
class TelemetryPolicy:
    """Decides whether a request's telemetry is shipped and how much of it."""

    enabled: bool = True
    sample_rate: float = 1.0
    include_pii: bool = False
    detail_level: str = "standard"
    rng: Callable[[], float] = field(default=random.random, repr=False)

    def should_sample(self) -> bool:
        if not self.enabled or self.sample_rate <= 0:
            return False
        if self.sample_rate >= 1:
            return True
        return self.rng() < self.sample_rate

    @property
    def verbose(self) -> bool:
        return self.detail_level == "verbose"


class SafeTelemetrySink:
    """Sink wrapper that swallows and logs failures of the wrapped sink."""

    def __init__(self, inner: TelemetrySink) -> None:
        self._inner = inner
        self._logger = get_logger("telemetry")

    def record(self, event: str, payload: Mapping[str, Any]) -> None:
        try:
            self._inner.record(event, payload)
        except Exception as exc:  # noqa: BLE001 - telemetry must never break retrieval
            self._logger.warning("telemetry.record_failed", telemetry_event=event, detail=str(exc))


__all__ = [
    "BufferedTelemetrySink",
    "LoggingTelemetrySink",
    "NullTelemetrySink",
    "SafeTelemetrySink",
    "TelemetryEvent",
    "TelemetryPolicy",
    "TelemetrySink",
]
