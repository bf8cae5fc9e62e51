"""Telemetry: config snapshots and event sinks."""

from .sink import (
    BufferedTelemetrySink,
    LoggingTelemetrySink,
    NullTelemetrySink,
    SafeTelemetrySink,
    TelemetryPolicy,
    TelemetrySink,
)
from .snapshot import ChatConfigSnapshot, build_snapshot, stable_hash

__all__ = [
    "BufferedTelemetrySink",
    "ChatConfigSnapshot",
    "LoggingTelemetrySink",
    "NullTelemetrySink",
    "SafeTelemetrySink",
    "TelemetryPolicy",
    "TelemetrySink",
    "build_snapshot",
    "stable_hash",
]
