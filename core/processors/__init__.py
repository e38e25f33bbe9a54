"""
Gatekeeper Core Processors

Public exports for telemetry collection.
"""

from core.processors.telemetry import (
    EventDispatcher,
    InputEventSource,
    TelemetryCollector,
    wall_clock_ms,
)

__all__ = [
    "EventDispatcher",
    "InputEventSource",
    "TelemetryCollector",
    "wall_clock_ms",
]
