"""Session telemetry: performance metrics, progress events, throttling."""

from .performance import (
    PerformanceMonitor,
    PerformanceReport,
    SessionMetrics,
    Workload,
)

from .telemetry import (
    ProgressEvent,
    TelemetrySink,
    NullSink,
    RecordingSink,
)

from .thermal import ThrottleState

__all__ = [
    "PerformanceMonitor",
    "PerformanceReport",
    "SessionMetrics",
    "Workload",
    "ProgressEvent",
    "TelemetrySink",
    "NullSink",
    "RecordingSink",
    "ThrottleState",
]
