"""Sync engine event emission and metrics.

Event Emitters:
- EventEmitter: Abstract base class for event emission
- LoggingEventEmitter: Emits events as structured log entries
- CompositeEventEmitter: Emits to multiple sinks simultaneously
- MetricsEventEmitter: Emits events as Prometheus metrics
- NullEventEmitter: Discards events (for testing)

Metrics:
- SyncMetrics: Container for all Prometheus metrics
- get_metrics: Get or create the metrics instance
- generate_metrics_output: Prometheus text format output

Factory:
- create_event_emitter: Creates emitters based on configuration
- EventSinkType: Enum of supported event sink types
"""

from src.artifact_sync.events.emitter import (
    CompositeEventEmitter,
    EventEmitter,
    EventSinkType,
    LoggingEventEmitter,
    NullEventEmitter,
    create_event_emitter,
)
from src.artifact_sync.events.metrics import (
    MetricsEventEmitter,
    SyncMetrics,
    generate_metrics_output,
    get_metrics,
)
from src.artifact_sync.events.models import EventType, SyncEvent

__all__ = [
    # Event models
    "EventType",
    "SyncEvent",
    # Event emitters
    "EventEmitter",
    "LoggingEventEmitter",
    "CompositeEventEmitter",
    "MetricsEventEmitter",
    "NullEventEmitter",
    # Metrics
    "SyncMetrics",
    "get_metrics",
    "generate_metrics_output",
    # Factory and configuration
    "EventSinkType",
    "create_event_emitter",
]
