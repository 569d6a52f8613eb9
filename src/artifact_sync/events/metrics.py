"""Prometheus metrics for sync engine observability.

Metrics Defined:
- artifact_sync_state_applied_total: Counter of applied authoritative records
- artifact_sync_transitions_total: Counter of status transitions
- artifact_sync_errors_total: Counter of errors by kind and operation
- artifact_sync_channel_degraded_total: Counter of push channel degradations
- artifact_sync_polls_total: Counter of poll ticks
- artifact_sync_autosaves_total: Counter of persisted edits by field

The MetricsEventEmitter updates these from engine events.
"""

import logging
from typing import Optional

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    generate_latest,
)

from src.artifact_sync.events.emitter import EventEmitter
from src.artifact_sync.events.models import EventType, SyncEvent


logger = logging.getLogger(__name__)


class SyncMetrics:
    """Container for all sync engine Prometheus metrics.

    Supports custom registries for testing.

    Attributes:
        registry: The Prometheus registry for these metrics.

    Example:
        >>> metrics = SyncMetrics(registry=CollectorRegistry())
        >>> metrics.record_transition("draft", "research", source="local")
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        """Initialize sync metrics.

        Args:
            registry: Optional Prometheus registry. If None, uses the
                      default REGISTRY. Pass a custom registry for testing.
        """
        self.registry = registry or REGISTRY

        self.state_applied_total = Counter(
            "artifact_sync_state_applied_total",
            "Total number of authoritative records applied",
            labelnames=["status"],
            registry=self.registry,
        )

        self.transitions_total = Counter(
            "artifact_sync_transitions_total",
            "Total number of artifact status transitions",
            labelnames=["from_stage", "to_stage", "source"],
            registry=self.registry,
        )

        self.errors_total = Counter(
            "artifact_sync_errors_total",
            "Total number of sync errors",
            labelnames=["kind", "operation"],
            registry=self.registry,
        )

        self.channel_degraded_total = Counter(
            "artifact_sync_channel_degraded_total",
            "Total number of push channel degradations",
            registry=self.registry,
        )

        self.polls_total = Counter(
            "artifact_sync_polls_total",
            "Total number of poll ticks",
            registry=self.registry,
        )

        self.autosaves_total = Counter(
            "artifact_sync_autosaves_total",
            "Total number of persisted local edits",
            labelnames=["field"],
            registry=self.registry,
        )

    def record_state_applied(self, status: str) -> None:
        self.state_applied_total.labels(status=status).inc()

    def record_transition(self, from_stage: str, to_stage: str, source: str) -> None:
        self.transitions_total.labels(
            from_stage=from_stage,
            to_stage=to_stage,
            source=source,
        ).inc()

    def record_error(self, kind: str, operation: str) -> None:
        self.errors_total.labels(kind=kind, operation=operation).inc()

    def record_channel_degraded(self) -> None:
        self.channel_degraded_total.inc()

    def record_poll(self) -> None:
        self.polls_total.inc()

    def record_autosave(self, field: str) -> None:
        self.autosaves_total.labels(field=field).inc()


# Global metrics instance for the default registry
_default_metrics: Optional[SyncMetrics] = None


def get_metrics(registry: Optional[CollectorRegistry] = None) -> SyncMetrics:
    """Get or create the sync metrics instance.

    Args:
        registry: Optional Prometheus registry. If None, returns the
                  global metrics instance for the default registry.

    Returns:
        SyncMetrics: The metrics instance.
    """
    global _default_metrics

    if registry is not None:
        return SyncMetrics(registry=registry)

    if _default_metrics is None:
        _default_metrics = SyncMetrics()

    return _default_metrics


def generate_metrics_output(registry: Optional[CollectorRegistry] = None) -> bytes:
    """Generate metrics in Prometheus text format."""
    target_registry = registry or REGISTRY
    return generate_latest(target_registry)


class MetricsEventEmitter(EventEmitter):
    """Event emitter that updates Prometheus metrics.

    Attributes:
        metrics: The SyncMetrics instance to update.
    """

    def __init__(
        self,
        metrics: Optional[SyncMetrics] = None,
        registry: Optional[CollectorRegistry] = None,
    ):
        if metrics is not None:
            self._metrics = metrics
        else:
            self._metrics = get_metrics(registry)

    @property
    def metrics(self) -> SyncMetrics:
        return self._metrics

    async def emit(self, event: SyncEvent) -> None:
        """Update metrics based on the event type."""
        details = event.details
        try:
            if event.event_type == EventType.STATE_APPLIED:
                self._metrics.record_state_applied(str(details.get("status", "unknown")))
            elif event.event_type == EventType.TRANSITION:
                self._metrics.record_transition(
                    from_stage=str(details.get("from_stage", "unknown")),
                    to_stage=str(details.get("to_stage", "unknown")),
                    source=str(details.get("source", "unknown")),
                )
            elif event.event_type == EventType.ERROR:
                self._metrics.record_error(
                    kind=str(details.get("error_kind", "unknown")),
                    operation=str(details.get("operation", "unknown")),
                )
            elif event.event_type == EventType.CHANNEL_DEGRADED:
                self._metrics.record_channel_degraded()
            elif event.event_type == EventType.POLL:
                self._metrics.record_poll()
            elif event.event_type == EventType.AUTOSAVE:
                self._metrics.record_autosave(str(details.get("field", "unknown")))
        except Exception as e:
            logger.error(
                "Failed to update metrics for event %s: %s",
                event.event_type.value,
                str(e),
                extra={
                    "event_type": event.event_type.value,
                    "artifact_id": event.artifact_id,
                    "error": str(e),
                },
            )
