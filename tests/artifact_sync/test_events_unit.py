"""Unit tests for sync event emitters and Prometheus metrics.

Metrics tests use a fresh CollectorRegistry each so counters start at zero.
"""

import asyncio
import logging
from unittest.mock import AsyncMock

import pytest
from prometheus_client import CollectorRegistry

from src.artifact_sync.events import (
    CompositeEventEmitter,
    EventSinkType,
    EventType,
    LoggingEventEmitter,
    MetricsEventEmitter,
    NullEventEmitter,
    SyncEvent,
    SyncMetrics,
    create_event_emitter,
    generate_metrics_output,
)


def run_async(coro):
    return asyncio.run(coro)


def _event(event_type: EventType, **details) -> SyncEvent:
    return SyncEvent(event_type=event_type, artifact_id="art-1", details=details)


@pytest.fixture
def registry():
    return CollectorRegistry()


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


def test_log_dict_is_flat():
    event = _event(EventType.ERROR, error_kind="NetworkFailure", operation="refresh")
    log_dict = event.to_log_dict()

    assert log_dict["event_type"] == "error"
    assert log_dict["artifact_id"] == "art-1"
    assert log_dict["error_kind"] == "NetworkFailure"
    assert log_dict["timestamp"].endswith("+00:00")


def test_timestamp_serialises_as_iso():
    dumped = _event(EventType.POLL).model_dump()
    assert isinstance(dumped["timestamp"], str)


# ---------------------------------------------------------------------------
# Emitters
# ---------------------------------------------------------------------------


def test_logging_emitter_levels(caplog):
    emitter = LoggingEventEmitter(logger_name="artifact_sync.test")

    with caplog.at_level(logging.DEBUG, logger="artifact_sync.test"):
        run_async(emitter.emit(_event(EventType.TRANSITION, from_stage="draft", to_stage="research")))
        run_async(emitter.emit(_event(EventType.CHANNEL_DEGRADED)))
        run_async(emitter.emit(_event(EventType.ERROR, error_kind="StaleWrite")))

    levels = [record.levelno for record in caplog.records]
    assert levels == [logging.INFO, logging.WARNING, logging.ERROR]
    assert caplog.records[0].getMessage() == "Sync event: transition for art-1"
    assert caplog.records[0].to_stage == "research"


def test_composite_isolates_failing_child():
    failing = AsyncMock()
    failing.emit.side_effect = RuntimeError("sink down")
    healthy = AsyncMock()
    composite = CompositeEventEmitter([failing, healthy])

    event = _event(EventType.POLL)
    run_async(composite.emit(event))

    healthy.emit.assert_awaited_once_with(event)
    assert len(composite.emitters) == 2


def test_factory_defaults_to_logging():
    assert isinstance(create_event_emitter(), LoggingEventEmitter)
    assert isinstance(create_event_emitter([EventSinkType.LOGGING]), LoggingEventEmitter)


def test_factory_combines_sinks():
    emitter = create_event_emitter([EventSinkType.LOGGING, EventSinkType.METRICS])
    assert isinstance(emitter, CompositeEventEmitter)
    kinds = {type(child) for child in emitter.emitters}
    assert kinds == {LoggingEventEmitter, MetricsEventEmitter}


def test_null_emitter_discards():
    run_async(NullEventEmitter().emit(_event(EventType.POLL)))


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------


def test_metrics_emitter_counts_events(registry):
    emitter = MetricsEventEmitter(metrics=SyncMetrics(registry=registry))

    async def scenario():
        await emitter.emit(_event(EventType.STATE_APPLIED, status="writing"))
        await emitter.emit(
            _event(EventType.TRANSITION, from_stage="draft", to_stage="research", source="local")
        )
        await emitter.emit(_event(EventType.ERROR, error_kind="BudgetExhausted", operation="regenerate_image"))
        await emitter.emit(_event(EventType.CHANNEL_DEGRADED))
        await emitter.emit(_event(EventType.POLL, interval_ms=2000))
        await emitter.emit(_event(EventType.POLL, interval_ms=2000))
        await emitter.emit(_event(EventType.AUTOSAVE, field="content"))

    run_async(scenario())

    assert registry.get_sample_value(
        "artifact_sync_state_applied_total", {"status": "writing"}
    ) == 1.0
    assert registry.get_sample_value(
        "artifact_sync_transitions_total",
        {"from_stage": "draft", "to_stage": "research", "source": "local"},
    ) == 1.0
    assert registry.get_sample_value(
        "artifact_sync_errors_total",
        {"kind": "BudgetExhausted", "operation": "regenerate_image"},
    ) == 1.0
    assert registry.get_sample_value("artifact_sync_channel_degraded_total") == 1.0
    assert registry.get_sample_value("artifact_sync_polls_total") == 2.0
    assert registry.get_sample_value(
        "artifact_sync_autosaves_total", {"field": "content"}
    ) == 1.0


def test_metrics_output_is_prometheus_text(registry):
    metrics = SyncMetrics(registry=registry)
    metrics.record_poll()

    output = generate_metrics_output(registry).decode()

    assert "# TYPE artifact_sync_polls_total counter" in output
    assert "artifact_sync_polls_total 1.0" in output
