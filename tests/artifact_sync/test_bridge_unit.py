"""Unit tests for the RealtimeEventBridge.

The bridge runs against InMemoryPushChannel; invalidation callbacks are
plain mocks.
"""

import asyncio
from unittest.mock import MagicMock

import pytest

from src.artifact_sync.errors import ChannelDegradedError, ErrorKind
from src.artifact_sync.realtime import (
    ArtifactChangeEvent,
    ChannelStatus,
    InMemoryPushChannel,
    RealtimeEventBridge,
)

from tests.artifact_sync.fakes import version


def run_async(coro):
    return asyncio.run(coro)


@pytest.fixture
def callbacks():
    return {
        "invalidate_artifact": MagicMock(),
        "invalidate_research": MagicMock(),
        "on_degraded": MagicMock(),
        "on_recovered": MagicMock(),
    }


def _bridge(channel, callbacks, applied=version(1)):
    return RealtimeEventBridge(
        artifact_id="art-1",
        channel=channel,
        current_version=lambda: applied,
        **callbacks,
    )


def _event(status="writing", old_status="foundations_approval", at=2, artifact_id="art-1"):
    return ArtifactChangeEvent(
        artifact_id=artifact_id,
        new={"status": status, "updated_at": version(at).isoformat()},
        old={"status": old_status},
    )


# ---------------------------------------------------------------------------
# Invalidation
# ---------------------------------------------------------------------------


def test_status_change_invalidates_artifact_and_research(callbacks):
    channel = InMemoryPushChannel()

    async def scenario():
        bridge = _bridge(channel, callbacks)
        await bridge.start()
        assert bridge.status == ChannelStatus.SUBSCRIBED
        channel.publish(_event())
        await bridge.stop()

    run_async(scenario())
    callbacks["invalidate_artifact"].assert_called_once()
    callbacks["invalidate_research"].assert_called_once()


def test_content_only_event_leaves_research_alone(callbacks):
    channel = InMemoryPushChannel()

    async def scenario():
        bridge = _bridge(channel, callbacks)
        await bridge.start()
        channel.publish(_event(status="writing", old_status="writing"))
        await bridge.stop()

    run_async(scenario())
    callbacks["invalidate_artifact"].assert_called_once()
    callbacks["invalidate_research"].assert_not_called()


def test_event_for_applied_version_is_skipped(callbacks):
    channel = InMemoryPushChannel()

    async def scenario():
        bridge = _bridge(channel, callbacks, applied=version(5))
        await bridge.start()
        channel.publish(_event(at=5))
        channel.publish(_event(at=3))
        await bridge.stop()

    run_async(scenario())
    callbacks["invalidate_artifact"].assert_not_called()


def test_events_after_stop_are_ignored(callbacks):
    channel = InMemoryPushChannel()

    async def scenario():
        bridge = _bridge(channel, callbacks)
        await bridge.start()
        await bridge.stop()
        return channel.publish(_event())

    assert run_async(scenario()) == 0
    assert channel.subscriptions == []
    callbacks["invalidate_artifact"].assert_not_called()


def test_event_without_version_still_invalidates(callbacks):
    channel = InMemoryPushChannel()

    async def scenario():
        bridge = _bridge(channel, callbacks)
        await bridge.start()
        channel.publish(ArtifactChangeEvent(artifact_id="art-1", new={"status": "ready"}))
        await bridge.stop()

    run_async(scenario())
    callbacks["invalidate_artifact"].assert_called_once()
    callbacks["invalidate_research"].assert_called_once()


# ---------------------------------------------------------------------------
# Degradation
# ---------------------------------------------------------------------------


def test_subscribe_failure_degrades_without_raising(callbacks):
    channel = InMemoryPushChannel(fail_subscribe=ConnectionRefusedError("refused"))

    async def scenario():
        bridge = _bridge(channel, callbacks)
        await bridge.start()
        return bridge

    bridge = run_async(scenario())
    assert bridge.degraded
    callbacks["on_degraded"].assert_called_once()
    error = callbacks["on_degraded"].call_args.args[0]
    assert isinstance(error, ChannelDegradedError)
    assert error.kind == ErrorKind.CHANNEL_DEGRADED
    assert "refused" in error.message


def test_missing_channel_degrades(callbacks):
    bridge = _bridge(None, callbacks)
    run_async(bridge.start())
    assert bridge.degraded
    callbacks["on_degraded"].assert_called_once()


def test_closed_channel_degrades_once_and_recovers(callbacks):
    channel = InMemoryPushChannel()

    async def scenario():
        bridge = _bridge(channel, callbacks)
        await bridge.start()
        channel.set_status(ChannelStatus.CLOSED, "server restart")
        channel.set_status(ChannelStatus.TIMED_OUT)
        assert bridge.degraded
        channel.set_status(ChannelStatus.SUBSCRIBED)
        await bridge.stop()
        return bridge

    bridge = run_async(scenario())
    assert not bridge.degraded
    callbacks["on_degraded"].assert_called_once()
    callbacks["on_recovered"].assert_called_once()


def test_degradation_callback_failure_is_contained(callbacks):
    callbacks["on_degraded"].side_effect = RuntimeError("listener bug")
    bridge = _bridge(None, callbacks)

    run_async(bridge.start())

    assert bridge.degraded
