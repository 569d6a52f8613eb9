"""Unit tests for the AutosaveCoordinator.

The coordinator is exercised against an in-memory store standing in for
the backend, with a short quiet period so the debounce timers fire quickly.
"""

import asyncio
from datetime import timedelta
from typing import Any, List, Optional, Tuple
from unittest.mock import AsyncMock

import pytest

from src.artifact_sync.autosave import (
    AutosaveCoordinator,
    coerce_field_value,
    field_owner,
)
from src.artifact_sync.errors import NetworkFailureError, SyncError
from src.artifact_sync.state.models import Artifact, ArtifactStatus, Tone

from tests.artifact_sync.fakes import make_artifact


DEBOUNCE_MS = 20


def run_async(coro):
    return asyncio.run(coro)


async def quiet(periods: float = 3) -> None:
    await asyncio.sleep(DEBOUNCE_MS / 1000.0 * periods)


class FakeStore:
    """Applies writes to an artifact and bumps its version."""

    def __init__(self, artifact: Artifact):
        self.artifact = artifact
        self.writes: List[Tuple[str, Any]] = []
        self.persisted: List[Artifact] = []
        self.errors: List[SyncError] = []
        self.failures = 0
        self.hold: Optional[asyncio.Event] = None

    async def persist(self, field: str, value: Any) -> Artifact:
        self.writes.append((field, value))
        if self.hold is not None:
            await self.hold.wait()
        if self.failures:
            self.failures -= 1
            raise NetworkFailureError("backend unavailable")
        self.artifact = self.server_change(**{field: value})
        return self.artifact

    def server_change(self, **changes: Any) -> Artifact:
        changes["updated_at"] = self.artifact.updated_at + timedelta(seconds=1)
        return self.artifact.model_copy(update=changes)

    def coordinator(self, demote=None) -> AutosaveCoordinator:
        return AutosaveCoordinator(
            persist=self.persist,
            current=lambda: self.artifact,
            on_persisted=self.persisted.append,
            on_error=self.errors.append,
            demote=demote,
            debounce_ms=DEBOUNCE_MS,
        )


# ---------------------------------------------------------------------------
# Debounce
# ---------------------------------------------------------------------------


def test_burst_of_changes_becomes_one_write():
    store = FakeStore(make_artifact(ArtifactStatus.READY, content="Hello"))

    async def scenario():
        autosave = store.coordinator()
        for text in ("Hello w", "Hello wo", "Hello world"):
            autosave.on_local_change("content", text)
            await asyncio.sleep(0.005)
        assert autosave.has_pending
        await quiet()
        return autosave

    autosave = run_async(scenario())
    assert store.writes == [("content", "Hello world")]
    assert not autosave.has_pending
    assert store.persisted[-1].content == "Hello world"


def test_fields_are_debounced_independently():
    store = FakeStore(make_artifact(ArtifactStatus.READY, content="Body"))

    async def scenario():
        autosave = store.coordinator()
        autosave.on_local_change("title", "New title")
        autosave.on_local_change("tags", ["python", "asyncio"])
        assert autosave.pending_fields == {"title", "tags"}
        await quiet()

    run_async(scenario())
    assert sorted(field for field, _ in store.writes) == ["tags", "title"]
    assert store.artifact.tags == {"python", "asyncio"}


def test_overlay_lays_pending_values_over_server_record():
    store = FakeStore(make_artifact(ArtifactStatus.READY, content="Server", title="T"))

    async def scenario():
        autosave = store.coordinator()
        autosave.on_local_change("content", "Local")
        merged = autosave.overlay(store.artifact)
        autosave.cancel()
        return merged

    merged = run_async(scenario())
    assert merged.content == "Local"
    assert merged.title == "T"
    assert merged.updated_at == store.artifact.updated_at


def test_flush_all_skips_quiet_period():
    store = FakeStore(make_artifact(ArtifactStatus.READY, content="Body"))

    async def scenario():
        autosave = AutosaveCoordinator(
            persist=store.persist,
            current=lambda: store.artifact,
            on_persisted=store.persisted.append,
            on_error=store.errors.append,
            debounce_ms=60_000,
        )
        autosave.on_local_change("title", "Now")
        await autosave.flush_all()
        return autosave

    autosave = run_async(scenario())
    assert store.writes == [("title", "Now")]
    assert not autosave.has_pending


# ---------------------------------------------------------------------------
# Merge rules
# ---------------------------------------------------------------------------


def test_edit_superseded_in_flight_is_written_afterwards():
    store = FakeStore(make_artifact(ArtifactStatus.READY, content="Body"))

    async def scenario():
        store.hold = asyncio.Event()
        autosave = store.coordinator()
        autosave.on_local_change("title", "First")
        await quiet()
        assert store.writes == [("title", "First")]

        autosave.on_local_change("title", "Second")
        store.hold.set()
        await quiet(5)
        return autosave

    autosave = run_async(scenario())
    assert store.writes == [("title", "First"), ("title", "Second")]
    assert store.artifact.title == "Second"
    assert not autosave.has_pending


def test_stale_machine_owned_content_is_dropped():
    store = FakeStore(make_artifact(ArtifactStatus.WRITING, content="Draft v1"))

    async def scenario():
        autosave = store.coordinator()
        autosave.on_local_change("content", "My local text")
        # The backend writes newer content before the quiet period ends
        store.artifact = store.server_change(content="Draft v2")
        await quiet()
        return autosave

    autosave = run_async(scenario())
    assert store.writes == []
    assert not autosave.has_pending
    assert store.artifact.content == "Draft v2"


def test_user_owned_fields_win_during_generation():
    store = FakeStore(make_artifact(ArtifactStatus.WRITING, content="Draft", title="Old"))

    async def scenario():
        autosave = store.coordinator()
        autosave.on_local_change("title", "Mine")
        store.artifact = store.server_change(content="Draft v2")
        await quiet()

    run_async(scenario())
    assert store.writes == [("title", "Mine")]
    assert store.artifact.title == "Mine"


def test_failed_write_is_retried_on_next_cycle():
    store = FakeStore(make_artifact(ArtifactStatus.READY, content="Body"))
    store.failures = 1

    async def scenario():
        autosave = store.coordinator()
        autosave.on_local_change("title", "Retry me")
        await quiet(6)
        return autosave

    autosave = run_async(scenario())
    assert store.writes == [("title", "Retry me"), ("title", "Retry me")]
    assert len(store.errors) == 1
    assert isinstance(store.errors[0], NetworkFailureError)
    assert not autosave.has_pending


# ---------------------------------------------------------------------------
# Demotion and teardown
# ---------------------------------------------------------------------------


def test_editing_published_content_demotes_once():
    store = FakeStore(make_artifact(ArtifactStatus.PUBLISHED, content="Live"))
    order: List[str] = []

    async def demote():
        order.append("demote")
        store.artifact = store.server_change(status=ArtifactStatus.READY)

    demote_mock = AsyncMock(side_effect=demote)

    async def persist(field, value):
        order.append(f"write:{field}")
        return await FakeStore.persist(store, field, value)

    async def scenario():
        autosave = AutosaveCoordinator(
            persist=persist,
            current=lambda: store.artifact,
            on_persisted=store.persisted.append,
            on_error=store.errors.append,
            demote=demote_mock,
            debounce_ms=DEBOUNCE_MS,
        )
        autosave.on_local_change("content", "Live, edited")
        autosave.on_local_change("content", "Live, edited twice")
        await quiet()

    run_async(scenario())
    assert demote_mock.await_count == 1
    assert order == ["demote", "write:content"]
    assert store.artifact.status == ArtifactStatus.READY
    assert store.artifact.content == "Live, edited twice"


def test_editing_published_title_does_not_demote():
    store = FakeStore(make_artifact(ArtifactStatus.PUBLISHED, content="Live"))
    demote = AsyncMock()

    async def scenario():
        autosave = store.coordinator(demote=demote)
        autosave.on_local_change("title", "Renamed")
        await quiet()

    run_async(scenario())
    demote.assert_not_awaited()


def test_content_write_waits_for_demotion_of_a_record_published_meanwhile():
    store = FakeStore(make_artifact(ArtifactStatus.READY, content="Draft"))
    demote = AsyncMock(side_effect=NetworkFailureError("backend unavailable"))

    async def scenario():
        autosave = store.coordinator(demote=demote)
        autosave.on_local_change("content", "Draft, edited")
        store.artifact = store.server_change(status=ArtifactStatus.PUBLISHED)
        await quiet(2)
        pending = autosave.has_pending
        autosave.cancel()
        return pending

    pending = run_async(scenario())
    assert store.writes == []
    assert demote.await_count >= 1
    assert pending
    assert isinstance(store.errors[0], NetworkFailureError)
    assert store.artifact.content == "Draft"


def test_cancel_stops_pending_writes():
    store = FakeStore(make_artifact(ArtifactStatus.READY, content="Body"))

    async def scenario():
        autosave = store.coordinator()
        autosave.on_local_change("title", "Never saved")
        autosave.cancel()
        await quiet()
        with pytest.raises(RuntimeError):
            autosave.on_local_change("title", "Too late")

    run_async(scenario())
    assert store.writes == []


# ---------------------------------------------------------------------------
# Field rules
# ---------------------------------------------------------------------------


def test_coerce_field_value():
    assert coerce_field_value("tone", "casual") == Tone.CASUAL
    assert coerce_field_value("tags", ["a", "b", "a"]) == {"a", "b"}
    assert coerce_field_value("content", None) is None
    with pytest.raises(ValueError):
        coerce_field_value("status", "ready")
    with pytest.raises(ValueError):
        coerce_field_value("title", 42)
    with pytest.raises(ValueError):
        coerce_field_value("tone", "shouty")


def test_field_owner():
    assert field_owner("content", ArtifactStatus.WRITING) == "machine"
    assert field_owner("content", ArtifactStatus.CREATING_VISUALS) == "machine"
    assert field_owner("content", ArtifactStatus.READY) == "user"
    assert field_owner("title", ArtifactStatus.WRITING) == "user"
