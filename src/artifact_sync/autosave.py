"""Debounced persistence of local edits.

The AutosaveCoordinator owns every unsaved local edit (PendingEdit). Each
editable field has its own quiet-period timer: a write is issued no sooner
than ``debounce_ms`` after the last change to that field, so a burst of
keystrokes becomes a single write carrying the latest value.

Merge rules:
- Inbound server records never clobber an unflushed local edit; the live
  view is the server record with pending values laid over it (overlay()).
- ``content`` is machine-owned while the backend is generating (writing,
  humanity_checking, creating_visuals). A local content edit made before
  the server produced newer content is dropped at flush time instead of
  overwriting generated text.
- tone, tags and title are always user-owned: last local writer wins.
- A failed flush keeps the edit and schedules another debounce cycle.
- Editing content while ``published`` demotes the artifact to ``ready``
  once per edit session. A content write never lands on a published
  record: the flush demotes first and holds the write if that fails.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Optional

from src.artifact_sync.errors import NetworkFailureError, StaleWriteError, SyncError
from src.artifact_sync.state.models import (
    GENERATION_STAGES,
    Artifact,
    ArtifactStatus,
    Tone,
)
from src.artifact_sync.state.transitions import is_demotion


logger = logging.getLogger(__name__)


DEFAULT_DEBOUNCE_MS = 1000

EDITABLE_FIELDS: FrozenSet[str] = frozenset({"content", "tone", "tags", "title"})

# Fields the backend rewrites during generation stages
MACHINE_OWNED_FIELDS: FrozenSet[str] = frozenset({"content"})


@dataclass
class PendingEdit:
    """An unsaved local mutation.

    Attributes:
        field: Edited field name.
        value: Latest local value.
        base_version: Server ``updated_at`` when the edit session began.
        base_value: Server value of the field when the edit session began.
        sequence: Monotonic counter; changes on every local change.
    """

    field: str
    value: Any
    base_version: Optional[datetime]
    base_value: Any
    sequence: int


def coerce_field_value(field: str, value: Any) -> Any:
    """Normalise a local value to the type stored on Artifact.

    Raises:
        ValueError: If ``field`` is not editable or the value is invalid.
    """
    if field not in EDITABLE_FIELDS:
        raise ValueError(f"Field {field!r} is not editable")
    if field == "tone":
        return value if isinstance(value, Tone) else Tone(value)
    if field == "tags":
        return {str(tag) for tag in value}
    if value is not None and not isinstance(value, str):
        raise ValueError(f"Field {field!r} must be a string")
    return value


def field_owner(field: str, status: ArtifactStatus) -> str:
    """Return ``"machine"`` or ``"user"`` for a field in the given stage."""
    if field in MACHINE_OWNED_FIELDS and status in GENERATION_STAGES:
        return "machine"
    return "user"


class AutosaveCoordinator:
    """Debounces local edits and reconciles them with authoritative state.

    Collaborators are injected as callables so the coordinator stays
    independent of the engine:

    Attributes:
        debounce_seconds: Quiet period before a write is issued.
    """

    def __init__(
        self,
        persist: Callable[[str, Any], Awaitable[Artifact]],
        current: Callable[[], Optional[Artifact]],
        on_persisted: Callable[[Artifact], None],
        on_error: Callable[[SyncError], None],
        demote: Optional[Callable[[], Awaitable[None]]] = None,
        debounce_ms: int = DEFAULT_DEBOUNCE_MS,
    ):
        """Initialize the coordinator.

        Args:
            persist: Writes one field to the backend and returns the
                     updated record.
            current: Returns the latest authoritative record.
            on_persisted: Receives records returned by ``persist``.
            on_error: Receives flush failures.
            demote: Requests the published → ready transition.
            debounce_ms: Quiet period in milliseconds.
        """
        self._persist = persist
        self._current = current
        self._on_persisted = on_persisted
        self._on_error = on_error
        self._demote = demote
        self.debounce_seconds = debounce_ms / 1000.0

        self._pending: Dict[str, PendingEdit] = {}
        self._timers: Dict[str, asyncio.Task] = {}
        self._flushing: Dict[str, asyncio.Task] = {}
        self._demotion: Optional[asyncio.Task] = None
        self._sequence = 0
        self._closed = False

    # ------------------------------------------------------------------
    # Local changes
    # ------------------------------------------------------------------

    @property
    def has_pending(self) -> bool:
        return bool(self._pending)

    @property
    def pending_fields(self) -> FrozenSet[str]:
        return frozenset(self._pending)

    def on_local_change(self, field: str, value: Any) -> None:
        """Record a local change and (re)start the field's quiet period.

        Args:
            field: One of EDITABLE_FIELDS.
            value: New local value.

        Raises:
            ValueError: If the field is not editable or the value invalid.
            RuntimeError: If the coordinator has been cancelled.
        """
        if self._closed:
            raise RuntimeError("Autosave coordinator is closed")

        value = coerce_field_value(field, value)
        artifact = self._current()
        existing = self._pending.get(field)

        self._sequence += 1
        if existing is not None:
            base_version = existing.base_version
            base_value = existing.base_value
        else:
            base_version = artifact.updated_at if artifact else None
            base_value = getattr(artifact, field) if artifact else None

        self._pending[field] = PendingEdit(
            field=field,
            value=value,
            base_version=base_version,
            base_value=base_value,
            sequence=self._sequence,
        )

        if self._needs_demotion(field, artifact):
            self._start_demotion()

        self._schedule(field)

    def overlay(self, artifact: Optional[Artifact]) -> Optional[Artifact]:
        """Lay unflushed local values over a server record."""
        if artifact is None or not self._pending:
            return artifact
        return artifact.model_copy(
            update={field: edit.value for field, edit in self._pending.items()}
        )

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    def _schedule(self, field: str) -> None:
        timer = self._timers.pop(field, None)
        if timer is not None and not timer.done():
            timer.cancel()
        self._timers[field] = asyncio.create_task(
            self._debounce(field), name=f"autosave-{field}"
        )

    async def _debounce(self, field: str) -> None:
        await asyncio.sleep(self.debounce_seconds)
        # Past the quiet period; a newer change must not cancel the write
        if self._timers.get(field) is asyncio.current_task():
            del self._timers[field]
        await self._serialized_flush(field)

    async def _serialized_flush(self, field: str) -> None:
        """Run _flush after any earlier flush of the same field completes."""
        previous = self._flushing.get(field)
        task = asyncio.current_task()
        self._flushing[field] = task
        try:
            if previous is not None and not previous.done():
                await asyncio.wait([previous])
            await self._flush(field)
        finally:
            if self._flushing.get(field) is task:
                del self._flushing[field]

    def _needs_demotion(self, field: str, artifact: Optional[Artifact]) -> bool:
        if self._demote is None or field != "content" or artifact is None:
            return False
        return is_demotion(artifact.status, ArtifactStatus.READY)

    def _start_demotion(self) -> None:
        if self._demote is None:
            return
        if self._demotion is not None and not self._demotion.done():
            return
        logger.info("Content edited while published; demoting to ready")
        self._demotion = asyncio.create_task(self._run_demotion(), name="demotion")

    async def _run_demotion(self) -> None:
        try:
            await self._demote()
        except asyncio.CancelledError:
            raise
        except SyncError as exc:
            self._on_error(exc)
        except Exception as exc:
            self._on_error(NetworkFailureError(f"Demotion failed: {exc}"))

    # ------------------------------------------------------------------
    # Flushing
    # ------------------------------------------------------------------

    async def _flush(self, field: str) -> None:
        """Persist the pending edit for ``field``."""
        if self._demotion is not None and not self._demotion.done():
            await asyncio.wait([self._demotion])

        edit = self._pending.get(field)
        if edit is None:
            return

        artifact = self._current()
        if self._is_outdated(edit, artifact):
            stale = StaleWriteError(
                field, f"Server produced newer {field}; local edit dropped"
            )
            logger.info(
                "Dropping stale local edit",
                extra={
                    "field": field,
                    "status": artifact.status.value if artifact else None,
                    "kind": stale.kind.value,
                },
            )
            self._pending.pop(field, None)
            # Re-deliver the server record so the overlay drops the edit
            self._on_persisted(artifact)
            return

        if self._needs_demotion(field, artifact):
            # Status can become published after the edit began
            self._start_demotion()
            await asyncio.wait([self._demotion])
            if self._needs_demotion(field, self._current()):
                logger.warning(
                    "Content write held back until demotion succeeds",
                    extra={"field": field},
                )
                self._retry_later(field)
                return

        try:
            record = await self._persist(field, edit.value)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error = exc if isinstance(exc, SyncError) else NetworkFailureError(
                f"Autosave of {field} failed: {exc}"
            )
            logger.warning(
                "Autosave failed; will retry on next debounce cycle",
                extra={"field": field, "error": str(exc)},
            )
            self._on_error(error)
            self._retry_later(field)
            return

        current = self._pending.get(field)
        if current is not None and current.sequence == edit.sequence:
            del self._pending[field]
            if getattr(record, field, edit.value) != edit.value:
                logger.warning(
                    "Server echo differs from saved value",
                    extra={"field": field},
                )
        else:
            # Superseded while in flight; the newer edit has its own timer
            logger.debug(
                "Flushed value superseded by newer local edit",
                extra={"field": field, "kind": StaleWriteError.kind.value},
            )

        logger.debug("Autosaved field", extra={"field": field})
        self._on_persisted(record)

    def _retry_later(self, field: str) -> None:
        if not self._closed and field in self._pending and field not in self._timers:
            self._schedule(field)

    def _is_outdated(self, edit: PendingEdit, artifact: Optional[Artifact]) -> bool:
        if artifact is None or edit.base_version is None:
            return False
        if field_owner(edit.field, artifact.status) != "machine":
            return False
        return (
            artifact.updated_at > edit.base_version
            and getattr(artifact, edit.field) != edit.base_value
        )

    async def flush_all(self) -> None:
        """Persist every pending edit now, skipping the quiet period."""
        for field in list(self._timers):
            timer = self._timers.pop(field)
            timer.cancel()
        for field in sorted(self._pending):
            await self._serialized_flush(field)

    def cancel(self) -> None:
        """Stop all timers without writing. In-flight writes may finish."""
        self._closed = True
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        if self._demotion is not None and not self._demotion.done():
            self._demotion.cancel()
