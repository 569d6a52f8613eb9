"""Pipeline synchronization engine for a single artifact.

The engine owns the client-side copy of one artifact and wires together:
- the status graph (state/), which every status change is checked against
- the AutosaveCoordinator, for debounced local edits
- two ApprovalGates (foundations, image descriptions)
- the image RetryBudget
- the PollingScheduler, which drives the poll loop
- the RealtimeEventBridge, which accelerates refetches

Ordering:
    Authoritative records are applied in ``updated_at`` order. A record
    that is not newer than the applied one is discarded, whichever channel
    delivered it (poll, push-triggered refetch, write echo). Refetches are
    single-flight: an invalidation that arrives while a fetch is running
    schedules exactly one trailing fetch.

Errors:
    Public operations raise a SyncError subclass and also publish it as
    ``last_error`` in the next snapshot. Background work (poll loop,
    autosave, push bridge) never raises; failures become ``last_error``
    and ERROR events.

Lifecycle:
    ``start()`` acquires the write lease, subscribes to the push channel and
    fetches the artifact. ``dispose()`` cancels the poll loop, debounce
    timers and in-flight refetches, unsubscribes and releases the lease.
    Results that arrive after dispose are dropped.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Set,
)

import httpx
from pydantic import BaseModel, ConfigDict, Field

from src.artifact_sync.approval import ApprovalGate, GateState
from src.artifact_sync.autosave import DEFAULT_DEBOUNCE_MS, AutosaveCoordinator
from src.artifact_sync.backend.client import ArtifactAPIClient
from src.artifact_sync.budget import IMAGE_REGENERATION_BUDGET, RetryBudget
from src.artifact_sync.config import SyncSettings
from src.artifact_sync.errors import (
    ChannelDegradedError,
    InvalidTransitionError,
    NetworkFailureError,
    SyncError,
    WriteAuthorityError,
)
from src.artifact_sync.events.emitter import EventEmitter, NullEventEmitter
from src.artifact_sync.events.models import EventType, SyncEvent
from src.artifact_sync.polling import PollingScheduler
from src.artifact_sync.realtime.bridge import RealtimeEventBridge
from src.artifact_sync.realtime.models import PushChannel
from src.artifact_sync.state.models import (
    Artifact,
    ArtifactStatus,
    ResearchEntry,
    VisualsMetadata,
    allowed_next,
    is_approval_gated,
    is_editor_locked,
    is_processing_stage,
)
from src.artifact_sync.state.transitions import validate_transition


logger = logging.getLogger(__name__)


FOUNDATIONS_GATE = "foundations"
IMAGES_GATE = "images"


class SyncSnapshot(BaseModel):
    """Immutable view of the engine state delivered to subscribers.

    Attributes:
        artifact_id: The synchronised artifact.
        artifact: Authoritative record with unsaved local edits laid over it.
        is_processing: True while the backend is generating.
        is_editor_locked: True when editing affordances must be locked.
        has_unsaved_changes: True while local edits await persistence.
        research: Research entries attached to the artifact.
        active_gate: Name of the open approval gate, if any.
        foundations_gate: State of the foundations approval gate.
        images_gate: State of the image description approval gate.
        channel_degraded: True when updates rely on polling alone.
        poll_interval_ms: Current poll interval, or None when not polling.
        last_error: Most recent error, if any.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    artifact_id: str
    artifact: Optional[Artifact] = None
    is_processing: bool = False
    is_editor_locked: bool = False
    has_unsaved_changes: bool = False
    research: List[ResearchEntry] = Field(default_factory=list)
    active_gate: Optional[str] = None
    foundations_gate: GateState = GateState.PENDING
    images_gate: GateState = GateState.PENDING
    channel_degraded: bool = False
    poll_interval_ms: Optional[int] = None
    last_error: Optional[SyncError] = None

    @property
    def status(self) -> Optional[ArtifactStatus]:
        return self.artifact.status if self.artifact else None


Listener = Callable[[SyncSnapshot], None]


class WriteLeaseRegistry:
    """Tracks which engine holds write authority over each artifact.

    Exactly one engine may write to an artifact at a time; read-only
    engines and snapshot subscribers are unrestricted.
    """

    def __init__(self) -> None:
        self._owners: Dict[str, object] = {}

    def acquire(self, artifact_id: str, owner: object) -> None:
        """Grant the lease to ``owner``.

        Raises:
            WriteAuthorityError: If another owner holds the lease.
        """
        holder = self._owners.get(artifact_id)
        if holder is not None and holder is not owner:
            raise WriteAuthorityError(artifact_id)
        self._owners[artifact_id] = owner

    def release(self, artifact_id: str, owner: object) -> bool:
        if self._owners.get(artifact_id) is owner:
            del self._owners[artifact_id]
            return True
        return False

    def holder(self, artifact_id: str) -> Optional[object]:
        return self._owners.get(artifact_id)


# Leases are per client process
_DEFAULT_LEASES = WriteLeaseRegistry()


def _to_sync_error(exc: BaseException, operation: str) -> SyncError:
    if isinstance(exc, SyncError):
        return exc
    return NetworkFailureError(f"{operation} failed: {exc}")


class PipelineSyncEngine:
    """Keeps one artifact's client-side state synchronised with the backend.

    Attributes:
        artifact_id: The artifact this engine synchronises.
        client: Backend API client.
        scheduler: Derives the poll interval from the artifact state.
        budget: Image regeneration budget.
        read_only: When True, the engine never writes and takes no lease.

    Example:
        >>> async with PipelineSyncEngine("a1", client, channel) as engine:
        ...     unsubscribe = engine.subscribe(print)
        ...     await engine.request_transition(ArtifactStatus.RESEARCH)
    """

    def __init__(
        self,
        artifact_id: str,
        client: ArtifactAPIClient,
        channel: Optional[PushChannel] = None,
        settings: Optional[SyncSettings] = None,
        event_emitter: Optional[EventEmitter] = None,
        scheduler: Optional[PollingScheduler] = None,
        budget: Optional[RetryBudget] = None,
        leases: Optional[WriteLeaseRegistry] = None,
        read_only: bool = False,
        debounce_ms: Optional[int] = None,
    ):
        """Initialize the engine.

        Args:
            artifact_id: Artifact to synchronise.
            client: Backend API client.
            channel: Push channel, or None to rely on polling alone.
            settings: Optional settings supplying intervals and caps.
            event_emitter: Sink for sync events (default: discard).
            scheduler: Poll interval policy (default: from settings).
            budget: Image regeneration budget (default: from settings).
            leases: Write lease registry (default: process-wide).
            read_only: Observe only; all mutations are refused.
            debounce_ms: Autosave quiet period (default: from settings).
        """
        if not artifact_id:
            raise ValueError("artifact_id cannot be empty")

        self.artifact_id = artifact_id
        self.client = client
        self.event_emitter = event_emitter or NullEventEmitter()
        self.read_only = read_only
        self._leases = leases or _DEFAULT_LEASES

        if scheduler is None:
            scheduler = (
                PollingScheduler(
                    settings.processing_poll_interval_ms,
                    settings.draft_poll_interval_ms,
                )
                if settings
                else PollingScheduler()
            )
        self.scheduler = scheduler

        if budget is None:
            budget = (
                RetryBudget(settings.max_image_attempts)
                if settings
                else IMAGE_REGENERATION_BUDGET
            )
        self.budget = budget

        if debounce_ms is None:
            debounce_ms = settings.autosave_debounce_ms if settings else DEFAULT_DEBOUNCE_MS

        self._autosave = AutosaveCoordinator(
            persist=self._persist_field,
            current=lambda: self._server,
            on_persisted=self._on_persisted,
            on_error=lambda error: self._record_error("autosave", error),
            demote=self._demote,
            debounce_ms=debounce_ms,
        )
        self._foundations_gate: ApprovalGate[str, ArtifactStatus] = ApprovalGate(
            FOUNDATIONS_GATE, self._submit_foundations
        )
        self._images_gate: ApprovalGate[Dict[str, bool], None] = ApprovalGate(
            IMAGES_GATE, self._submit_images
        )
        self._bridge = RealtimeEventBridge(
            artifact_id=artifact_id,
            channel=channel,
            invalidate_artifact=self._schedule_refresh,
            invalidate_research=self._schedule_research_refresh,
            current_version=lambda: self._server.updated_at if self._server else None,
            on_degraded=self._on_channel_degraded,
            on_recovered=self._on_channel_recovered,
        )

        self._server: Optional[Artifact] = None
        self._research: List[ResearchEntry] = []
        self._last_error: Optional[SyncError] = None
        self._generation_requested = False
        self._listeners: List[Listener] = []
        # Regenerations awaiting the backend, per need
        self._regenerating: Dict[str, int] = {}

        self._poll_task: Optional[asyncio.Task] = None
        self._poll_interval_ms: Optional[int] = None
        self._refresh_task: Optional[asyncio.Task] = None
        self._refresh_again = False
        self._research_task: Optional[asyncio.Task] = None
        self._research_again = False
        self._emits: Set[asyncio.Task] = set()

        self._started = False
        self._disposed = False
        self._holds_lease = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Acquire the write lease, subscribe and fetch the artifact.

        Raises:
            WriteAuthorityError: If another engine owns the artifact.
            NetworkFailureError: If the initial fetch fails. The engine
                stays started; push events and refresh() retry the fetch.
        """
        if self._disposed:
            raise RuntimeError("Engine has been disposed")
        if self._started:
            return

        if not self.read_only:
            try:
                self._leases.acquire(self.artifact_id, self)
            except WriteAuthorityError as exc:
                self._record_error("start", exc)
                raise
            self._holds_lease = True

        self._started = True
        logger.info(
            "Starting sync engine",
            extra={"artifact_id": self.artifact_id, "read_only": self.read_only},
        )

        await self._bridge.start()
        await self.refresh()
        self._schedule_research_refresh()

    async def dispose(self, flush: bool = False) -> None:
        """Tear down timers, tasks and the subscription. Idempotent.

        Args:
            flush: Persist pending edits before tearing down. By default
                   unsaved edits are discarded.
        """
        if self._disposed:
            return
        if flush and self._started and not self.read_only:
            try:
                await self._autosave.flush_all()
            except Exception:
                logger.exception(
                    "Flush on dispose failed",
                    extra={"artifact_id": self.artifact_id},
                )

        self._disposed = True
        self._autosave.cancel()

        tasks = [
            task
            for task in (self._poll_task, self._refresh_task, self._research_task)
            if task is not None and not task.done()
        ]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._poll_task = None
        self._poll_interval_ms = None

        await self._bridge.stop()

        if self._holds_lease:
            self._leases.release(self.artifact_id, self)
            self._holds_lease = False

        if self._emits:
            await asyncio.gather(*list(self._emits), return_exceptions=True)
        self._listeners.clear()

        logger.info("Sync engine disposed", extra={"artifact_id": self.artifact_id})

    async def __aenter__(self) -> "PipelineSyncEngine":
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.dispose()

    @property
    def disposed(self) -> bool:
        return self._disposed

    # ------------------------------------------------------------------
    # State and subscriptions
    # ------------------------------------------------------------------

    def get_state(self) -> SyncSnapshot:
        """Return the current merged snapshot."""
        server = self._server
        return SyncSnapshot(
            artifact_id=self.artifact_id,
            artifact=self._autosave.overlay(server),
            is_processing=server is not None and is_processing_stage(server.status),
            is_editor_locked=server is not None and is_editor_locked(server.status),
            has_unsaved_changes=self._autosave.has_pending,
            research=list(self._research),
            active_gate=self._active_gate(),
            foundations_gate=self._foundations_gate.state,
            images_gate=self._images_gate.state,
            channel_degraded=self._bridge.degraded,
            poll_interval_ms=self._poll_interval_ms,
            last_error=self._last_error,
        )

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener and deliver the current snapshot to it.

        Returns:
            A function that removes the listener.
        """
        self._listeners.append(listener)
        self._notify(listener, self.get_state())

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _publish(self) -> None:
        if self._disposed:
            return
        snapshot = self.get_state()
        for listener in list(self._listeners):
            self._notify(listener, snapshot)

    def _notify(self, listener: Listener, snapshot: SyncSnapshot) -> None:
        try:
            listener(snapshot)
        except Exception:
            logger.exception(
                "Snapshot listener failed",
                extra={"artifact_id": self.artifact_id},
            )

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def refresh(self) -> Optional[Artifact]:
        """Fetch the artifact now (coalesced with any fetch in flight).

        Returns:
            The merged artifact after the fetch.

        Raises:
            NetworkFailureError: If the fetch fails.
        """
        self._ensure_active()
        # A fetch already in flight may predate the caller; it runs once more
        task = self._schedule_refresh()
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled() and self._disposed:
                return None
            raise
        except Exception as exc:
            raise _to_sync_error(exc, "refresh") from exc
        self._clear_error()
        return self.get_state().artifact

    async def request_transition(self, to_stage: ArtifactStatus) -> Artifact:
        """Move the artifact to ``to_stage`` along a legal edge.

        Raises:
            InvalidTransitionError: If the edge is not in the graph or the
                current stage waits on an approval gate. State is unchanged.
            NetworkFailureError: If the backend request fails.
            WriteAuthorityError: If this engine does not own the artifact.
        """
        self._ensure_writable("request_transition")
        to_stage = ArtifactStatus(to_stage)
        try:
            current = self._require_artifact()
            if is_approval_gated(current.status):
                raise InvalidTransitionError(
                    current.status,
                    to_stage,
                    message=(
                        f"Stage {current.status.value} waits for approval; "
                        f"use approve_gate()"
                    ),
                    allowed=allowed_next(current.status),
                )
            await self._transition_to(to_stage, source="local")
        except SyncError as exc:
            self._record_error("request_transition", exc)
            raise
        self._clear_error()
        return self.get_state().artifact

    def edit(self, field: str, value: Any) -> None:
        """Apply a local edit; it is persisted after the debounce period.

        Must be called from a running event loop.

        Raises:
            ValueError: If the field is not editable or the value invalid.
            WriteAuthorityError: If this engine does not own the artifact.
        """
        self._ensure_writable("edit")
        self._autosave.on_local_change(field, value)
        self._publish()

    async def flush_pending(self) -> None:
        """Persist all pending edits now, skipping the debounce period."""
        self._ensure_writable("flush_pending")
        await self._autosave.flush_all()
        self._publish()

    async def approve_gate(self) -> Any:
        """Approve whichever gate the current stage waits on.

        Concurrent calls share one request.

        Returns:
            The new status for the foundations gate, None for the image gate.

        Raises:
            InvalidTransitionError: If no gate is open in the current stage.
            NetworkFailureError: If the approval request fails; the gate
                returns to pending and is not retried.
        """
        self._ensure_writable("approve_gate")
        try:
            gate = self._require_open_gate()
            result = await gate.approve()
        except SyncError as exc:
            self._record_error("approve_gate", exc)
            raise
        self._clear_error()
        self._publish()
        return result

    def submit_gate_edits(self, payload: Any) -> bool:
        """Store an edited payload on the open gate without approving it.

        The foundations gate takes the edited skeleton text. The image gate
        takes a mapping of need id to approved flag; needs not listed are
        approved.

        Returns:
            bool: True if stored, False if the gate is not pending.

        Raises:
            InvalidTransitionError: If no gate is open.
            ValueError: If the payload does not fit the open gate.
        """
        self._ensure_writable("submit_gate_edits")
        gate = self._require_open_gate()
        if gate is self._foundations_gate:
            if not isinstance(payload, str):
                raise ValueError("Foundations edits must be the skeleton text")
            stored = gate.submit_edits(payload)
        else:
            if not isinstance(payload, Mapping):
                raise ValueError("Image edits must map need ids to approval flags")
            visuals = self._visuals()
            unknown = [need_id for need_id in payload if visuals.need(need_id) is None]
            if unknown:
                raise ValueError(f"Unknown image needs: {', '.join(sorted(unknown))}")
            stored = gate.submit_edits({str(k): bool(v) for k, v in payload.items()})
        self._publish()
        return stored

    async def regenerate_image(self, need_id: str, new_description: str) -> Artifact:
        """Regenerate the current final image of a need.

        The budget is checked before any request; a need whose image has
        used all attempts is refused locally. Requests still awaiting the
        backend count as used attempts.

        Raises:
            BudgetExhaustedError: If the attempt cap is reached.
            NetworkFailureError: If the request fails (not retried).
            ValueError: If the need has no generated image.
        """
        self._ensure_writable("regenerate_image")
        try:
            current = self._require_artifact()
            visuals = current.visuals_metadata or VisualsMetadata()
            final = visuals.current_final(need_id)
            if final is None:
                raise ValueError(f"Need {need_id!r} has no generated image")
            in_flight = self._regenerating.get(need_id, 0)
            attempts = self.budget.try_consume(final.generation_attempts + in_flight)

            self._regenerating[need_id] = in_flight + 1
            try:
                await self.client.regenerate_image(self.artifact_id, final.id, new_description)
            finally:
                self._release_regeneration(need_id)
        except SyncError as exc:
            self._record_error("regenerate_image", exc)
            raise

        if self._disposed:
            return current

        logger.info(
            "Image regeneration requested",
            extra={
                "artifact_id": self.artifact_id,
                "need_id": need_id,
                "attempts": attempts,
                "remaining": self.budget.remaining(attempts),
            },
        )
        latest = self._server or current
        latest_visuals = latest.visuals_metadata or visuals
        updated_visuals = latest_visuals.model_copy(
            update={
                "needs": [
                    need.model_copy(update={"description": new_description})
                    if need.id == need_id
                    else need
                    for need in latest_visuals.needs
                ],
                "finals": [
                    item.model_copy(
                        update={"generation_attempts": max(item.generation_attempts, attempts)}
                    )
                    if item.id == final.id
                    else item
                    for item in latest_visuals.finals
                ],
            }
        )
        # Local bookkeeping keeps the version; the refetch brings the new image
        self._commit(
            latest.model_copy(update={"visuals_metadata": updated_visuals}),
            source="regenerate",
        )
        self._clear_error()
        self._schedule_refresh()
        return self.get_state().artifact

    def _release_regeneration(self, need_id: str) -> None:
        remaining = self._regenerating.pop(need_id, 0) - 1
        if remaining > 0:
            self._regenerating[need_id] = remaining

    def remaining_image_attempts(self, need_id: str) -> int:
        """Attempts left for a need; 0 when it has no image yet."""
        visuals = self._visuals()
        final = visuals.current_final(need_id)
        if final is None:
            return 0
        return self.budget.remaining(
            final.generation_attempts + self._regenerating.get(need_id, 0)
        )

    def mark_generation_requested(self) -> None:
        """Poll a draft artifact until the backend picks up generation."""
        self._ensure_active()
        self._generation_requested = True
        self._reschedule_poll()
        self._publish()

    async def publish(self) -> Artifact:
        """Persist pending edits and move ready → published.

        Raises:
            InvalidTransitionError: If the artifact is not ready.
            NetworkFailureError: If a request fails or edits remain unsaved.
        """
        self._ensure_writable("publish")
        await self._autosave.flush_all()
        try:
            if self._autosave.has_pending:
                fields = ", ".join(sorted(self._autosave.pending_fields))
                raise NetworkFailureError(f"Unsaved edits ({fields}) could not be persisted")
            await self._transition_to(
                ArtifactStatus.PUBLISHED,
                source="local",
                extra={"published_at": datetime.now(timezone.utc).isoformat()},
            )
        except SyncError as exc:
            self._record_error("publish", exc)
            raise
        self._clear_error()
        return self.get_state().artifact

    async def add_research(
        self,
        source_type: str,
        source_name: str,
        excerpt: str,
        source_url: Optional[str] = None,
    ) -> ResearchEntry:
        """Add a manual research entry."""
        self._ensure_writable("add_research")
        try:
            entry = await self.client.add_research(
                self.artifact_id,
                source_type=source_type,
                source_name=source_name,
                excerpt=excerpt,
                source_url=source_url,
            )
        except SyncError as exc:
            self._record_error("add_research", exc)
            raise
        if not self._disposed:
            self._research = [*self._research, entry]
            self._clear_error()
            self._publish()
        return entry

    async def delete_research(self, research_id: str) -> None:
        """Delete a research entry."""
        self._ensure_writable("delete_research")
        try:
            await self.client.delete_research(self.artifact_id, research_id)
        except SyncError as exc:
            self._record_error("delete_research", exc)
            raise
        if not self._disposed:
            self._research = [e for e in self._research if e.id != research_id]
            self._clear_error()
            self._publish()

    # ------------------------------------------------------------------
    # Applying authoritative state
    # ------------------------------------------------------------------

    def _apply(self, record: Artifact, source: str) -> bool:
        """Apply a record if it is newer than the applied version."""
        if self._disposed:
            return False
        if record.id != self.artifact_id:
            logger.warning(
                "Ignoring record for a different artifact",
                extra={"artifact_id": self.artifact_id, "record_id": record.id},
            )
            return False
        if not record.is_newer_than(self._server):
            logger.debug(
                "Discarding stale record",
                extra={
                    "artifact_id": self.artifact_id,
                    "source": source,
                    "record_version": record.updated_at.isoformat(),
                    "applied_version": self._server.updated_at.isoformat()
                    if self._server
                    else None,
                },
            )
            return False
        self._commit(record, source)
        self._emit(
            EventType.STATE_APPLIED,
            status=record.status.value,
            updated_at=record.updated_at.isoformat(),
            source=source,
        )
        return True

    def _commit(self, record: Artifact, source: str) -> None:
        """Make ``record`` the authoritative copy and react to status changes."""
        previous = self._server
        self._server = record

        if previous is not None and previous.status != record.status:
            self._on_status_changed(previous.status, record.status, source)
        elif previous is None:
            self._reset_gates_for(record.status)

        if self._generation_requested and record.status != ArtifactStatus.DRAFT:
            self._generation_requested = False

        self._reschedule_poll()
        self._publish()

    def _on_status_changed(
        self,
        from_stage: ArtifactStatus,
        to_stage: ArtifactStatus,
        source: str,
    ) -> None:
        logger.info(
            "Artifact status changed",
            extra={
                "artifact_id": self.artifact_id,
                "from_stage": from_stage.value,
                "to_stage": to_stage.value,
                "source": source,
            },
        )
        self._emit(
            EventType.TRANSITION,
            from_stage=from_stage.value,
            to_stage=to_stage.value,
            source=source,
        )
        self._reset_gates_for(to_stage)
        self._schedule_research_refresh()

    def _reset_gates_for(self, stage: ArtifactStatus) -> None:
        # Re-entering a gated stage opens its gate again
        if is_approval_gated(stage):
            self._foundations_gate.reset()
        elif stage == ArtifactStatus.CREATING_VISUALS:
            self._images_gate.reset()

    async def _transition_to(
        self,
        to_stage: ArtifactStatus,
        source: str,
        extra: Optional[Dict[str, Any]] = None,
    ) -> None:
        current = self._require_artifact()
        validate_transition(current.status, to_stage, self.artifact_id)
        changes: Dict[str, Any] = {"status": to_stage, **(extra or {})}
        record = await self.client.update_artifact(self.artifact_id, changes)
        if self._disposed:
            return
        if not self._apply(record, source) and self._server is not None:
            if self._server.status != to_stage:
                self._commit(self._server.model_copy(update={"status": to_stage}), source)

    # ------------------------------------------------------------------
    # Refetching
    # ------------------------------------------------------------------

    def _schedule_refresh(self) -> asyncio.Task:
        """Start a fetch, or ask the running one to fetch once more."""
        task = self._refresh_task
        if task is not None and not task.done():
            self._refresh_again = True
            return task
        task = asyncio.create_task(self._run_refresh(), name=f"refresh-{self.artifact_id}")
        task.add_done_callback(self._on_refresh_done)
        self._refresh_task = task
        return task

    async def _run_refresh(self) -> None:
        while True:
            self._refresh_again = False
            record = await self.client.get_artifact(self.artifact_id)
            self._apply(record, source="fetch")
            if self._disposed or not self._refresh_again:
                return

    def _on_refresh_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None and not self._disposed:
            self._record_error("refresh", _to_sync_error(exc, "refresh"))

    def _schedule_research_refresh(self) -> None:
        if self._disposed or not self._started:
            return
        task = self._research_task
        if task is not None and not task.done():
            self._research_again = True
            return
        self._research_task = asyncio.create_task(
            self._run_research_refresh(), name=f"research-{self.artifact_id}"
        )

    async def _run_research_refresh(self) -> None:
        while True:
            self._research_again = False
            try:
                entries = await self.client.list_research(self.artifact_id)
            except SyncError as exc:
                self._record_error("research", exc)
                return
            except (httpx.HTTPError, OSError) as exc:
                self._record_error("research", _to_sync_error(exc, "research"))
                return
            if self._disposed:
                return
            self._research = entries
            self._publish()
            if not self._research_again:
                return

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    def _reschedule_poll(self) -> None:
        if self._disposed or not self._started:
            return
        interval = self.scheduler.next_interval(self._server, self._generation_requested)
        running = self._poll_task is not None and not self._poll_task.done()
        if interval == self._poll_interval_ms and (running or interval is None):
            return

        self._poll_interval_ms = interval
        if self._poll_task is not None and self._poll_task is not asyncio.current_task():
            self._poll_task.cancel()
        self._poll_task = None

        if interval is None:
            logger.debug("Polling stopped", extra={"artifact_id": self.artifact_id})
            return
        logger.debug(
            "Polling scheduled",
            extra={"artifact_id": self.artifact_id, "interval_ms": interval},
        )
        self._poll_task = asyncio.create_task(
            self._poll_loop(), name=f"poll-{self.artifact_id}"
        )

    async def _poll_loop(self) -> None:
        while not self._disposed:
            if self._poll_task is not asyncio.current_task():
                return
            interval = self._poll_interval_ms
            if interval is None:
                return
            await asyncio.sleep(interval / 1000.0)
            if self._disposed:
                return
            self._emit(EventType.POLL, interval_ms=interval)
            # Overlapping ticks coalesce into the running fetch
            await asyncio.wait([self._schedule_refresh()])
            if self.scheduler.should_poll_research(self._server):
                self._schedule_research_refresh()

    # ------------------------------------------------------------------
    # Autosave collaborators
    # ------------------------------------------------------------------

    async def _persist_field(self, field: str, value: Any) -> Artifact:
        record = await self.client.update_artifact(self.artifact_id, {field: value})
        self._emit(EventType.AUTOSAVE, field=field)
        return record

    def _on_persisted(self, record: Artifact) -> None:
        if not self._apply(record, source="autosave"):
            self._publish()

    async def _demote(self) -> None:
        await self._transition_to(ArtifactStatus.READY, source="autosave")

    # ------------------------------------------------------------------
    # Approval gates
    # ------------------------------------------------------------------

    def _active_gate(self) -> Optional[str]:
        server = self._server
        if server is None:
            return None
        if is_approval_gated(server.status) or self._foundations_gate.is_submitting:
            return FOUNDATIONS_GATE
        if server.status == ArtifactStatus.CREATING_VISUALS:
            visuals = server.visuals_metadata
            if visuals is not None and visuals.pending_needs():
                return IMAGES_GATE
            if self._images_gate.is_submitting:
                return IMAGES_GATE
        return None

    def _require_open_gate(self) -> ApprovalGate:
        current = self._require_artifact()
        name = self._active_gate()
        if name == FOUNDATIONS_GATE:
            return self._foundations_gate
        if name == IMAGES_GATE:
            return self._images_gate
        raise InvalidTransitionError(
            current.status,
            current.status,
            message=f"No approval gate is open in stage {current.status.value}",
            allowed=allowed_next(current.status),
        )

    async def _submit_foundations(self, skeleton: Optional[str]) -> ArtifactStatus:
        new_status = await self.client.approve_foundations(
            self.artifact_id, skeleton_content=skeleton
        )
        target = new_status or ArtifactStatus.WRITING
        if self._disposed or self._server is None:
            return target

        current = self._server
        if current.status != target:
            try:
                validate_transition(current.status, target, self.artifact_id)
            except InvalidTransitionError as exc:
                # Already approved server-side; the refetch settles the status
                self._record_error("approve_gate", exc)
            else:
                self._commit(current.model_copy(update={"status": target}), source="approval")
        self._schedule_refresh()
        return target

    async def _submit_images(self, decisions: Optional[Dict[str, bool]]) -> None:
        visuals = self._visuals()
        decisions = decisions or {}
        approved: List[str] = []
        rejected: List[str] = []
        for need in visuals.pending_needs():
            if decisions.get(need.id, True):
                approved.append(need.id)
            else:
                rejected.append(need.id)
        # Needs approved earlier may be explicitly rejected in the edits
        for need_id, is_approved in decisions.items():
            need = visuals.need(need_id)
            if need is not None and need.approved and not is_approved:
                rejected.append(need_id)

        if approved or rejected:
            await self.client.approve_images(self.artifact_id, approved, rejected)
        if approved:
            await self.client.generate_images(self.artifact_id)
        if not self._disposed:
            self._schedule_refresh()

    def _visuals(self) -> VisualsMetadata:
        server = self._server
        if server is None or server.visuals_metadata is None:
            return VisualsMetadata()
        return server.visuals_metadata

    # ------------------------------------------------------------------
    # Push channel callbacks
    # ------------------------------------------------------------------

    def _on_channel_degraded(self, error: ChannelDegradedError) -> None:
        self._emit(
            EventType.CHANNEL_DEGRADED,
            error_kind=error.kind.value,
            error_message=error.message,
        )
        if self._started and not self._disposed:
            # Catch up on anything the channel missed
            self._schedule_refresh()
        self._publish()

    def _on_channel_recovered(self) -> None:
        if self._started and not self._disposed:
            self._schedule_refresh()
        self._publish()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _ensure_active(self) -> None:
        if self._disposed:
            raise RuntimeError("Engine has been disposed")
        if not self._started:
            raise RuntimeError("Engine has not been started")

    def _ensure_writable(self, operation: str) -> None:
        self._ensure_active()
        if self.read_only or not self._holds_lease:
            error = WriteAuthorityError(self.artifact_id)
            self._record_error(operation, error)
            raise error

    def _require_artifact(self) -> Artifact:
        if self._server is None:
            raise NetworkFailureError(
                f"Artifact {self.artifact_id} has not been loaded"
            )
        return self._server

    def _record_error(self, operation: str, error: SyncError) -> None:
        if self._disposed:
            return
        self._last_error = error
        self._emit(
            EventType.ERROR,
            operation=operation,
            error_kind=error.kind.value,
            error_message=error.message,
        )
        self._publish()

    def _clear_error(self) -> None:
        if self._last_error is not None:
            self._last_error = None
            self._publish()

    def _emit(self, event_type: EventType, **details: Any) -> None:
        if self._disposed:
            return
        event = SyncEvent(
            event_type=event_type,
            artifact_id=self.artifact_id,
            details=details,
        )
        task = asyncio.create_task(self._safe_emit(event))
        self._emits.add(task)
        task.add_done_callback(self._emits.discard)

    async def _safe_emit(self, event: SyncEvent) -> None:
        """Emit an event, swallowing exceptions to keep syncing."""
        try:
            await self.event_emitter.emit(event)
        except Exception:
            logger.exception(
                "Failed to emit sync event",
                extra={
                    "event_type": event.event_type.value,
                    "artifact_id": event.artifact_id,
                },
            )
