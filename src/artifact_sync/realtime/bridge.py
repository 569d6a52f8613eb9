"""Bridge from the push channel to cache invalidation.

The bridge is purely accelerating: it turns push events into refetches so
updates show up sooner than the next poll tick. Correctness never depends
on it. When the subscription fails or the channel closes, the bridge logs
the degradation, reports it once, and leaves the polling loop as the
safety net. It never raises into the engine.

Version-ordered invalidation:
    An event whose ``updated_at`` is not newer than the version already
    applied is skipped, so a push event and a poll response for the same
    change do not both trigger a refetch.
"""

import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional

from src.artifact_sync.errors import ChannelDegradedError
from src.artifact_sync.realtime.models import (
    ArtifactChangeEvent,
    ChannelStatus,
    PushChannel,
    PushSubscription,
)


logger = logging.getLogger(__name__)


class RealtimeEventBridge:
    """Subscribes to one artifact's push channel and invalidates caches.

    Attributes:
        artifact_id: The artifact this bridge listens to.
        status: Last status reported by the channel, or None before start.
    """

    def __init__(
        self,
        artifact_id: str,
        channel: Optional[PushChannel],
        invalidate_artifact: Callable[[], None],
        invalidate_research: Callable[[], None],
        current_version: Callable[[], Optional[datetime]],
        on_degraded: Optional[Callable[[ChannelDegradedError], None]] = None,
        on_recovered: Optional[Callable[[], None]] = None,
    ):
        """Initialize the bridge.

        Args:
            artifact_id: Artifact to subscribe to.
            channel: Push channel, or None to run on polling alone.
            invalidate_artifact: Triggers a refetch of the artifact.
            invalidate_research: Triggers a refetch of the research list.
            current_version: Returns the applied ``updated_at``.
            on_degraded: Notified when the channel degrades.
            on_recovered: Notified when a degraded channel subscribes again.
        """
        self.artifact_id = artifact_id
        self._channel = channel
        self._invalidate_artifact = invalidate_artifact
        self._invalidate_research = invalidate_research
        self._current_version = current_version
        self._on_degraded = on_degraded
        self._on_recovered = on_recovered

        self._subscription: Optional[PushSubscription] = None
        self._degraded = False
        self._stopped = False
        self.status: Optional[ChannelStatus] = None

    @property
    def degraded(self) -> bool:
        return self._degraded

    async def start(self) -> None:
        """Subscribe to the channel. Failure degrades instead of raising."""
        if self._channel is None:
            self._degrade("no push channel configured")
            return

        logger.info(
            "Subscribing to artifact updates",
            extra={"artifact_id": self.artifact_id},
        )
        try:
            subscription = await self._channel.subscribe(
                self.artifact_id,
                self._handle_event,
                self._handle_status,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._degrade(f"subscribe failed: {exc}")
            return

        if self._stopped:
            # Stopped while the subscribe call was in flight
            await self._release(subscription)
            return
        self._subscription = subscription

    async def stop(self) -> None:
        """Unsubscribe. Safe to call more than once."""
        self._stopped = True
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            await self._release(subscription)

    async def _release(self, subscription: PushSubscription) -> None:
        try:
            await subscription.unsubscribe()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning(
                "Failed to unsubscribe from artifact updates",
                extra={"artifact_id": self.artifact_id, "error": str(exc)},
            )

    # ------------------------------------------------------------------
    # Channel callbacks
    # ------------------------------------------------------------------

    def _handle_event(self, event: ArtifactChangeEvent) -> None:
        if self._stopped or event.artifact_id != self.artifact_id:
            return

        incoming = event.updated_at
        applied = self._current_version()
        if incoming is not None and applied is not None and incoming <= applied:
            logger.debug(
                "Skipping push event for already applied version",
                extra={
                    "artifact_id": self.artifact_id,
                    "event_version": incoming.isoformat(),
                    "applied_version": applied.isoformat(),
                },
            )
            return

        logger.debug(
            "Push event received",
            extra={
                "artifact_id": self.artifact_id,
                "old_status": event.old_status,
                "new_status": event.new_status,
            },
        )
        self._invalidate_artifact()
        if event.status_changed:
            self._invalidate_research()

    def _handle_status(self, status: ChannelStatus, detail: Optional[str] = None) -> None:
        if self._stopped:
            return
        self.status = status
        if status == ChannelStatus.SUBSCRIBED:
            logger.info(
                "Subscribed to artifact updates",
                extra={"artifact_id": self.artifact_id},
            )
            if self._degraded:
                self._degraded = False
                if self._on_recovered is not None:
                    self._on_recovered()
            return
        self._degrade(f"channel {status.value}" + (f": {detail}" if detail else ""))

    def _degrade(self, reason: str) -> None:
        if self._degraded:
            return
        self._degraded = True
        error = ChannelDegradedError(
            f"Push channel degraded for artifact {self.artifact_id}: {reason}"
        )
        logger.warning(
            "Push channel degraded; relying on polling",
            extra={
                "artifact_id": self.artifact_id,
                "reason": reason,
                "kind": error.kind.value,
            },
        )
        if self._on_degraded is not None:
            try:
                self._on_degraded(error)
            except Exception:
                logger.exception(
                    "Degradation callback failed",
                    extra={"artifact_id": self.artifact_id},
                )
