"""Push channel event models and protocols.

The push channel delivers row-level update events scoped to one artifact.
Events are only hints: the bridge uses them to trigger a refetch, and the
payload is never applied directly.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional, Protocol, runtime_checkable

from pydantic import BaseModel, Field


class ChannelStatus(str, Enum):
    """Subscription status reported by a push channel.

    Attributes:
        SUBSCRIBED: The channel is joined and delivering events.
        CHANNEL_ERROR: The server rejected or dropped the subscription.
        TIMED_OUT: The join was not acknowledged in time.
        CLOSED: The connection closed.
    """

    SUBSCRIBED = "SUBSCRIBED"
    CHANNEL_ERROR = "CHANNEL_ERROR"
    TIMED_OUT = "TIMED_OUT"
    CLOSED = "CLOSED"


class ArtifactChangeEvent(BaseModel):
    """A row-level update event for one artifact.

    Attributes:
        artifact_id: The artifact the event is about.
        event: Database event type (``UPDATE``).
        new: The new row as sent by the channel (may be partial).
        old: The previous row, when the channel provides it.
        received_at: When the client received the event (UTC).
    """

    artifact_id: str = Field(..., min_length=1)

    event: str = Field(default="UPDATE")

    new: Dict[str, Any] = Field(default_factory=dict)

    old: Dict[str, Any] = Field(default_factory=dict)

    received_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )

    @property
    def new_status(self) -> Optional[str]:
        return self.new.get("status")

    @property
    def old_status(self) -> Optional[str]:
        return self.old.get("status")

    @property
    def status_changed(self) -> bool:
        """Whether the old and new status differ.

        A missing old row counts as a change, so a status present in the new
        row always refreshes dependent caches.
        """
        return self.new_status is not None and self.new_status != self.old_status

    @property
    def updated_at(self) -> Optional[datetime]:
        """Version marker carried by the new row, if parseable."""
        raw = self.new.get("updated_at")
        if raw is None:
            return None
        if isinstance(raw, datetime):
            value = raw
        else:
            try:
                value = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
            except ValueError:
                return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


EventCallback = Callable[[ArtifactChangeEvent], None]
StatusCallback = Callable[[ChannelStatus, Optional[str]], None]


@runtime_checkable
class PushSubscription(Protocol):
    """Handle returned by PushChannel.subscribe."""

    async def unsubscribe(self) -> None:
        """Stop delivering events and release the connection."""
        ...


@runtime_checkable
class PushChannel(Protocol):
    """Protocol for a push channel scoped to single artifacts.

    Implementations call ``on_event`` for every update event and
    ``on_status`` whenever the subscription status changes. Neither
    callback may be invoked after ``unsubscribe`` returns.
    """

    async def subscribe(
        self,
        artifact_id: str,
        on_event: EventCallback,
        on_status: StatusCallback,
    ) -> PushSubscription:
        """Subscribe to updates for one artifact.

        Raises:
            Exception: If the subscription cannot be established.
        """
        ...
