"""Sync engine event models for observability.

This module defines the data models for engine events:
- EventType: Enum of all event types emitted by the engine
- SyncEvent: Structured event with the artifact id and details

Events mirror what subscribers see in snapshots, in a form that log
aggregators and metrics sinks can consume.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict

from pydantic import BaseModel, Field, field_serializer


class EventType(str, Enum):
    """Types of events emitted by the sync engine.

    Attributes:
        STATE_APPLIED: A newer authoritative record was applied.
        TRANSITION: The engine requested or observed a status change.
        ERROR: A public operation or background task failed.
        CHANNEL_DEGRADED: The push channel failed; polling took over.
        POLL: A poll tick ran (details carry the interval).
        AUTOSAVE: A debounced write was persisted.
    """

    STATE_APPLIED = "state_applied"
    TRANSITION = "transition"
    ERROR = "error"
    CHANNEL_DEGRADED = "channel_degraded"
    POLL = "poll"
    AUTOSAVE = "autosave"


class SyncEvent(BaseModel):
    """Structured event emitted by the sync engine.

    Attributes:
        event_type: The category of event.
        artifact_id: The artifact the engine is synchronising.
        timestamp: When the event occurred (UTC timezone).
        details: Additional context specific to the event type.

    Details Field Conventions:
        For TRANSITION events:
            - from_stage / to_stage: Status values
            - source: "local" for requested, "server" for observed

        For ERROR events:
            - error_kind: ErrorKind value
            - error_message: Human-readable description
            - operation: The operation or background task that failed

        For STATE_APPLIED events:
            - status, updated_at

        For AUTOSAVE events:
            - field: The persisted field
    """

    event_type: EventType = Field(
        ...,
        description="The category of event being emitted",
    )

    artifact_id: str = Field(
        ...,
        min_length=1,
        description="Identifier of the synchronised artifact",
    )

    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the event occurred (UTC timezone)",
    )

    details: Dict[str, Any] = Field(
        default_factory=dict,
        description="Additional context specific to the event type",
    )

    @field_serializer("timestamp")
    def _serialize_timestamp(self, value: datetime) -> str:
        return value.isoformat()

    def to_log_dict(self) -> Dict[str, Any]:
        """Convert event to a flat dictionary for structured logging.

        Returns:
            Dict[str, Any]: Flat dictionary representation of the event.

        Example:
            >>> event = SyncEvent(
            ...     event_type=EventType.ERROR,
            ...     artifact_id="a1",
            ...     details={"error_kind": "NetworkFailure"}
            ... )
            >>> event.to_log_dict()["event_type"]
            'error'
        """
        return {
            "event_type": self.event_type.value,
            "artifact_id": self.artifact_id,
            "timestamp": self.timestamp.isoformat(),
            **self.details,
        }
