"""Typed error outcomes for the sync engine.

Every failure inside the engine resolves to one of the kinds below. Public
operations raise them to the caller; background work (polling, autosave,
the push bridge) reports them to subscribers instead of raising.

Error kinds:
- INVALID_TRANSITION: Illegal status edge; fatal to the request only
- BUDGET_EXHAUSTED: Regeneration cap reached; rejected before any request
- STALE_WRITE: A flush was superseded or outdated; retried silently
- NETWORK_FAILURE: Any backend request failure; recoverable
- CHANNEL_DEGRADED: Push subscription lost; logged, polling takes over
"""

from enum import Enum
from typing import Iterable, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from src.artifact_sync.state.models import ArtifactStatus


class ErrorKind(str, Enum):
    """Categories of failure surfaced by the engine."""

    INVALID_TRANSITION = "InvalidTransition"
    BUDGET_EXHAUSTED = "BudgetExhausted"
    STALE_WRITE = "StaleWrite"
    NETWORK_FAILURE = "NetworkFailure"
    CHANNEL_DEGRADED = "ChannelDegraded"
    WRITE_AUTHORITY = "WriteAuthority"


class SyncError(Exception):
    """Base class for all engine errors.

    Attributes:
        kind: The error category.
        message: Human-readable error message.
    """

    kind: ErrorKind

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class InvalidTransitionError(SyncError):
    """Raised when a status transition is not an edge of the pipeline graph.

    Attributes:
        from_stage: The current stage.
        to_stage: The attempted target stage.
        allowed: Stages that are reachable from ``from_stage``.
    """

    kind = ErrorKind.INVALID_TRANSITION

    def __init__(
        self,
        from_stage: "ArtifactStatus",
        to_stage: "ArtifactStatus",
        message: Optional[str] = None,
        allowed: Iterable["ArtifactStatus"] = (),
    ):
        self.from_stage = from_stage
        self.to_stage = to_stage
        self.allowed = frozenset(allowed)
        super().__init__(
            message
            or f"Invalid transition from {from_stage.value} to {to_stage.value}"
        )


class BudgetExhaustedError(SyncError):
    """Raised when a bounded retry budget has no attempts left.

    Attributes:
        attempts: Attempts already consumed.
        max_attempts: The budget's cap.
    """

    kind = ErrorKind.BUDGET_EXHAUSTED

    def __init__(self, attempts: int, max_attempts: int, message: Optional[str] = None):
        self.attempts = attempts
        self.max_attempts = max_attempts
        super().__init__(
            message
            or f"Maximum attempts reached ({max_attempts}); {attempts} already used"
        )


class StaleWriteError(SyncError):
    """A pending write lost to a newer local edit or newer server content.

    Attributes:
        field: The edited field.
    """

    kind = ErrorKind.STALE_WRITE

    def __init__(self, field: str, message: Optional[str] = None):
        self.field = field
        super().__init__(message or f"Write to {field} is stale")


class NetworkFailureError(SyncError):
    """Raised when a backend request fails."""

    kind = ErrorKind.NETWORK_FAILURE


class ChannelDegradedError(SyncError):
    """Push channel subscription failed or closed."""

    kind = ErrorKind.CHANNEL_DEGRADED


class WriteAuthorityError(SyncError):
    """Another engine already holds write authority over the artifact.

    Attributes:
        artifact_id: The contested artifact.
    """

    kind = ErrorKind.WRITE_AUTHORITY

    def __init__(self, artifact_id: str):
        self.artifact_id = artifact_id
        super().__init__(
            f"Another engine already owns write authority for artifact {artifact_id}"
        )
