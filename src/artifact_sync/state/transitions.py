"""Status transition validation.

Wraps the VALID_TRANSITIONS predicates with the error reporting the engine
needs: a rejected transition raises InvalidTransitionError and is logged,
and the caller's state is left untouched.
"""

import logging

from src.artifact_sync.errors import InvalidTransitionError
from src.artifact_sync.state.models import (
    ArtifactStatus,
    allowed_next,
    is_legal_transition,
)


logger = logging.getLogger(__name__)


def validate_transition(
    from_stage: ArtifactStatus,
    to_stage: ArtifactStatus,
    artifact_id: str = "",
) -> None:
    """Validate a status transition against the pipeline graph.

    Args:
        from_stage: The current stage.
        to_stage: The requested stage.
        artifact_id: Artifact the request is for, used for logging only.

    Raises:
        InvalidTransitionError: If ``to_stage`` is not reachable from
            ``from_stage`` in one step. Self transitions are always invalid.

    Example:
        >>> validate_transition(ArtifactStatus.READY, ArtifactStatus.PUBLISHED)
        >>> validate_transition(ArtifactStatus.READY, ArtifactStatus.DRAFT)
        Traceback (most recent call last):
        ...
        src.artifact_sync.errors.InvalidTransitionError: Invalid transition from ready to draft
    """
    if is_legal_transition(from_stage, to_stage):
        return

    logger.warning(
        "Invalid status transition attempted",
        extra={
            "artifact_id": artifact_id,
            "from_stage": from_stage.value,
            "to_stage": to_stage.value,
        },
    )
    raise InvalidTransitionError(
        from_stage, to_stage, allowed=allowed_next(from_stage)
    )


def is_demotion(from_stage: ArtifactStatus, to_stage: ArtifactStatus) -> bool:
    """True for the published → ready edge taken when published content is edited."""
    return from_stage == ArtifactStatus.PUBLISHED and to_stage == ArtifactStatus.READY
