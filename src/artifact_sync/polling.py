"""Polling interval derivation.

Polling is the safety net behind the push channel: it must catch every
status change the push channel misses, and stop as soon as nothing is
expected to change. The interval is a pure function of the current artifact
state and is re-evaluated after every applied update, so leaving a
processing stage stops the loop immediately.

Interval rules:
- Processing stages (research, foundations, writing, humanity_checking,
  creating_visuals): processing interval (2000 ms)
- draft, only while generation was just requested: draft interval (3000 ms)
- ready without content yet: processing interval (transient catch-up)
- Everything else: None (stop polling)
"""

from typing import Optional

from src.artifact_sync.state.models import (
    Artifact,
    ArtifactStatus,
    is_processing_stage,
)


PROCESSING_POLL_INTERVAL_MS = 2000
DRAFT_POLL_INTERVAL_MS = 3000


class PollingScheduler:
    """Derives the refetch interval for an artifact.

    Attributes:
        processing_interval_ms: Interval while the backend is working.
        draft_interval_ms: Interval while waiting for draft → research.

    Example:
        >>> scheduler = PollingScheduler()
        >>> scheduler.next_interval(Artifact(id="a1", status=ArtifactStatus.RESEARCH))
        2000
        >>> scheduler.next_interval(Artifact(id="a1", status=ArtifactStatus.PUBLISHED)) is None
        True
    """

    def __init__(
        self,
        processing_interval_ms: int = PROCESSING_POLL_INTERVAL_MS,
        draft_interval_ms: int = DRAFT_POLL_INTERVAL_MS,
    ):
        if processing_interval_ms <= 0 or draft_interval_ms <= 0:
            raise ValueError("poll intervals must be positive")
        self.processing_interval_ms = processing_interval_ms
        self.draft_interval_ms = draft_interval_ms

    def next_interval(
        self,
        artifact: Optional[Artifact],
        generation_requested: bool = False,
    ) -> Optional[int]:
        """Return the poll interval in milliseconds, or None to stop polling.

        Args:
            artifact: The current authoritative record, or None if nothing
                      has been fetched yet.
            generation_requested: Set by the caller right after requesting
                      generation, to catch the draft → research transition
                      before the push channel confirms it.
        """
        if artifact is None:
            return None

        status = artifact.status

        if is_processing_stage(status):
            return self.processing_interval_ms

        if status == ArtifactStatus.DRAFT:
            return self.draft_interval_ms if generation_requested else None

        if status == ArtifactStatus.READY and not artifact.has_content:
            return self.processing_interval_ms

        return None

    @staticmethod
    def should_poll_research(artifact: Optional[Artifact]) -> bool:
        """The research list only changes while the artifact is in research."""
        return artifact is not None and artifact.status == ArtifactStatus.RESEARCH


def next_interval(
    artifact: Optional[Artifact],
    generation_requested: bool = False,
) -> Optional[int]:
    """Module-level shortcut using the default intervals."""
    return _DEFAULT_SCHEDULER.next_interval(artifact, generation_requested)


_DEFAULT_SCHEDULER = PollingScheduler()
