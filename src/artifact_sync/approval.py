"""Approval gates for pipeline stages that wait on a human decision.

A gate models a stage that has finished processing but must not progress
until the user approves. The user may first submit an edited version of the
gated payload (an edited skeleton, a selection of image descriptions); the
approval then sends whatever payload is current.

Gate lifecycle:
    pending → [submit_edits] → submitting → approved | approved_with_edits
    submitting → pending on failure (error surfaced, never retried)

Concurrent approve() calls share one in-flight request: while the gate is
``submitting`` further callers await the same result instead of issuing a
second request.
"""

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Generic, Optional, TypeVar

from src.artifact_sync.errors import NetworkFailureError, SyncError


logger = logging.getLogger(__name__)

P = TypeVar("P")
R = TypeVar("R")


class GateState(str, Enum):
    """States of an approval gate.

    Attributes:
        PENDING: Waiting for the user; edits may be submitted.
        SUBMITTING: Approval request in flight; re-entry disabled.
        APPROVED: Approved with the original payload.
        APPROVED_WITH_EDITS: Approved with a user-edited payload.
    """

    PENDING = "pending"
    SUBMITTING = "submitting"
    APPROVED = "approved"
    APPROVED_WITH_EDITS = "approved_with_edits"


class ApprovalGate(Generic[P, R]):
    """Single-flight approval for one gated stage.

    Attributes:
        name: Gate name used in logs and snapshots.
        state: Current gate state.

    Example:
        >>> gate = ApprovalGate("foundations", submitter=post_approval)
        >>> gate.submit_edits("# Edited skeleton")
        True
        >>> await gate.approve()
        >>> gate.state
        <GateState.APPROVED_WITH_EDITS: 'approved_with_edits'>
    """

    def __init__(
        self,
        name: str,
        submitter: Callable[[Optional[P]], Awaitable[R]],
    ):
        """Initialize the gate.

        Args:
            name: Gate name.
            submitter: Coroutine function that sends the approval to the
                       backend. Receives the edited payload, or None when
                       the user approved without edits.
        """
        self.name = name
        self._submitter = submitter
        self._state = GateState.PENDING
        self._edits: Optional[P] = None
        self._inflight: Optional["asyncio.Future[R]"] = None
        self._result: Optional[R] = None

    @property
    def state(self) -> GateState:
        return self._state

    @property
    def edits(self) -> Optional[P]:
        return self._edits

    @property
    def is_submitting(self) -> bool:
        return self._state == GateState.SUBMITTING

    def submit_edits(self, payload: P) -> bool:
        """Store an edited payload without changing the pipeline stage.

        Args:
            payload: The edited version of the gated artifact.

        Returns:
            bool: True if stored; False when the gate is submitting or
                  already approved.
        """
        if self._state != GateState.PENDING:
            logger.warning(
                "Ignoring edits for gate that is not pending",
                extra={"gate": self.name, "state": self._state.value},
            )
            return False
        self._edits = payload
        return True

    async def approve(self) -> R:
        """Send the (possibly edited) payload and approve the gate.

        Idempotent: a call made while another is in flight awaits the same
        request, and a call after success returns the stored result.

        Returns:
            The submitter's result.

        Raises:
            NetworkFailureError: If the request fails. The gate returns to
                                 ``pending`` and keeps the edited payload.
        """
        if self._state == GateState.SUBMITTING and self._inflight is not None:
            logger.debug("Approval already in flight", extra={"gate": self.name})
            return await asyncio.shield(self._inflight)

        if self._state in (GateState.APPROVED, GateState.APPROVED_WITH_EDITS):
            return self._result  # type: ignore[return-value]

        loop = asyncio.get_running_loop()
        inflight: "asyncio.Future[R]" = loop.create_future()
        self._inflight = inflight
        self._state = GateState.SUBMITTING
        had_edits = self._edits is not None

        logger.info(
            "Submitting approval",
            extra={"gate": self.name, "has_edits": had_edits},
        )

        try:
            result = await self._submitter(self._edits)
        except asyncio.CancelledError:
            self._state = GateState.PENDING
            inflight.cancel()
            raise
        except Exception as exc:
            self._state = GateState.PENDING
            error = exc if isinstance(exc, SyncError) else NetworkFailureError(
                f"{self.name} approval failed: {exc}"
            )
            logger.warning(
                "Approval failed",
                extra={"gate": self.name, "error": str(exc)},
            )
            inflight.set_exception(error)
            # Mark retrieved; concurrent waiters still receive it
            inflight.exception()
            if error is exc:
                raise
            raise error from exc
        finally:
            if self._inflight is inflight and inflight.done():
                self._inflight = None

        self._result = result
        self._state = (
            GateState.APPROVED_WITH_EDITS if had_edits else GateState.APPROVED
        )
        inflight.set_result(result)
        self._inflight = None
        logger.info(
            "Approval accepted",
            extra={"gate": self.name, "state": self._state.value},
        )
        return result

    def reset(self) -> None:
        """Return to ``pending`` and drop edits, e.g. when the stage is re-entered."""
        if self._state == GateState.SUBMITTING:
            return
        self._state = GateState.PENDING
        self._edits = None
        self._result = None
