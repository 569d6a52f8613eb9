"""Bounded retry budgets.

A RetryBudget caps how many times a resource may be (re)generated. The
counter itself lives on the resource (e.g. ``FinalImage.generation_attempts``);
the budget only decides whether one more attempt is allowed and what the
counter becomes afterwards. Callers must consult the budget before issuing
any request so an exhausted budget never reaches the backend.
"""

import logging
from dataclasses import dataclass

from src.artifact_sync.errors import BudgetExhaustedError
from src.artifact_sync.state.models import MAX_IMAGE_ATTEMPTS


logger = logging.getLogger(__name__)


# Image regeneration cap (initial generation counts as the first attempt)
DEFAULT_MAX_IMAGE_ATTEMPTS = MAX_IMAGE_ATTEMPTS


@dataclass(frozen=True)
class RetryBudget:
    """Immutable cap on attempts for a single resource.

    Attributes:
        max_attempts: Maximum number of attempts, including the first one.

    Example:
        >>> budget = RetryBudget(max_attempts=3)
        >>> budget.remaining(2)
        1
        >>> budget.try_consume(2)
        3
        >>> budget.try_consume(3)
        Traceback (most recent call last):
        ...
        src.artifact_sync.errors.BudgetExhaustedError: Maximum attempts reached (3); 3 already used
    """

    max_attempts: int

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def remaining(self, attempts: int) -> int:
        """Attempts still available given ``attempts`` already consumed."""
        return max(0, self.max_attempts - attempts)

    def can_consume(self, attempts: int) -> bool:
        """Whether one more attempt is allowed.

        UI layers use this to disable the regenerate action.
        """
        return self.remaining(attempts) > 0

    def try_consume(self, attempts: int) -> int:
        """Consume one attempt.

        Args:
            attempts: Attempts already consumed.

        Returns:
            int: The new counter value (``attempts + 1``).

        Raises:
            BudgetExhaustedError: If no attempts remain.
            ValueError: If ``attempts`` is negative.
        """
        if attempts < 0:
            raise ValueError("attempts cannot be negative")
        if not self.can_consume(attempts):
            logger.info(
                "Retry budget exhausted",
                extra={"attempts": attempts, "max_attempts": self.max_attempts},
            )
            raise BudgetExhaustedError(attempts, self.max_attempts)
        return attempts + 1


IMAGE_REGENERATION_BUDGET = RetryBudget(max_attempts=DEFAULT_MAX_IMAGE_ATTEMPTS)
