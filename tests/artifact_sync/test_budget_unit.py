"""Unit and property tests for RetryBudget."""

import pytest
from hypothesis import given, strategies as st

from src.artifact_sync.budget import IMAGE_REGENERATION_BUDGET, RetryBudget
from src.artifact_sync.errors import BudgetExhaustedError, ErrorKind


def test_image_budget_allows_three_attempts():
    assert IMAGE_REGENERATION_BUDGET.max_attempts == 3
    assert IMAGE_REGENERATION_BUDGET.try_consume(1) == 2
    assert IMAGE_REGENERATION_BUDGET.try_consume(2) == 3


def test_exhausted_budget_raises():
    with pytest.raises(BudgetExhaustedError) as exc_info:
        IMAGE_REGENERATION_BUDGET.try_consume(3)

    error = exc_info.value
    assert error.kind == ErrorKind.BUDGET_EXHAUSTED
    assert error.attempts == 3
    assert error.max_attempts == 3


def test_invalid_arguments():
    with pytest.raises(ValueError):
        RetryBudget(max_attempts=0)
    with pytest.raises(ValueError):
        IMAGE_REGENERATION_BUDGET.try_consume(-1)


@given(st.integers(min_value=1, max_value=10), st.integers(min_value=0, max_value=20))
def test_consume_never_exceeds_cap(max_attempts, attempts):
    budget = RetryBudget(max_attempts=max_attempts)
    if attempts < max_attempts:
        assert budget.can_consume(attempts)
        new_count = budget.try_consume(attempts)
        assert new_count == attempts + 1
        assert new_count <= max_attempts
        assert budget.remaining(new_count) == budget.remaining(attempts) - 1
    else:
        assert not budget.can_consume(attempts)
        assert budget.remaining(attempts) == 0
        with pytest.raises(BudgetExhaustedError):
            budget.try_consume(attempts)
