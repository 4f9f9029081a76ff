"""Unit tests for retry policies and bookkeeping."""

from __future__ import annotations

import pytest

from workflow_semaphore import (
    ExecutionAlreadyExistsError,
    RetryPolicy,
    StoreError,
)
from workflow_semaphore.retry import Retrier, RetryTracker, call_with_retry


class TestRetryPolicy:
    """Tests for backoff arithmetic and validation."""

    def test_delays(self) -> None:
        """Test exponential growth from the base interval."""
        policy = RetryPolicy(20, 5.0, 1.4)
        assert policy.delay(1) == pytest.approx(5.0)
        assert policy.delay(2) == pytest.approx(7.0)
        assert policy.delay(3) == pytest.approx(9.8)

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"max_attempts": -1},
            {"max_attempts": 1, "interval": -0.5},
            {"max_attempts": 1, "backoff_rate": 0.5},
        ],
    )
    def test_invalid(self, kwargs: dict) -> None:
        """Test that nonsensical policies are rejected."""
        with pytest.raises(ValueError):
            RetryPolicy(**kwargs)


class TestRetryTracker:
    """Tests for per-retrier attempt counting."""

    def test_first_matching_retrier_decides(self) -> None:
        """Test that a specific retrier shadows a generic one."""
        tracker = RetryTracker(
            [
                Retrier((ExecutionAlreadyExistsError,), RetryPolicy(1, 1.0, 5.0)),
                Retrier((Exception,), RetryPolicy(12, 1.0, 2.0)),
            ]
        )
        collision = ExecutionAlreadyExistsError("wf:1")

        assert tracker.next_delay(collision) == 1.0
        assert tracker.next_delay(collision) is None
        # The generic retrier keeps its own budget
        assert tracker.next_delay(RuntimeError("boom")) == 1.0
        assert tracker.next_delay(RuntimeError("boom")) == 2.0
        assert tracker.attempts == 3

    def test_unmatched_error(self) -> None:
        """Test that errors no retrier covers are not retried."""
        tracker = RetryTracker([Retrier((StoreError,), RetryPolicy(3))])
        assert tracker.next_delay(ValueError("bad")) is None

    def test_zero_attempts(self) -> None:
        """Test that a retrier with no attempts never retries."""
        tracker = RetryTracker([Retrier((StoreError,), RetryPolicy(0))])
        assert tracker.next_delay(StoreError("down")) is None

    def test_reset(self) -> None:
        """Test that a reset restores the full budget."""
        tracker = RetryTracker([Retrier((StoreError,), RetryPolicy(1))])
        assert tracker.next_delay(StoreError("down")) == 1.0
        assert tracker.next_delay(StoreError("down")) is None
        tracker.reset()
        assert tracker.next_delay(StoreError("down")) == 1.0


class TestCallWithRetry:
    """Tests for retrying plain callables."""

    def test_succeeds_after_failures(self) -> None:
        """Test that the call is repeated until it succeeds."""
        outcomes = [StoreError("a"), StoreError("b"), "done"]
        delays: list[float] = []

        def flaky() -> str:
            outcome = outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        result = call_with_retry(
            flaky, [Retrier((StoreError,), RetryPolicy(5, 0.5, 2.0))], delays.append
        )
        assert result == "done"
        assert delays == [0.5, 1.0]

    def test_reraises_when_exhausted(self) -> None:
        """Test that the last error surfaces once retries run out."""
        delays: list[float] = []

        def broken() -> None:
            raise StoreError("down")

        with pytest.raises(StoreError, match="down"):
            call_with_retry(
                broken, [Retrier((StoreError,), RetryPolicy(2, 1.0))], delays.append
            )
        assert delays == [1.0, 2.0]
