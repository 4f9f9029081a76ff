"""Retry bookkeeping shared by the protocol state machines and the harness.

A state declares an ordered list of retriers. The first retrier whose error
types match a failure decides whether to retry it, and each retrier keeps its
own attempt count.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from typing import Optional, TypeVar

from .config import RetryPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Retrier:
    def __init__(
        self,
        errors: tuple[type[BaseException], ...],
        policy: RetryPolicy,
    ) -> None:
        self.errors = errors
        self.policy = policy

    def matches(self, error: BaseException) -> bool:
        return isinstance(error, self.errors)

    def __repr__(self) -> str:
        names = ", ".join(e.__name__ for e in self.errors)
        return f"<{self.__class__.__name__} errors=({names}) policy={self.policy}>"


class RetryTracker:
    """Attempt counts for one state's retriers."""

    def __init__(self, retriers: Sequence[Retrier]) -> None:
        self._retriers = tuple(retriers)
        self._attempts = [0] * len(self._retriers)

    @property
    def attempts(self) -> int:
        """Total retries spent since the last reset."""
        return sum(self._attempts)

    def next_delay(self, error: BaseException) -> Optional[float]:
        """Return the wait before retrying ``error``, or None to give up."""
        for index, retrier in enumerate(self._retriers):
            if not retrier.matches(error):
                continue
            if self._attempts[index] >= retrier.policy.max_attempts:
                return None
            self._attempts[index] += 1
            return retrier.policy.delay(self._attempts[index])
        return None

    def reset(self) -> None:
        self._attempts = [0] * len(self._retriers)


def call_with_retry(
    fn: Callable[[], T],
    retriers: Sequence[Retrier],
    sleep: Callable[[float], None],
) -> T:
    """Call ``fn`` until it succeeds or its retriers give up.

    The last error is re-raised once no retrier accepts it.
    """
    tracker = RetryTracker(retriers)
    while True:
        try:
            return fn()
        except Exception as error:
            delay = tracker.next_delay(error)
            if delay is None:
                raise
            logger.warning(
                "Retrying after %s (retry %d, waiting %.2fs)",
                error.__class__.__name__,
                tracker.attempts,
                delay,
            )
            sleep(delay)
