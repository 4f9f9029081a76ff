"""Finite-state machine runtime for the semaphore protocols.

Each protocol declares an enum of states and one handler per non-terminal
state. A handler performs at most one store call and returns the next state;
``run`` drives handlers until a terminal state is reached. Suspension only
happens in ``ExecutionContext.sleep``, which is also where aborts and
deadlines take effect.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Mapping
from datetime import datetime, timezone
from enum import Enum
from typing import ClassVar, Generic, Optional, TypeVar

from .exceptions import (
    ExecutionAbortedError,
    ExecutionTimedOutError,
    ProtocolError,
)
from .retry import RetryTracker

logger = logging.getLogger(__name__)

S = TypeVar("S", bound=Enum)


def utc_timestamp() -> str:
    """Return the current time as ISO-8601 UTC with a trailing ``Z``."""
    now = datetime.now(timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class ExecutionContext:
    """What the orchestrator provides to a running execution.

    Args:
        execution_id: Stable identity of the execution
        clock: Returns the timestamp recorded with state transitions
        timeout: Seconds the execution may run before it times out
        abort_event: Set to abort the execution at its next suspension point
    """

    def __init__(
        self,
        execution_id: str,
        *,
        clock: Callable[[], str] = utc_timestamp,
        timeout: Optional[float] = None,
        abort_event: Optional[threading.Event] = None,
    ) -> None:
        self.execution_id = execution_id
        self.timeout = timeout
        self.abort_event = abort_event or threading.Event()
        self._clock = clock
        self._deadline = None if timeout is None else time.monotonic() + timeout

    def now(self) -> str:
        return self._clock()

    def remaining(self) -> Optional[float]:
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def checkpoint(self) -> None:
        """Raise if the execution was aborted or ran out of time."""
        if self.abort_event.is_set():
            raise ExecutionAbortedError(self.execution_id)
        if self._deadline is not None and time.monotonic() >= self._deadline:
            raise ExecutionTimedOutError(self.execution_id, self.timeout)

    def sleep(self, seconds: float) -> None:
        """Wait cooperatively; an abort or the deadline cuts the wait short."""
        self.checkpoint()
        remaining = self.remaining()
        if remaining is not None and remaining < seconds:
            self.abort_event.wait(remaining)
        else:
            self.abort_event.wait(seconds)
        self.checkpoint()

    def abort(self) -> None:
        self.abort_event.set()

    def __repr__(self) -> str:
        return (
            f"<{self.__class__.__name__} "
            f"execution_id={self.execution_id!r} "
            f"timeout={self.timeout}>"
        )


class StateMachine(Generic[S]):
    """Base class of the protocol state machines.

    Subclasses set ``start_state``, ``terminal_states`` and ``error``, and
    return their handlers from ``_handlers``.
    """

    start_state: ClassVar[Enum]
    terminal_states: ClassVar[frozenset]
    error: ClassVar[type[ProtocolError]] = ProtocolError

    def __init__(
        self,
        *,
        semaphore_name: str,
        owner_token: str,
        context: ExecutionContext,
    ) -> None:
        self.semaphore_name = semaphore_name
        self.owner_token = owner_token
        self.context = context
        self.state: S = self.start_state  # type: ignore[assignment]
        self._trackers: dict[S, RetryTracker] = {}

    def _handlers(self) -> Mapping[S, Callable[[], S]]:
        raise NotImplementedError

    def _tracker(self, state: S) -> RetryTracker:
        raise NotImplementedError

    @property
    def done(self) -> bool:
        return self.state in self.terminal_states

    def transition(self) -> S:
        """Run the handler of the current state and move to the next one."""
        self.context.checkpoint()
        handler = self._handlers()[self.state]
        next_state = handler()
        logger.debug(
            "%s %s: %s -> %s",
            self.__class__.__name__,
            self.semaphore_name,
            self.state.value,
            next_state.value,
        )
        self.state = next_state
        return next_state

    def run(self) -> S:
        """Drive the machine to a terminal state and return it."""
        while not self.done:
            self.transition()
        return self.state

    def _backoff(self, state: S, error: Exception) -> S:
        """Wait before retrying ``state`` after ``error``, or fail."""
        if state not in self._trackers:
            self._trackers[state] = self._tracker(state)
        tracker = self._trackers[state]
        delay = tracker.next_delay(error)
        if delay is None:
            logger.error(
                "%s %s for %s gave up in %s after %d retries: %s",
                self.__class__.__name__,
                self.semaphore_name,
                self.owner_token,
                state.value,
                tracker.attempts,
                error,
            )
            raise self.error(
                semaphore_name=self.semaphore_name,
                owner_token=self.owner_token,
                state=state.value,
                attempts=tracker.attempts,
                reason=str(error),
            ) from error
        logger.warning(
            "%s %s: %s failed with %s, retry %d in %.2fs",
            self.__class__.__name__,
            self.semaphore_name,
            state.value,
            error.__class__.__name__,
            tracker.attempts,
            delay,
        )
        self.context.sleep(delay)
        return state

    def _reset(self, state: S) -> None:
        tracker = self._trackers.get(state)
        if tracker is not None:
            tracker.reset()

    def __repr__(self) -> str:
        return (
            f"<{self.__class__.__name__} "
            f"semaphore={self.semaphore_name!r} "
            f"owner={self.owner_token!r} "
            f"state={self.state.value}>"
        )
