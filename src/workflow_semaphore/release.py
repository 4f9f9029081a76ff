"""Release protocol.

Releasing is a conditional update that decrements the permit count and
removes the owner's entry, guarded by "the owner holds a permit". A failed
condition means there is nothing to release, which is a success.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from enum import Enum
from typing import Optional

from .config import ReleasePolicy, RetryPolicy
from .exceptions import ConditionCheckFailedError, ReleaseError, StoreError
from .machine import ExecutionContext, StateMachine
from .record import SemaphoreRecordStore
from .retry import Retrier, RetryTracker

logger = logging.getLogger(__name__)


class ReleaseState(str, Enum):
    RELEASE_LOCK = "ReleaseLock"
    LOCK_NOT_FOUND_CONTINUE = "LockNotFoundContinue"
    LOCK_RELEASED = "LockReleased"


class ReleaseLock(StateMachine[ReleaseState]):
    """Release the permit ``owner_token`` holds, if any.

    Args:
        store: Record store holding the semaphore
        semaphore_name: Name of the semaphore record
        owner_token: Identity the permit was recorded under
        context: Execution context used for waiting
        retry: Backoff for transient store errors
    """

    start_state = ReleaseState.RELEASE_LOCK
    terminal_states = frozenset({ReleaseState.LOCK_RELEASED})
    error = ReleaseError

    def __init__(
        self,
        store: SemaphoreRecordStore,
        *,
        semaphore_name: str,
        owner_token: str,
        context: ExecutionContext,
        retry: Optional[RetryPolicy] = None,
    ) -> None:
        super().__init__(
            semaphore_name=semaphore_name,
            owner_token=owner_token,
            context=context,
        )
        self._store = store
        self._retry = retry or ReleasePolicy().retry
        self.released = False

    def _handlers(self) -> Mapping[ReleaseState, Callable[[], ReleaseState]]:
        return {
            ReleaseState.RELEASE_LOCK: self._release_lock,
            ReleaseState.LOCK_NOT_FOUND_CONTINUE: self._lock_not_found_continue,
        }

    def _tracker(self, state: ReleaseState) -> RetryTracker:
        return RetryTracker([Retrier((StoreError,), self._retry)])

    def _release_lock(self) -> ReleaseState:
        try:
            self._store.release_permit(self.semaphore_name, self.owner_token)
        except ConditionCheckFailedError:
            return ReleaseState.LOCK_NOT_FOUND_CONTINUE
        except StoreError as error:
            return self._backoff(ReleaseState.RELEASE_LOCK, error)

        self.released = True
        logger.info(
            "Released permit of %s held by %s", self.semaphore_name, self.owner_token
        )
        return ReleaseState.LOCK_RELEASED

    def _lock_not_found_continue(self) -> ReleaseState:
        logger.info(
            "%s holds no permit of %s, nothing to release",
            self.owner_token,
            self.semaphore_name,
        )
        return ReleaseState.LOCK_RELEASED
