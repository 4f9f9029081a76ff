"""Acquire protocol.

Acquiring is a conditional update that increments the permit count and adds
an owner entry for the caller, guarded by ``count < limit`` and "the caller
holds no permit yet". A failed condition is ambiguous, so a consistent read
of the owners decides between "already ours" (a previous attempt succeeded
but its response was lost) and "limit reached", which waits and polls again.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from enum import Enum
from typing import Optional

from .config import AcquirePolicy
from .exceptions import (
    AcquireError,
    ConditionCheckFailedError,
    RecordCollisionError,
    RecordNotFoundError,
    StoreError,
)
from .machine import ExecutionContext, StateMachine
from .record import SemaphoreRecordStore
from .retry import Retrier, RetryTracker

logger = logging.getLogger(__name__)


class AcquireState(str, Enum):
    ACQUIRE_LOCK = "AcquireLock"
    INITIALIZE_LOCK_ITEM = "InitializeLockItem"
    GET_CURRENT_LOCK_RECORD = "GetCurrentLockRecord"
    WAIT_TO_GET_LOCK = "WaitToGetLock"
    LOCK_ACQUISITION_CONFIRMED = "LockAcquisitionConfirmedContinue"
    LOCK_ACQUIRED = "LockAcquired"


class AcquireLock(StateMachine[AcquireState]):
    """Acquire one permit of a semaphore for an owner token.

    Usage:
        >>> store = InMemoryRecordStore()
        >>> context = ExecutionContext('execution-1')
        >>> AcquireLock(
        ...     store,
        ...     semaphore_name='my-resource',
        ...     concurrency_limit=3,
        ...     owner_token=context.execution_id,
        ...     context=context,
        ... ).run()
        <AcquireState.LOCK_ACQUIRED: 'LockAcquired'>

    Args:
        store: Record store holding the semaphore
        semaphore_name: Name of the semaphore record
        concurrency_limit: Maximum number of permits held at once
        owner_token: Identity the permit is recorded under
        context: Execution context used for timestamps and waiting
        policy: Retry and wait configuration
    """

    start_state = AcquireState.ACQUIRE_LOCK
    terminal_states = frozenset({AcquireState.LOCK_ACQUIRED})
    error = AcquireError

    def __init__(
        self,
        store: SemaphoreRecordStore,
        *,
        semaphore_name: str,
        concurrency_limit: int,
        owner_token: str,
        context: ExecutionContext,
        policy: Optional[AcquirePolicy] = None,
    ) -> None:
        if concurrency_limit < 1:
            raise ValueError("Concurrency limit must be at least 1")
        super().__init__(
            semaphore_name=semaphore_name,
            owner_token=owner_token,
            context=context,
        )
        self._store = store
        self._limit = concurrency_limit
        self._policy = policy or AcquirePolicy()
        self._previous: Optional[AcquireState] = None
        self.wait_cycles = 0
        self.acquired_at: Optional[str] = None

    def _handlers(self) -> Mapping[AcquireState, Callable[[], AcquireState]]:
        return {
            AcquireState.ACQUIRE_LOCK: self._acquire_lock,
            AcquireState.INITIALIZE_LOCK_ITEM: self._initialize_lock_item,
            AcquireState.GET_CURRENT_LOCK_RECORD: self._get_current_lock_record,
            AcquireState.WAIT_TO_GET_LOCK: self._wait_to_get_lock,
            AcquireState.LOCK_ACQUISITION_CONFIRMED: self._lock_acquisition_confirmed,
        }

    def _tracker(self, state: AcquireState) -> RetryTracker:
        return RetryTracker([Retrier((StoreError,), self._policy.retry)])

    def transition(self) -> AcquireState:
        previous = self.state
        next_state = super().transition()
        self._previous = previous
        return next_state

    def _acquire_lock(self) -> AcquireState:
        acquired_at = self.context.now()
        try:
            self._store.acquire_permit(
                self.semaphore_name, self.owner_token, self._limit, acquired_at
            )
        except RecordNotFoundError as error:
            if self._previous is AcquireState.INITIALIZE_LOCK_ITEM:
                # Initializing did not stick; spend the retry budget on it
                self._backoff(
                    AcquireState.ACQUIRE_LOCK,
                    StoreError(f"record missing after initialize: {error}"),
                )
            logger.info(
                "Semaphore %s has no record yet, initializing", self.semaphore_name
            )
            return AcquireState.INITIALIZE_LOCK_ITEM
        except ConditionCheckFailedError:
            return AcquireState.GET_CURRENT_LOCK_RECORD
        except StoreError as error:
            return self._backoff(AcquireState.ACQUIRE_LOCK, error)

        self.acquired_at = acquired_at
        logger.info(
            "Acquired permit of %s for %s", self.semaphore_name, self.owner_token
        )
        return AcquireState.LOCK_ACQUIRED

    def _initialize_lock_item(self) -> AcquireState:
        try:
            self._store.initialize(self.semaphore_name)
        except RecordCollisionError:
            logger.debug(
                "Semaphore %s was initialized concurrently", self.semaphore_name
            )
        except StoreError as error:
            self._backoff(AcquireState.ACQUIRE_LOCK, error)
        return AcquireState.ACQUIRE_LOCK

    def _get_current_lock_record(self) -> AcquireState:
        try:
            owners = self._store.get_owners(self.semaphore_name)
        except RecordNotFoundError:
            owners = {}
        except StoreError as error:
            return self._backoff(AcquireState.GET_CURRENT_LOCK_RECORD, error)

        if self.owner_token in owners:
            self.acquired_at = owners[self.owner_token]
            return AcquireState.LOCK_ACQUISITION_CONFIRMED
        return AcquireState.WAIT_TO_GET_LOCK

    def _wait_to_get_lock(self) -> AcquireState:
        max_cycles = self._policy.max_wait_cycles
        if max_cycles is not None and self.wait_cycles >= max_cycles:
            raise self.error(
                semaphore_name=self.semaphore_name,
                owner_token=self.owner_token,
                state=AcquireState.WAIT_TO_GET_LOCK.value,
                attempts=self.wait_cycles,
                reason=f"no permit freed up after {self.wait_cycles} waits",
            )
        self.wait_cycles += 1
        logger.info(
            "Semaphore %s is at its limit of %d, %s waits %.2fs",
            self.semaphore_name,
            self._limit,
            self.owner_token,
            self._policy.wait_interval,
        )
        self.context.sleep(self._policy.wait_interval)
        # A new polling round gets a fresh retry budget
        self._reset(AcquireState.ACQUIRE_LOCK)
        self._reset(AcquireState.GET_CURRENT_LOCK_RECORD)
        return AcquireState.ACQUIRE_LOCK

    def _lock_acquisition_confirmed(self) -> AcquireState:
        logger.info(
            "Permit of %s was already held by %s",
            self.semaphore_name,
            self.owner_token,
        )
        return AcquireState.LOCK_ACQUIRED
