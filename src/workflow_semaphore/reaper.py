"""Reaper protocol: reclaim a permit left behind by a dead execution.

Runs out of band after an execution failed, timed out or was aborted. If the
execution's token still has an owner entry, the release protocol runs on its
behalf. Nothing waits on this path, so its retry budget is the largest.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from enum import Enum
from typing import Optional

from .config import CleanupPolicy
from .exceptions import CleanupError, RecordNotFoundError, ReleaseError, StoreError
from .machine import ExecutionContext, StateMachine
from .record import SemaphoreRecordStore
from .release import ReleaseLock
from .retry import Retrier, RetryTracker

logger = logging.getLogger(__name__)


class ReaperState(str, Enum):
    GET_CURRENT_LOCK_ITEM = "GetCurrentLockItem"
    CHECK_IF_LOCK_IS_HELD = "CheckIfLockIsHeld"
    CLEAN_UP_LOCK = "CleanUpLock"
    LOCK_RELEASED = "LockReleased"
    NOTHING_TO_CLEAN_UP = "NothingToCleanUp"


class Reaper(StateMachine[ReaperState]):
    """Release the permit of ``owner_token`` if it still holds one.

    ``context`` belongs to the cleanup execution itself, while
    ``owner_token`` is the identity of the execution that died.
    """

    start_state = ReaperState.GET_CURRENT_LOCK_ITEM
    terminal_states = frozenset(
        {ReaperState.LOCK_RELEASED, ReaperState.NOTHING_TO_CLEAN_UP}
    )
    error = CleanupError

    def __init__(
        self,
        store: SemaphoreRecordStore,
        *,
        semaphore_name: str,
        owner_token: str,
        context: ExecutionContext,
        policy: Optional[CleanupPolicy] = None,
    ) -> None:
        super().__init__(
            semaphore_name=semaphore_name,
            owner_token=owner_token,
            context=context,
        )
        self._store = store
        self._policy = policy or CleanupPolicy()
        self._owners: dict[str, str] = {}

    def _handlers(self) -> Mapping[ReaperState, Callable[[], ReaperState]]:
        return {
            ReaperState.GET_CURRENT_LOCK_ITEM: self._get_current_lock_item,
            ReaperState.CHECK_IF_LOCK_IS_HELD: self._check_if_lock_is_held,
            ReaperState.CLEAN_UP_LOCK: self._clean_up_lock,
        }

    def _tracker(self, state: ReaperState) -> RetryTracker:
        return RetryTracker([Retrier((StoreError,), self._policy.retry)])

    def _get_current_lock_item(self) -> ReaperState:
        try:
            self._owners = self._store.get_owners(self.semaphore_name)
        except RecordNotFoundError:
            self._owners = {}
        except StoreError as error:
            return self._backoff(ReaperState.GET_CURRENT_LOCK_ITEM, error)
        return ReaperState.CHECK_IF_LOCK_IS_HELD

    def _check_if_lock_is_held(self) -> ReaperState:
        if self.owner_token in self._owners:
            logger.warning(
                "%s died holding a permit of %s, cleaning up",
                self.owner_token,
                self.semaphore_name,
            )
            return ReaperState.CLEAN_UP_LOCK
        logger.info(
            "%s holds no permit of %s, nothing to clean up",
            self.owner_token,
            self.semaphore_name,
        )
        return ReaperState.NOTHING_TO_CLEAN_UP

    def _clean_up_lock(self) -> ReaperState:
        release = ReleaseLock(
            self._store,
            semaphore_name=self.semaphore_name,
            owner_token=self.owner_token,
            context=self.context,
            retry=self._policy.retry,
        )
        try:
            release.run()
        except ReleaseError as error:
            raise self.error(
                semaphore_name=self.semaphore_name,
                owner_token=self.owner_token,
                state=ReaperState.CLEAN_UP_LOCK.value,
                attempts=error.attempts,
                reason=str(error),
            ) from error
        return ReaperState.LOCK_RELEASED
