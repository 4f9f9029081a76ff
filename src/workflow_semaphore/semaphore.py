"""Distributed semaphore wiring.

Builds the pieces that make up one deployed semaphore: the record store, the
semaphore workflow wrapping the protected work, the cleanup workflow, the
rule that connects abnormal endings to cleanup, and the load-test harness.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, Optional

from .config import SemaphoreSettings, get_settings
from .harness import ConcurrencyProbe, LoadTestHarness, LoadTestReport
from .log import configure_logging
from .orchestrator import (
    CleanupRule,
    Execution,
    SemaphoreCleanup,
    SemaphoreWorkflow,
)
from .record import SemaphoreRecord, SemaphoreRecordStore
from .redis_store import RedisRecordStore


class DistributedSemaphore:
    """Distributed counting semaphore guarding ``work``.

    Usage:
        >>> semaphore = DistributedSemaphore(do_work)
        >>> execution = semaphore.start_execution({'job': 1})
        >>> execution.result()

        >>> # Check the limit holds under load
        >>> report = semaphore.load_test(fan_out=100)
        >>> assert report.peak_holders <= semaphore.concurrency_limit

    Args:
        work: Protected work, called with each execution's input
        settings: Configuration (default: loaded from the environment); its
            log level is applied to the root logger
        store: Record store (default: Redis at ``settings.redis_url``)
        timeout: Seconds an execution may run before it times out
    """

    def __init__(
        self,
        work: Callable[[Any], Any],
        *,
        settings: Optional[SemaphoreSettings] = None,
        store: Optional[SemaphoreRecordStore] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.settings = settings or get_settings()
        configure_logging(self.settings.log_level)

        if store is None:
            store = RedisRecordStore.from_url(
                self.settings.redis_url,
                key_prefix=self.settings.key_prefix,
                lock_timeout=self.settings.lock_timeout,
            )
        self.store = store

        self.probe = ConcurrencyProbe(work)
        self.semaphore = SemaphoreWorkflow(
            store,
            work=self.probe,
            semaphore_name=self.settings.name,
            concurrency_limit=self.settings.concurrency_limit,
            acquire_policy=self.settings.acquire_policy(),
            release_policy=self.settings.release_policy(),
            timeout=timeout,
        )
        self.cleanup = SemaphoreCleanup(
            store,
            semaphore_name=self.settings.name,
            policy=self.settings.cleanup_policy(),
        )
        self.rule = CleanupRule(self.semaphore, self.cleanup)
        self.testing = LoadTestHarness(
            self.semaphore,
            policy=self.settings.load_test_policy(),
            probe=self.probe,
        )

    @property
    def name(self) -> str:
        return self.settings.name

    @property
    def concurrency_limit(self) -> int:
        return self.settings.concurrency_limit

    def start_execution(
        self, input: Any = None, *, name: Optional[str] = None
    ) -> Execution:
        return self.semaphore.start_execution(input, name=name)

    def load_test(
        self, started_by: Optional[str] = None, *, fan_out: Optional[int] = None
    ) -> LoadTestReport:
        return self.testing.run(started_by, fan_out=fan_out)

    def record(self) -> SemaphoreRecord:
        """Return the current semaphore record."""
        return self.store.get(self.settings.name)

    def __repr__(self) -> str:
        return (
            f"<{self.__class__.__name__} "
            f"name={self.name!r} "
            f"limit={self.concurrency_limit}>"
        )
