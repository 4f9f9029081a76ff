"""Load-test harness for the semaphore workflow.

Starts many executions of one workflow at once and waits for all of them,
so the concurrency limit can be checked under contention.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Optional

from pottery import ContextTimer

from .config import LoadTestPolicy
from .exceptions import ExecutionAlreadyExistsError
from .orchestrator import Execution, ExecutionStatus, Workflow
from .retry import Retrier, call_with_retry

logger = logging.getLogger(__name__)


class ConcurrencyProbe:
    """Wrap protected work and record how many calls overlap.

    Usage:
        >>> probe = ConcurrencyProbe(do_work)
        >>> workflow = SemaphoreWorkflow(store, work=probe, ...)
        >>> ...
        >>> assert probe.peak <= workflow.concurrency_limit
    """

    def __init__(self, work: Optional[Callable[[Any], Any]] = None) -> None:
        self._work = work or (lambda input: input)
        self._lock = threading.Lock()
        self.active = 0
        self.peak = 0
        self.calls = 0

    def __call__(self, input: Any) -> Any:
        with self._lock:
            self.active += 1
            self.calls += 1
            self.peak = max(self.peak, self.active)
        try:
            return self._work(input)
        finally:
            with self._lock:
                self.active -= 1

    def __repr__(self) -> str:
        return (
            f"<{self.__class__.__name__} "
            f"active={self.active} peak={self.peak} calls={self.calls}>"
        )


@dataclass
class LoadTestReport:
    requested: int
    succeeded: int
    failed: int
    elapsed_ms: int
    peak_holders: Optional[int] = None


class LoadTestHarness:
    """Fan out concurrent executions of ``workflow``.

    Every child gets its own execution name and therefore its own owner
    token. Starting a child retries name collisions once and any other
    start error with a longer backoff. A child that fails is counted and
    otherwise ignored; outputs are discarded.

    Args:
        workflow: Workflow to start children of
        policy: Fan-out and start retry configuration
        probe: Probe wrapping the workflow's work, reported as peak holders
        sleep: Used to wait between start retries
    """

    def __init__(
        self,
        workflow: Workflow,
        *,
        policy: Optional[LoadTestPolicy] = None,
        probe: Optional[ConcurrencyProbe] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.workflow = workflow
        self.policy = policy or LoadTestPolicy()
        self.probe = probe
        self._sleep = sleep

    def run(
        self, started_by: Optional[str] = None, *, fan_out: Optional[int] = None
    ) -> LoadTestReport:
        started_by = started_by or uuid.uuid4().hex
        if fan_out is None:
            fan_out = self.policy.fan_out
        if fan_out < 1:
            raise ValueError("fan_out must be at least 1")

        logger.info(
            "Starting %d executions of %s for %s",
            fan_out,
            self.workflow.name,
            started_by,
        )
        with ContextTimer() as timer:
            with ThreadPoolExecutor(max_workers=fan_out) as pool:
                results = list(
                    pool.map(
                        lambda iteration: self._run_child(started_by, iteration),
                        range(1, fan_out + 1),
                    )
                )
            elapsed_ms = timer.elapsed()

        succeeded = sum(results)
        report = LoadTestReport(
            requested=fan_out,
            succeeded=succeeded,
            failed=fan_out - succeeded,
            elapsed_ms=elapsed_ms,
            peak_holders=None if self.probe is None else self.probe.peak,
        )
        logger.info("Load test for %s done: %s", started_by, report)
        return report

    def _start_child(self, started_by: str, iteration: int) -> Execution:
        name = f"{started_by}-{iteration}-{uuid.uuid4().hex[:8]}"
        return self.workflow.start_execution({"started_by": started_by}, name=name)

    def _run_child(self, started_by: str, iteration: int) -> bool:
        retriers = [
            Retrier((ExecutionAlreadyExistsError,), self.policy.collision_retry),
            Retrier((Exception,), self.policy.start_retry),
        ]
        try:
            execution = call_with_retry(
                lambda: self._start_child(started_by, iteration),
                retriers,
                self._sleep,
            )
        except Exception as error:
            logger.warning(
                "Child %d of %s never started: %s", iteration, started_by, error
            )
            return False

        execution.wait()
        if execution.status is not ExecutionStatus.SUCCEEDED:
            logger.warning(
                "Child %s ended %s", execution.execution_id, execution.status.value
            )
            return False
        return True
