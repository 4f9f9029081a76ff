"""In-process workflow orchestration around the semaphore protocols.

A workflow runs each execution on its own thread under a stable execution
id, which doubles as the owner token of the permit it acquires. When an
execution ends, a status event is published to the workflow's listeners;
``CleanupRule`` forwards abnormal endings to the reaper workflow, which runs
as an independent execution.
"""

from __future__ import annotations

import logging
import threading
import uuid
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from .acquire import AcquireLock
from .config import AcquirePolicy, CleanupPolicy, ReleasePolicy
from .exceptions import (
    ExecutionAbortedError,
    ExecutionAlreadyExistsError,
    ExecutionTimedOutError,
)
from .log import execution_id_ctx
from .machine import ExecutionContext, utc_timestamp
from .reaper import Reaper
from .record import SemaphoreRecordStore
from .release import ReleaseLock

logger = logging.getLogger(__name__)


class ExecutionStatus(str, Enum):
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    TIMED_OUT = "TIMED_OUT"
    ABORTED = "ABORTED"


ABNORMAL_STATUSES = frozenset(
    {ExecutionStatus.FAILED, ExecutionStatus.TIMED_OUT, ExecutionStatus.ABORTED}
)


@dataclass(frozen=True)
class ExecutionStatusEvent:
    """Published once when an execution reaches a terminal status."""

    execution_id: str
    workflow_name: str
    status: ExecutionStatus
    cause: Optional[str] = None


Listener = Callable[[ExecutionStatusEvent], None]


class Execution:
    """Handle of one workflow execution."""

    def __init__(
        self,
        execution_id: str,
        input: Any,
        context: ExecutionContext,
    ) -> None:
        self.execution_id = execution_id
        self.input = input
        self.context = context
        self.status = ExecutionStatus.RUNNING
        self.output: Any = None
        self.error: Optional[BaseException] = None
        self._done = threading.Event()

    def abort(self) -> None:
        """Ask the execution to stop at its next suspension point."""
        self.context.abort()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the execution ends; return False on timeout."""
        return self._done.wait(timeout)

    def result(self, timeout: Optional[float] = None) -> Any:
        """Return the execution's output, or raise the error that ended it."""
        if not self.wait(timeout):
            raise TimeoutError(f"Execution '{self.execution_id}' is still running")
        if self.error is not None:
            raise self.error
        return self.output

    def _finish(
        self,
        status: ExecutionStatus,
        output: Any = None,
        error: Optional[BaseException] = None,
    ) -> None:
        self.status = status
        self.output = output
        self.error = error

    def __repr__(self) -> str:
        return (
            f"<{self.__class__.__name__} "
            f"execution_id={self.execution_id!r} "
            f"status={self.status.value}>"
        )


class Workflow(ABC):
    """Runs executions and publishes their terminal status.

    Args:
        name: Workflow name, the prefix of every execution id
        timeout: Seconds an execution may run before it times out
        clock: Timestamp source handed to executions
    """

    def __init__(
        self,
        *,
        name: str,
        timeout: Optional[float] = None,
        clock: Callable[[], str] = utc_timestamp,
    ) -> None:
        self.name = name
        self.timeout = timeout
        self._clock = clock
        # Finished executions are dropped; their ids stay reserved
        self._executions: dict[str, Execution] = {}
        self._started: set[str] = set()
        self._listeners: list[Listener] = []
        self._lock = threading.Lock()

    @abstractmethod
    def _run(self, execution: Execution) -> Any:
        """Body of one execution; its return value is the output."""

    def subscribe(self, listener: Listener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def execution_id(self, name: str) -> str:
        return f"{self.name}:{name}"

    def start_execution(
        self, input: Any = None, *, name: Optional[str] = None
    ) -> Execution:
        """Start an execution on its own thread.

        Raises:
            ExecutionAlreadyExistsError: If an execution with this name was
                already started.
        """
        execution_id = self.execution_id(name or uuid.uuid4().hex)
        context = ExecutionContext(
            execution_id, clock=self._clock, timeout=self.timeout
        )
        execution = Execution(execution_id, input, context)
        with self._lock:
            if execution_id in self._started:
                raise ExecutionAlreadyExistsError(execution_id)
            self._started.add(execution_id)
            self._executions[execution_id] = execution

        thread = threading.Thread(
            target=self._execute,
            args=(execution,),
            name=execution_id,
            daemon=True,
        )
        thread.start()
        return execution

    def get_execution(self, execution_id: str) -> Execution:
        """Return a running execution; raises KeyError once it has ended."""
        with self._lock:
            return self._executions[execution_id]

    def _execute(self, execution: Execution) -> None:
        execution_id_ctx.set(execution.execution_id)
        logger.debug("Execution %s started", execution.execution_id)
        try:
            output = self._run(execution)
        except ExecutionAbortedError as error:
            self._end(execution, ExecutionStatus.ABORTED, error=error)
        except ExecutionTimedOutError as error:
            self._end(execution, ExecutionStatus.TIMED_OUT, error=error)
        except Exception as error:
            logger.exception("Execution %s failed", execution.execution_id)
            self._end(execution, ExecutionStatus.FAILED, error=error)
        except BaseException as error:
            # The thread is going down; record the failure without publishing
            execution._finish(ExecutionStatus.FAILED, error=error)
            raise
        else:
            self._end(execution, ExecutionStatus.SUCCEEDED, output=output)
        finally:
            with self._lock:
                self._executions.pop(execution.execution_id, None)
            # Waiters observe the end only after every listener has seen it
            execution._done.set()

    def _end(
        self,
        execution: Execution,
        status: ExecutionStatus,
        output: Any = None,
        error: Optional[BaseException] = None,
    ) -> None:
        execution._finish(status, output=output, error=error)
        logger.info("Execution %s ended %s", execution.execution_id, status.value)
        event = ExecutionStatusEvent(
            execution_id=execution.execution_id,
            workflow_name=self.name,
            status=status,
            cause=None if error is None else repr(error),
        )
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                # Delivery is out of band; one listener must not stop the rest
                logger.exception(
                    "Listener %r failed on %s", listener, execution.execution_id
                )

    def __repr__(self) -> str:
        return (
            f"<{self.__class__.__name__} "
            f"name={self.name!r} "
            f"running={len(self._executions)}>"
        )


class SemaphoreWorkflow(Workflow):
    """Acquire a permit, run the protected work, release the permit.

    Usage:
        >>> workflow = SemaphoreWorkflow(
        ...     InMemoryRecordStore(),
        ...     work=lambda input: input * 2,
        ...     semaphore_name='my-resource',
        ...     concurrency_limit=5,
        ... )
        >>> workflow.start_execution(21).result()
        42

    A failed, timed out or aborted execution does not release its permit;
    that is left to the reaper (see ``CleanupRule``).
    """

    def __init__(
        self,
        store: SemaphoreRecordStore,
        *,
        work: Callable[[Any], Any],
        semaphore_name: str,
        concurrency_limit: int,
        name: str = "Semaphore",
        acquire_policy: Optional[AcquirePolicy] = None,
        release_policy: Optional[ReleasePolicy] = None,
        timeout: Optional[float] = None,
        clock: Callable[[], str] = utc_timestamp,
    ) -> None:
        if concurrency_limit < 1:
            raise ValueError("Concurrency limit must be at least 1")
        super().__init__(name=name, timeout=timeout, clock=clock)
        self.store = store
        self.semaphore_name = semaphore_name
        self.concurrency_limit = concurrency_limit
        self._work = work
        self._acquire_policy = acquire_policy or AcquirePolicy()
        self._release_policy = release_policy or ReleasePolicy()

    def _run(self, execution: Execution) -> Any:
        context = execution.context
        AcquireLock(
            self.store,
            semaphore_name=self.semaphore_name,
            concurrency_limit=self.concurrency_limit,
            owner_token=execution.execution_id,
            context=context,
            policy=self._acquire_policy,
        ).run()

        context.checkpoint()
        output = self._work(execution.input)
        context.checkpoint()

        ReleaseLock(
            self.store,
            semaphore_name=self.semaphore_name,
            owner_token=execution.execution_id,
            context=context,
            retry=self._release_policy.retry,
        ).run()
        return output


class SemaphoreCleanup(Workflow):
    """Reaper workflow; its input is the ``ExecutionStatusEvent`` to act on."""

    def __init__(
        self,
        store: SemaphoreRecordStore,
        *,
        semaphore_name: str,
        name: str = "SemaphoreCleanup",
        policy: Optional[CleanupPolicy] = None,
        clock: Callable[[], str] = utc_timestamp,
    ) -> None:
        super().__init__(name=name, clock=clock)
        self.store = store
        self.semaphore_name = semaphore_name
        self._policy = policy or CleanupPolicy()

    def _run(self, execution: Execution) -> Any:
        event: ExecutionStatusEvent = execution.input
        return Reaper(
            self.store,
            semaphore_name=self.semaphore_name,
            owner_token=event.execution_id,
            context=execution.context,
            policy=self._policy,
        ).run()


class CleanupRule:
    """Start the cleanup workflow whenever ``source`` ends abnormally."""

    def __init__(
        self,
        source: Workflow,
        target: SemaphoreCleanup,
        *,
        statuses: frozenset[ExecutionStatus] = ABNORMAL_STATUSES,
    ) -> None:
        self.source = source
        self.target = target
        self.statuses = statuses
        self.executions: list[Execution] = []
        source.subscribe(self)

    def matches(self, event: ExecutionStatusEvent) -> bool:
        return (
            event.workflow_name == self.source.name and event.status in self.statuses
        )

    def __call__(self, event: ExecutionStatusEvent) -> None:
        if not self.matches(event):
            return
        logger.info(
            "Execution %s ended %s, starting cleanup",
            event.execution_id,
            event.status.value,
        )
        self.executions.append(self.target.start_execution(event))

    def __repr__(self) -> str:
        statuses = ",".join(sorted(s.value for s in self.statuses))
        return (
            f"<{self.__class__.__name__} "
            f"source={self.source.name!r} "
            f"target={self.target.name!r} "
            f"statuses={statuses}>"
        )
