"""Distributed counting semaphore for workflow executions.

Executions acquire one of a fixed number of permits of a named semaphore
before doing protected work, and release it afterwards. All coordination
goes through one shared record per semaphore that is only ever changed by
atomic conditional writes; there is no lock-manager process. Permits left
behind by executions that fail, time out or are aborted are reclaimed by a
reaper workflow.

Example usage (protocols):

    >>> from workflow_semaphore import (
    ...     AcquireLock, ExecutionContext, InMemoryRecordStore, ReleaseLock,
    ... )
    >>>
    >>> store = InMemoryRecordStore()
    >>> context = ExecutionContext('execution-1')
    >>> AcquireLock(store, semaphore_name='my-resource', concurrency_limit=3,
    ...             owner_token='execution-1', context=context).run()
    >>> # Critical section with limited concurrency (max 3)
    >>> ReleaseLock(store, semaphore_name='my-resource',
    ...             owner_token='execution-1', context=context).run()

Example usage (workflow with cleanup, backed by Redis):

    >>> from workflow_semaphore import DistributedSemaphore, SemaphoreSettings
    >>>
    >>> semaphore = DistributedSemaphore(
    ...     do_work, settings=SemaphoreSettings(name='my-resource'),
    ... )
    >>> semaphore.start_execution({'job': 1}).result()
"""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version
from typing import Final

from .acquire import AcquireLock, AcquireState
from .config import (
    AcquirePolicy,
    CleanupPolicy,
    LoadTestPolicy,
    ReleasePolicy,
    RetryPolicy,
    SemaphoreSettings,
    get_settings,
)
from .exceptions import (
    AcquireError,
    CleanupError,
    ConditionCheckFailedError,
    ExecutionAbortedError,
    ExecutionAlreadyExistsError,
    ExecutionError,
    ExecutionTimedOutError,
    ProtocolError,
    RecordCollisionError,
    RecordNotFoundError,
    ReleaseError,
    SemaphoreError,
    StoreError,
)
from .harness import ConcurrencyProbe, LoadTestHarness, LoadTestReport
from .log import configure_logging
from .machine import ExecutionContext, utc_timestamp
from .orchestrator import (
    ABNORMAL_STATUSES,
    CleanupRule,
    Execution,
    ExecutionStatus,
    ExecutionStatusEvent,
    SemaphoreCleanup,
    SemaphoreWorkflow,
    Workflow,
)
from .reaper import Reaper, ReaperState
from .record import InMemoryRecordStore, SemaphoreRecord, SemaphoreRecordStore
from .redis_store import RedisRecordStore
from .release import ReleaseLock, ReleaseState
from .semaphore import DistributedSemaphore

__all__: Final[tuple[str, ...]] = (
    "ABNORMAL_STATUSES",
    "AcquireError",
    "AcquireLock",
    "AcquirePolicy",
    "AcquireState",
    "CleanupError",
    "CleanupPolicy",
    "CleanupRule",
    "ConcurrencyProbe",
    "ConditionCheckFailedError",
    "DistributedSemaphore",
    "Execution",
    "ExecutionAbortedError",
    "ExecutionAlreadyExistsError",
    "ExecutionContext",
    "ExecutionError",
    "ExecutionStatus",
    "ExecutionStatusEvent",
    "ExecutionTimedOutError",
    "InMemoryRecordStore",
    "LoadTestHarness",
    "LoadTestPolicy",
    "LoadTestReport",
    "ProtocolError",
    "Reaper",
    "ReaperState",
    "RecordCollisionError",
    "RecordNotFoundError",
    "RedisRecordStore",
    "ReleaseError",
    "ReleaseLock",
    "ReleasePolicy",
    "ReleaseState",
    "RetryPolicy",
    "SemaphoreCleanup",
    "SemaphoreError",
    "SemaphoreRecord",
    "SemaphoreRecordStore",
    "SemaphoreSettings",
    "SemaphoreWorkflow",
    "StoreError",
    "Workflow",
    "configure_logging",
    "get_settings",
    "utc_timestamp",
)

try:
    __version__ = version("workflow-semaphore")
except PackageNotFoundError:
    __version__ = "unknown"
