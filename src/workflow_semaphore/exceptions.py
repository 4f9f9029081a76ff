"""Exceptions for workflow-semaphore."""

from __future__ import annotations


class SemaphoreError(Exception):
    """Base exception for semaphore errors."""

    pass


class StoreError(SemaphoreError):
    """Raised when the record store fails for a transient or unknown reason.

    These errors are retried with backoff by every protocol.
    """

    pass


class RecordNotFoundError(SemaphoreError):
    """Raised when no semaphore record exists under the requested name."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Semaphore record '{name}' does not exist")


class ConditionCheckFailedError(SemaphoreError):
    """Raised when the condition of a conditional write does not hold."""

    def __init__(self, name: str, reason: str = "condition check failed") -> None:
        self.name = name
        self.reason = reason
        super().__init__(f"Semaphore record '{name}': {reason}")


class RecordCollisionError(ConditionCheckFailedError):
    """Raised when initializing a record that another client already created."""

    def __init__(self, name: str) -> None:
        super().__init__(name, "record already exists")


class ProtocolError(SemaphoreError):
    """Raised when a protocol exhausts its retry budget.

    This mirrors a failed task in a workflow: the execution that ran the
    protocol fails, and a held permit is left for the reaper.
    """

    protocol = "protocol"

    def __init__(
        self,
        *,
        semaphore_name: str,
        owner_token: str,
        state: str,
        attempts: int,
        reason: str = "retry budget exhausted",
    ) -> None:
        self.semaphore_name = semaphore_name
        self.owner_token = owner_token
        self.state = state
        self.attempts = attempts
        super().__init__(
            f"{self.protocol} of semaphore '{semaphore_name}' for "
            f"'{owner_token}' failed in state {state} "
            f"after {attempts} retries: {reason}"
        )


class AcquireError(ProtocolError):
    protocol = "Acquire"


class ReleaseError(ProtocolError):
    protocol = "Release"


class CleanupError(ProtocolError):
    protocol = "Cleanup"


class ExecutionError(SemaphoreError):
    """Base exception for executions stopped by the orchestrator."""

    def __init__(self, execution_id: str, message: str) -> None:
        self.execution_id = execution_id
        super().__init__(f"Execution '{execution_id}' {message}")


class ExecutionAbortedError(ExecutionError):
    def __init__(self, execution_id: str) -> None:
        super().__init__(execution_id, "was aborted")


class ExecutionTimedOutError(ExecutionError):
    def __init__(self, execution_id: str, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(execution_id, f"timed out after {timeout}s")


class ExecutionAlreadyExistsError(ExecutionError):
    def __init__(self, execution_id: str) -> None:
        super().__init__(execution_id, "already exists")
