"""Semaphore records and the conditional-write store they live in.

One record exists per semaphore name. It holds the number of permits in use
and one ``owners`` entry per held permit, keyed by the owner token and valued
with the acquisition timestamp. Presence of an owner entry is the only
evidence that a token holds a permit.
"""

from __future__ import annotations

import copy
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from .exceptions import (
    ConditionCheckFailedError,
    RecordCollisionError,
    RecordNotFoundError,
)


@dataclass
class SemaphoreRecord:
    name: str
    count: int = 0
    owners: dict[str, str] = field(default_factory=dict)

    def holds(self, owner_token: str) -> bool:
        """Return True if ``owner_token`` currently holds a permit."""
        return owner_token in self.owners

    def can_admit(self, owner_token: str, limit: int) -> bool:
        """Evaluate the acquire condition against this record."""
        return self.count < limit and owner_token not in self.owners


class SemaphoreRecordStore(ABC):
    """Key-value store offering atomic conditional writes on records.

    Every method is atomic with respect to every other call for the same
    name, across all clients of the underlying store. Transient failures are
    raised as ``StoreError``.
    """

    @abstractmethod
    def acquire_permit(
        self, name: str, owner_token: str, limit: int, acquired_at: str
    ) -> SemaphoreRecord:
        """Claim a permit for ``owner_token``.

        Increments ``count`` and records ``owners[owner_token] = acquired_at``
        if ``count < limit`` and the token holds no permit yet.

        Raises:
            RecordNotFoundError: If the record has not been initialized.
            ConditionCheckFailedError: If the limit is reached or the token
                already holds a permit.
        """

    @abstractmethod
    def release_permit(self, name: str, owner_token: str) -> SemaphoreRecord:
        """Give back the permit held by ``owner_token``.

        Raises:
            ConditionCheckFailedError: If the token holds no permit, including
                when the record does not exist.
        """

    @abstractmethod
    def initialize(self, name: str) -> None:
        """Create an empty record for ``name``.

        Raises:
            RecordCollisionError: If a record with this name already exists.
        """

    @abstractmethod
    def get_owners(self, name: str) -> dict[str, str]:
        """Strongly consistent read of the ``owners`` mapping.

        Raises:
            RecordNotFoundError: If the record does not exist.
        """

    @abstractmethod
    def get(self, name: str) -> SemaphoreRecord:
        """Strongly consistent read of the whole record.

        Raises:
            RecordNotFoundError: If the record does not exist.
        """


class InMemoryRecordStore(SemaphoreRecordStore):
    """Process-local store for tests and local runs.

    Example:
        ```python
        store = InMemoryRecordStore()
        store.initialize("my-resource")
        store.acquire_permit("my-resource", "owner-1", 5, "2024-01-01T00:00:00Z")
        assert store.get("my-resource").count == 1
        ```
    """

    def __init__(self) -> None:
        self._records: dict[str, SemaphoreRecord] = {}
        self._lock = threading.Lock()

    def acquire_permit(
        self, name: str, owner_token: str, limit: int, acquired_at: str
    ) -> SemaphoreRecord:
        with self._lock:
            record = self._records.get(name)
            if record is None:
                raise RecordNotFoundError(name)
            if not record.can_admit(owner_token, limit):
                raise ConditionCheckFailedError(
                    name, "limit reached or owner already holds a permit"
                )
            record.count += 1
            record.owners[owner_token] = acquired_at
            return copy.deepcopy(record)

    def release_permit(self, name: str, owner_token: str) -> SemaphoreRecord:
        with self._lock:
            record = self._records.get(name)
            if record is None or not record.holds(owner_token):
                raise ConditionCheckFailedError(name, "owner holds no permit")
            record.count -= 1
            del record.owners[owner_token]
            return copy.deepcopy(record)

    def initialize(self, name: str) -> None:
        with self._lock:
            if name in self._records:
                raise RecordCollisionError(name)
            self._records[name] = SemaphoreRecord(name=name)

    def get_owners(self, name: str) -> dict[str, str]:
        with self._lock:
            record = self._records.get(name)
            if record is None:
                raise RecordNotFoundError(name)
            return dict(record.owners)

    def get(self, name: str) -> SemaphoreRecord:
        with self._lock:
            record = self._records.get(name)
            if record is None:
                raise RecordNotFoundError(name)
            return copy.deepcopy(record)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} records={len(self._records)}>"
