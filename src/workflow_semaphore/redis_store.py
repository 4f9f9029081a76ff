"""Redis-backed semaphore record store using Pottery's public API.

Each record is a Pottery ``RedisDict`` (a Redis hash with JSON-encoded
fields ``name``, ``count`` and ``owners``). Conditional writes run under a
per-record Pottery ``Redlock``, which makes the read-check-write atomic for
every client of the same Redis, and each write is a single transactional
``RedisDict.update``.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from contextlib import contextmanager

from pottery import PotteryError, RedisDict, Redlock
from pottery.exceptions import PrimitiveError
from redis import Redis
from redis.exceptions import RedisError

from .exceptions import (
    ConditionCheckFailedError,
    RecordCollisionError,
    RecordNotFoundError,
    StoreError,
)
from .record import SemaphoreRecord, SemaphoreRecordStore


class RedisRecordStore(SemaphoreRecordStore):
    """Semaphore records stored in Redis.

    Usage:
        >>> from redis import Redis
        >>> store = RedisRecordStore(masters={Redis()})
        >>> store.initialize('my-resource')
        >>> store.acquire_permit('my-resource', 'owner-1', 5, '2024-01-01T00:00:00Z')

    Args:
        masters: Redis clients for the record locks; the first one also holds
            the records
        key_prefix: Prefix of every Redis key this store writes
        lock_timeout: Seconds to wait for a record lock before failing with
            a transient ``StoreError``
        auto_release_time: Seconds after which a record lock held by a dead
            client expires
    """

    def __init__(
        self,
        *,
        masters: Iterable[Redis] = frozenset(),
        key_prefix: str = "semaphore",
        lock_timeout: float = 10.0,
        auto_release_time: float = 10.0,
    ) -> None:
        self._key_prefix = key_prefix
        self._lock_timeout = lock_timeout
        self._auto_release_time = auto_release_time
        self._masters: frozenset[Redis] = frozenset(masters)

        if not self._masters:
            self._masters = frozenset({Redis()})

        # Use first master for the records (writes are guarded by the lock)
        self._redis = next(iter(self._masters))

    @classmethod
    def from_url(cls, url: str, **kwargs) -> RedisRecordStore:
        return cls(masters={Redis.from_url(url)}, **kwargs)

    def _record_key(self, name: str) -> str:
        return f"{self._key_prefix}:{name}:record"

    def _record(self, name: str) -> RedisDict:
        return RedisDict(redis=self._redis, key=self._record_key(name))

    def _exists(self, name: str) -> bool:
        return bool(self._redis.exists(self._record_key(name)))

    @contextmanager
    def _store_errors(self, name: str) -> Iterator[None]:
        try:
            yield
        except (RedisError, PotteryError, PrimitiveError) as error:
            raise StoreError(
                f"Redis error on semaphore record '{name}': {error}"
            ) from error

    @contextmanager
    def _conditional(self, name: str) -> Iterator[RedisDict]:
        """Hold the record's lock for one conditional operation."""
        lock = Redlock(
            key=f"{self._key_prefix}:{name}:lock",
            masters=self._masters,
            raise_on_redis_errors=True,
            auto_release_time=self._auto_release_time,
            context_manager_timeout=self._lock_timeout,
        )
        with self._store_errors(name):
            with lock:
                yield self._record(name)

    def acquire_permit(
        self, name: str, owner_token: str, limit: int, acquired_at: str
    ) -> SemaphoreRecord:
        with self._conditional(name) as stored:
            if not self._exists(name):
                raise RecordNotFoundError(name)
            record = self._load(name, stored)
            if not record.can_admit(owner_token, limit):
                raise ConditionCheckFailedError(
                    name, "limit reached or owner already holds a permit"
                )
            record.count += 1
            record.owners[owner_token] = acquired_at
            stored.update({"count": record.count, "owners": record.owners})
            return record

    def release_permit(self, name: str, owner_token: str) -> SemaphoreRecord:
        with self._conditional(name) as stored:
            if not self._exists(name):
                raise ConditionCheckFailedError(name, "owner holds no permit")
            record = self._load(name, stored)
            if not record.holds(owner_token):
                raise ConditionCheckFailedError(name, "owner holds no permit")
            record.count -= 1
            del record.owners[owner_token]
            stored.update({"count": record.count, "owners": record.owners})
            return record

    def initialize(self, name: str) -> None:
        with self._conditional(name) as stored:
            if self._exists(name):
                raise RecordCollisionError(name)
            stored.update({"name": name, "count": 0, "owners": {}})

    def get_owners(self, name: str) -> dict[str, str]:
        with self._store_errors(name):
            if not self._exists(name):
                raise RecordNotFoundError(name)
            return dict(self._record(name).get("owners", {}))

    def get(self, name: str) -> SemaphoreRecord:
        with self._store_errors(name):
            if not self._exists(name):
                raise RecordNotFoundError(name)
            return self._load(name, self._record(name))

    @staticmethod
    def _load(name: str, stored: RedisDict) -> SemaphoreRecord:
        fields = stored.to_dict()
        return SemaphoreRecord(
            name=fields.get("name", name),
            count=fields.get("count", 0),
            owners=dict(fields.get("owners", {})),
        )

    def __repr__(self) -> str:
        return (
            f"<{self.__class__.__name__} "
            f"key_prefix={self._key_prefix!r} "
            f"masters={len(self._masters)}>"
        )
