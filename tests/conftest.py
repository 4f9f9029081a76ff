"""Pytest configuration and fixtures for workflow-semaphore tests."""

from __future__ import annotations

import logging
import os
import time
from collections import Counter, defaultdict
from collections.abc import Callable, Generator
from typing import TYPE_CHECKING, Any

import pytest

from workflow_semaphore import (
    AcquirePolicy,
    CleanupPolicy,
    ExecutionContext,
    InMemoryRecordStore,
    ReleasePolicy,
    RetryPolicy,
    SemaphoreRecord,
    SemaphoreRecordStore,
    StoreError,
)

if TYPE_CHECKING:
    from redis import Redis


def is_docker_available() -> bool:
    """Check if Docker is available."""
    import shutil
    import subprocess

    if not shutil.which("docker"):
        return False
    try:
        result = subprocess.run(
            ["docker", "info"],
            capture_output=True,
            timeout=5,
        )
        return result.returncode == 0
    except (subprocess.TimeoutExpired, FileNotFoundError):
        return False


# Skip integration tests if Docker is not available
requires_docker = pytest.mark.skipif(
    not is_docker_available(),
    reason="Docker is not available",
)


class FlakyStore(SemaphoreRecordStore):
    """Store wrapper that injects failures and hooks into selected calls."""

    def __init__(self, inner: SemaphoreRecordStore) -> None:
        self.inner = inner
        self.calls: Counter[str] = Counter()
        self._failures: dict[str, list[BaseException]] = defaultdict(list)
        self._lost: dict[str, int] = defaultdict(int)
        self._before: dict[str, Callable[[], None]] = {}

    def fail(self, method: str, *errors: BaseException) -> None:
        """Raise ``errors`` from the next calls of ``method``, in order."""
        self._failures[method].extend(errors)

    def lose_response(self, method: str, times: int = 1) -> None:
        """Apply the next calls of ``method`` but report a transient error."""
        self._lost[method] += times

    def before(self, method: str, hook: Callable[[], None]) -> None:
        """Run ``hook`` before every call of ``method``."""
        self._before[method] = hook

    def _call(self, method: str, *args: Any) -> Any:
        self.calls[method] += 1
        hook = self._before.get(method)
        if hook is not None:
            hook()
        if self._failures[method]:
            raise self._failures[method].pop(0)
        result = getattr(self.inner, method)(*args)
        if self._lost[method]:
            self._lost[method] -= 1
            raise StoreError(f"response of {method} lost")
        return result

    def acquire_permit(
        self, name: str, owner_token: str, limit: int, acquired_at: str
    ) -> SemaphoreRecord:
        return self._call("acquire_permit", name, owner_token, limit, acquired_at)

    def release_permit(self, name: str, owner_token: str) -> SemaphoreRecord:
        return self._call("release_permit", name, owner_token)

    def initialize(self, name: str) -> None:
        return self._call("initialize", name)

    def get_owners(self, name: str) -> dict[str, str]:
        return self._call("get_owners", name)

    def get(self, name: str) -> SemaphoreRecord:
        return self.inner.get(name)


@pytest.fixture
def root_logger() -> Generator[logging.Logger, None, None]:
    """Give the test a bare root logger and restore it afterwards."""
    root = logging.getLogger()
    level, handlers = root.level, root.handlers[:]
    root.handlers = []
    yield root
    root.handlers = handlers
    root.setLevel(level)


@pytest.fixture
def memory_store() -> InMemoryRecordStore:
    """Create an empty in-memory record store."""
    return InMemoryRecordStore()


@pytest.fixture
def flaky_store(memory_store: InMemoryRecordStore) -> FlakyStore:
    """Wrap the in-memory store with failure injection."""
    return FlakyStore(memory_store)


@pytest.fixture
def acquire_policy() -> AcquirePolicy:
    """Acquire policy with the default budget and no waiting."""
    return AcquirePolicy(retry=RetryPolicy(6, 0.0, 2.0), wait_interval=0.0)


@pytest.fixture
def release_policy() -> ReleasePolicy:
    """Release policy with the default budget and no waiting."""
    return ReleasePolicy(retry=RetryPolicy(5, 0.0, 1.5))


@pytest.fixture
def cleanup_policy() -> CleanupPolicy:
    """Cleanup policy with the default budget and no waiting."""
    return CleanupPolicy(retry=RetryPolicy(20, 0.0, 1.4))


@pytest.fixture
def clock() -> Callable[[], str]:
    """Return a clock producing distinct, timestamp-shaped values."""
    ticks = iter(range(1_000_000))
    return lambda: f"2024-01-01T00:00:{next(ticks) % 60:02d}.000Z"


@pytest.fixture
def make_context(clock: Callable[[], str]) -> Callable[..., ExecutionContext]:
    """Build execution contexts that share the test clock."""

    def factory(execution_id: str, **kwargs: Any) -> ExecutionContext:
        return ExecutionContext(execution_id, clock=clock, **kwargs)

    return factory


@pytest.fixture(scope="session")
def docker_compose_file() -> str:
    """Return path to docker-compose file for Redis."""
    return os.path.join(os.path.dirname(__file__), "docker-compose.yml")


@pytest.fixture(scope="session")
def redis_port() -> int:
    """Return the Redis port for tests."""
    return 6399  # Use non-standard port to avoid conflicts


@pytest.fixture(scope="session")
def docker_redis(
    docker_compose_file: str, redis_port: int
) -> Generator[str, None, None]:
    """Start Redis in Docker for integration tests.

    Returns the Redis URL.
    """
    import subprocess

    compose_content = f"""
services:
  redis:
    image: redis:7-alpine
    ports:
      - "{redis_port}:6379"
    healthcheck:
      test: ["CMD", "redis-cli", "ping"]
      interval: 1s
      timeout: 3s
      retries: 30
"""
    with open(docker_compose_file, "w") as f:
        f.write(compose_content)

    subprocess.run(
        ["docker", "compose", "-f", docker_compose_file, "up", "-d", "--wait"],
        check=True,
        capture_output=True,
    )

    redis_url = f"redis://localhost:{redis_port}/0"
    _wait_for_redis(redis_url)

    yield redis_url

    subprocess.run(
        ["docker", "compose", "-f", docker_compose_file, "down", "-v"],
        capture_output=True,
    )
    os.remove(docker_compose_file)


def _wait_for_redis(url: str, timeout: float = 30) -> None:
    """Wait for Redis to be ready."""
    from redis import Redis
    from redis.exceptions import ConnectionError

    start = time.time()
    while time.time() - start < timeout:
        try:
            r = Redis.from_url(url)
            r.ping()
            r.close()
            return
        except ConnectionError:
            time.sleep(0.5)
    raise TimeoutError(f"Redis at {url} did not become ready in {timeout}s")


@pytest.fixture
def redis_client(docker_redis: str) -> Generator[Redis, None, None]:
    """Create a Redis client connected to Docker Redis."""
    from redis import Redis

    client = Redis.from_url(docker_redis)
    client.flushdb()
    yield client
    try:
        client.flushdb()
    except Exception:
        pass  # Ignore errors during cleanup
    client.close()


@pytest.fixture
def unique_key() -> Generator[str, None, None]:
    """Generate a unique semaphore name for each test."""
    import uuid

    yield f"test-{uuid.uuid4().hex[:8]}"
