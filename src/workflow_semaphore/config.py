"""Configuration for the semaphore protocols.

Retry and wait behavior is configured per protocol through small frozen
dataclasses. ``SemaphoreSettings`` loads the same knobs from the environment
(prefix ``SEMAPHORE_``) and builds those policies.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff policy.

    ``max_attempts`` counts retries after the first try, so 0 disables
    retrying. The n-th retry waits ``interval * backoff_rate ** (n - 1)``.
    """

    max_attempts: int
    interval: float = 1.0
    backoff_rate: float = 2.0

    def __post_init__(self) -> None:
        if self.max_attempts < 0:
            raise ValueError("max_attempts must be non-negative")
        if self.interval < 0:
            raise ValueError("interval must be non-negative")
        if self.backoff_rate < 1:
            raise ValueError("backoff_rate must be >= 1")

    def delay(self, attempt: int) -> float:
        """Return the wait before retry number ``attempt`` (1-based)."""
        return self.interval * self.backoff_rate ** (attempt - 1)


@dataclass(frozen=True)
class AcquirePolicy:
    retry: RetryPolicy = field(default_factory=lambda: RetryPolicy(6, 1.0, 2.0))
    wait_interval: float = 3.0
    # None polls until a permit frees up
    max_wait_cycles: Optional[int] = None


@dataclass(frozen=True)
class ReleasePolicy:
    retry: RetryPolicy = field(default_factory=lambda: RetryPolicy(5, 1.0, 1.5))


@dataclass(frozen=True)
class CleanupPolicy:
    retry: RetryPolicy = field(default_factory=lambda: RetryPolicy(20, 5.0, 1.4))


@dataclass(frozen=True)
class LoadTestPolicy:
    fan_out: int = 100
    collision_retry: RetryPolicy = field(
        default_factory=lambda: RetryPolicy(1, 1.0, 5.0)
    )
    start_retry: RetryPolicy = field(default_factory=lambda: RetryPolicy(12, 1.0, 2.0))


class SemaphoreSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="SEMAPHORE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Semaphore ---
    name: str = "MySemaphore"
    concurrency_limit: int = Field(5, ge=1)

    # --- Store ---
    redis_url: str = "redis://localhost:6379/0"
    key_prefix: str = "semaphore"
    lock_timeout: float = Field(10.0, gt=0)

    # --- Acquire ---
    acquire_max_attempts: int = Field(6, ge=0)
    acquire_interval: float = Field(1.0, ge=0)
    acquire_backoff_rate: float = Field(2.0, ge=1)
    acquire_wait_interval: float = Field(3.0, ge=0)
    acquire_max_wait_cycles: Optional[int] = Field(None, ge=0)

    # --- Release ---
    release_max_attempts: int = Field(5, ge=0)
    release_interval: float = Field(1.0, ge=0)
    release_backoff_rate: float = Field(1.5, ge=1)

    # --- Cleanup ---
    cleanup_max_attempts: int = Field(20, ge=0)
    cleanup_interval: float = Field(5.0, ge=0)
    cleanup_backoff_rate: float = Field(1.4, ge=1)

    # --- Load test ---
    load_test_fan_out: int = Field(100, ge=1)
    load_test_collision_max_attempts: int = Field(1, ge=0)
    load_test_collision_interval: float = Field(1.0, ge=0)
    load_test_collision_backoff_rate: float = Field(5.0, ge=1)
    load_test_start_max_attempts: int = Field(12, ge=0)
    load_test_start_interval: float = Field(1.0, ge=0)
    load_test_start_backoff_rate: float = Field(2.0, ge=1)

    # --- Observability ---
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    def acquire_policy(self) -> AcquirePolicy:
        return AcquirePolicy(
            retry=RetryPolicy(
                self.acquire_max_attempts,
                self.acquire_interval,
                self.acquire_backoff_rate,
            ),
            wait_interval=self.acquire_wait_interval,
            max_wait_cycles=self.acquire_max_wait_cycles,
        )

    def release_policy(self) -> ReleasePolicy:
        return ReleasePolicy(
            retry=RetryPolicy(
                self.release_max_attempts,
                self.release_interval,
                self.release_backoff_rate,
            )
        )

    def cleanup_policy(self) -> CleanupPolicy:
        return CleanupPolicy(
            retry=RetryPolicy(
                self.cleanup_max_attempts,
                self.cleanup_interval,
                self.cleanup_backoff_rate,
            )
        )

    def load_test_policy(self) -> LoadTestPolicy:
        return LoadTestPolicy(
            fan_out=self.load_test_fan_out,
            collision_retry=RetryPolicy(
                self.load_test_collision_max_attempts,
                self.load_test_collision_interval,
                self.load_test_collision_backoff_rate,
            ),
            start_retry=RetryPolicy(
                self.load_test_start_max_attempts,
                self.load_test_start_interval,
                self.load_test_start_backoff_rate,
            ),
        )


@lru_cache
def get_settings() -> SemaphoreSettings:
    return SemaphoreSettings()
