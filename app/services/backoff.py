"""Exponential backoff with jitter for flaky upstream calls."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass
from random import SystemRandom
from typing import TypeVar

import httpx

from app.config import Settings
from app.observability.metrics import metrics
from app.services.errors import UpstreamError

logger = logging.getLogger(__name__)

_T = TypeVar("_T")

RETRYABLE_CLIENT_STATUSES = frozenset({429})


@dataclass(frozen=True)
class BackoffPolicy:
    """Retry budget for a single remote call."""

    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 10.0
    multiplier: float = 2.0
    jitter: float = 0.2

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.initial_delay <= 0:
            raise ValueError("initial_delay must be > 0")
        if self.max_delay <= 0:
            raise ValueError("max_delay must be > 0")
        if self.multiplier < 1:
            raise ValueError("multiplier must be >= 1")
        if not 0 <= self.jitter < 1:
            raise ValueError("jitter must be in [0, 1)")

    @classmethod
    def from_settings(cls, config: Settings, *, max_retries: int | None = None) -> "BackoffPolicy":
        return cls(
            max_retries=config.backoff_max_retries if max_retries is None else max_retries,
            initial_delay=config.backoff_initial_delay_seconds,
            max_delay=config.backoff_max_delay_seconds,
            multiplier=config.backoff_multiplier,
            jitter=config.backoff_jitter,
        )

    def base_delay(self, retry_index: int) -> float:
        """Un-jittered delay before retry number ``retry_index`` (0-based)."""
        return min(self.max_delay, self.initial_delay * (self.multiplier**retry_index))


def backoff_schedule(
    policy: BackoffPolicy, *, rng: random.Random | None = None
) -> Iterator[tuple[int, float]]:
    """Yield (retry_number, delay_seconds) pairs, jittered uniformly by ±policy.jitter."""
    generator = rng or SystemRandom()
    for retry_index in range(policy.max_retries):
        base = policy.base_delay(retry_index)
        offset = generator.uniform(-policy.jitter, policy.jitter) if policy.jitter else 0.0
        yield retry_index + 1, max(0.0, base * (1 + offset))


def is_retryable(exc: BaseException) -> bool:
    """Transport failures, upstream 5xx and 429 are transient; every other error is permanent."""
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return _is_retryable_status(exc.response.status_code)
    if isinstance(exc, UpstreamError):
        return exc.status_code is None or _is_retryable_status(exc.status_code)
    return False


def _is_retryable_status(status_code: int) -> bool:
    return status_code >= 500 or status_code in RETRYABLE_CLIENT_STATUSES


class BackoffExecutor:
    """Invokes an async operation, retrying transient failures on an exponential schedule."""

    def __init__(
        self,
        policy: BackoffPolicy | None = None,
        *,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
        rng: random.Random | None = None,
        on_retry: Callable[[BaseException, int, float], None] | None = None,
    ) -> None:
        self._policy = policy or BackoffPolicy()
        self._sleep = sleep
        self._rng = rng
        self._on_retry = on_retry

    @property
    def policy(self) -> BackoffPolicy:
        return self._policy

    async def execute(self, operation: Callable[[], Awaitable[_T]], *, label: str = "remote") -> _T:
        """Run ``operation``; on exhaustion the last error propagates unchanged."""
        schedule = backoff_schedule(self._policy, rng=self._rng)
        while True:
            try:
                return await operation()
            except Exception as exc:
                if not is_retryable(exc):
                    raise
                step = next(schedule, None)
                if step is None:
                    logger.warning(
                        "backoff.exhausted",
                        extra={"label": label, "retries": self._policy.max_retries},
                    )
                    raise
                retry_number, delay = step
                logger.warning(
                    "backoff.retry",
                    extra={
                        "label": label,
                        "retry": retry_number,
                        "max_retries": self._policy.max_retries,
                        "delay_seconds": round(delay, 3),
                        "error": str(exc),
                    },
                )
                metrics.increment("backoff.retry", tags={"label": label})
                if self._on_retry is not None:
                    self._on_retry(exc, retry_number, delay)
                await self._sleep(delay)
