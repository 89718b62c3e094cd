from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from src.domain.errors import TransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    initial_interval: float = 1.0
    max_interval: float = 30.0
    multiplier: float = 2.0
    max_retries: int = 5
    jitter: float = 0.1

    def __post_init__(self) -> None:
        if self.initial_interval < 0:
            raise ValueError("initial_interval must be >= 0")
        if self.max_interval < self.initial_interval:
            raise ValueError("max_interval must be >= initial_interval")
        if self.multiplier < 1.0:
            raise ValueError("multiplier must be >= 1.0")
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if not (0.0 <= self.jitter <= 1.0):
            raise ValueError("jitter must be within 0.0..1.0")

    @classmethod
    def from_dict(cls, doc: dict[str, Any] | None) -> RetryPolicy:
        """Build a policy from a config mapping; missing keys keep the defaults."""
        doc = doc or {}
        defaults = cls()
        return cls(
            initial_interval=float(doc.get("initial_interval_seconds", defaults.initial_interval)),
            max_interval=float(doc.get("max_interval_seconds", defaults.max_interval)),
            multiplier=float(doc.get("multiplier", defaults.multiplier)),
            max_retries=int(doc.get("max_retries", defaults.max_retries)),
            jitter=float(doc.get("jitter", defaults.jitter)),
        )


def is_retryable(exc: BaseException) -> bool:
    """Only failures the adapters classified as transient are worth another attempt."""
    return isinstance(exc, TransientError)


class Retrier:
    """
    Bounded exponential backoff with jitter around an async operation.

    The operation is a zero-argument callable returning a fresh awaitable per attempt,
    so callers close over whatever they need (including a fixed client order id).
    Holds no state between `execute` calls; one instance can serve many call sites.
    """

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
        retryable: Callable[[BaseException], bool] = is_retryable,
    ):
        self.policy = policy or RetryPolicy()
        self._sleep = sleep
        self._rng = rng
        self._retryable = retryable

    def _jittered(self, interval: float) -> float:
        spread = (self._rng() * 2 - 1) * self.policy.jitter * interval
        return max(0.0, interval + spread)

    async def execute(self, operation: Callable[[], Awaitable[T]], *, description: str = "operation") -> T:
        interval = self.policy.initial_interval
        attempts = self.policy.max_retries + 1

        for attempt in range(1, attempts + 1):
            try:
                return await operation()
            except Exception as e:
                if not self._retryable(e):
                    raise
                if attempt >= attempts:
                    logger.error(f"{description} failed after {attempt} attempts: {e}")
                    raise
                delay = self._jittered(interval)
                logger.warning(
                    f"{description} failed (attempt {attempt}/{attempts}): {type(e).__name__}: {e}; "
                    f"retrying in {delay:.2f}s"
                )
            # Cancellation during the wait propagates as CancelledError.
            await self._sleep(delay)
            interval = min(interval * self.policy.multiplier, self.policy.max_interval)

        raise AssertionError("unreachable")
