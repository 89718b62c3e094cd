from __future__ import annotations

import asyncio
from typing import Awaitable, TypeVar

from src.domain.errors import TransientError

T = TypeVar("T")


class CallTimeout(TransientError):
    """Raised when a single remote call takes too long."""


async def call_with_timeout(awaitable: Awaitable[T], timeout_seconds: float, what: str = "call") -> T:
    """
    Await with a per-call deadline. On expiry the inner task is cancelled and CallTimeout
    is raised, which the retrier treats as retryable.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_seconds)
    except asyncio.TimeoutError as exc:
        raise CallTimeout(f"{what} timed out after {timeout_seconds}s") from exc
