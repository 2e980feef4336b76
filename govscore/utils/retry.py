"""
Retry policy shared by the upstream client and the rationale fetcher.

A policy is a small value object: how many retries, the backoff schedule,
and which errors qualify. Callers wrap a zero-argument coroutine factory
with `policy.run(...)`; the last error propagates once retries run out.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, TypeVar

from govscore.utils.logger import logger

T = TypeVar('T')


def is_retryable_error(exc: BaseException) -> bool:
    """Default predicate: honour the `retryable` flag on govscore errors."""
    return bool(getattr(exc, "retryable", False))


@dataclass
class RetryPolicy:
    """Exponential backoff: base_delay * 2**retry seconds, for up to max_retries retries."""
    max_retries: int = 3
    base_delay: float = 1.0
    is_retryable: Callable[[BaseException], bool] = is_retryable_error
    name: str = "default"
    # Injected so tests can run the schedule without sleeping
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, repr=False)

    def delay_for(self, retry: int) -> float:
        return self.base_delay * (2 ** retry)

    def schedule(self) -> List[float]:
        return [self.delay_for(retry) for retry in range(self.max_retries)]

    async def run(self, operation: Callable[[], Awaitable[T]]) -> T:
        retry = 0
        while True:
            try:
                return await operation()
            except Exception as e:
                if retry >= self.max_retries or not self.is_retryable(e):
                    raise
                delay = self.delay_for(retry)
                logger.warning(
                    "[Retry:%s] %s, retrying in %.1fs (%d/%d)",
                    self.name, e, delay, retry + 1, self.max_retries,
                )
                await self.sleep(delay)
                retry += 1
