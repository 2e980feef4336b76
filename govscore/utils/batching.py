"""Bounded fan-out helpers and the partial-failure tally used by batch writes."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Iterator, List, Sequence, TypeVar

T = TypeVar('T')
R = TypeVar('R')

MAX_RECORDED_ERRORS = 20


@dataclass
class BatchResult:
    """Outcome of a batch operation: counts plus the first few error messages."""
    succeeded: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.succeeded + self.failed

    @property
    def error_rate(self) -> float:
        return self.failed / self.total if self.total else 0.0

    def record_success(self, count: int = 1) -> None:
        self.succeeded += count

    def record_failure(self, error: Any, count: int = 1) -> None:
        self.failed += count
        if len(self.errors) < MAX_RECORDED_ERRORS:
            self.errors.append(str(error))

    def merge(self, other: "BatchResult") -> "BatchResult":
        merged = BatchResult(self.succeeded + other.succeeded, self.failed + other.failed)
        merged.errors = (self.errors + other.errors)[:MAX_RECORDED_ERRORS]
        return merged

    def to_dict(self) -> dict:
        return {"succeeded": self.succeeded, "failed": self.failed, "errors": list(self.errors)}


def chunked(items: Sequence[T], size: int) -> Iterator[List[T]]:
    if size <= 0:
        raise ValueError("chunk size must be positive")
    for start in range(0, len(items), size):
        yield list(items[start:start + size])


async def gather_bounded(
    items: Iterable[T],
    worker: Callable[[T], Awaitable[R]],
    concurrency: int,
) -> List[Any]:
    """Run worker over items with at most `concurrency` in flight.

    Results keep input order; a failed item yields its exception instead of
    cancelling its siblings.
    """
    semaphore = asyncio.Semaphore(max(1, concurrency))

    async def _run(item: T):
        async with semaphore:
            return await worker(item)

    return await asyncio.gather(*(_run(item) for item in items), return_exceptions=True)
