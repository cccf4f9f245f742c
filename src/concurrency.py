"""Bounded-concurrency task pool and cooperative cancellation."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import TypeVar

T = TypeVar("T")
U = TypeVar("U")


@dataclass(frozen=True)
class Progress:
    completed: int
    total: int


class CancellationToken:
    """A flag polled at well-defined checkpoints.

    Setting it never interrupts an in-flight call; it only stops new work
    from being started.
    """

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


async def run_bounded(
    items: Sequence[T],
    task: Callable[[T, int], Awaitable[U]],
    concurrency: int,
    on_progress: Callable[[Progress], None] | None = None,
) -> list[U]:
    """Run ``task(item, index)`` for every item with at most *concurrency* in flight.

    Results are returned in input order regardless of completion order.
    ``on_progress`` fires after every individual task completion.

    On the first failure no further items are claimed; tasks already running
    are allowed to finish, their results are discarded and the first
    exception is re-raised.

    Raises:
        ValueError: If *concurrency* is not positive.
    """
    if concurrency <= 0:
        raise ValueError(f"concurrency must be positive, got {concurrency}")

    total = len(items)
    if total == 0:
        return []

    results: list[U | None] = [None] * total
    next_index = 0
    completed = 0
    first_error: BaseException | None = None

    async def worker() -> None:
        nonlocal next_index, completed, first_error
        while first_error is None and next_index < total:
            index = next_index
            next_index += 1
            try:
                results[index] = await task(items[index], index)
            except Exception as exc:
                if first_error is None:
                    first_error = exc
                return
            completed += 1
            if on_progress is not None:
                on_progress(Progress(completed=completed, total=total))

    await asyncio.gather(*(worker() for _ in range(min(concurrency, total))))

    if first_error is not None:
        raise first_error
    return results  # type: ignore[return-value]
