"""
Bounded-concurrency fan-out helpers.

``run_limited`` is the error-group form: the first failure cancels the
remaining workers and is re-raised. ``run_limited_settled`` logs and drops
failures instead, for best-effort fan-outs (vector upserts, retrieval).
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from typing import Any, TypeVar

from loguru import logger

T = TypeVar("T")
R = TypeVar("R")


async def run_limited(
    items: Sequence[T],
    worker: Callable[[int, T], Awaitable[R]],
    limit: int,
) -> list[R]:
    """
    Run ``worker(index, item)`` for every item with at most ``limit`` in flight.

    Results are returned in input order. On the first exception, pending
    workers are cancelled and the exception propagates.
    """
    if not items:
        return []
    semaphore = asyncio.Semaphore(max(1, limit))

    async def _run(i: int, item: T) -> R:
        async with semaphore:
            return await worker(i, item)

    tasks = [asyncio.ensure_future(_run(i, item)) for i, item in enumerate(items)]
    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        for t in done:
            if not t.cancelled() and t.exception() is not None:
                raise t.exception()
    except BaseException:
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise
    return [t.result() for t in tasks]


async def run_limited_settled(
    items: Sequence[T],
    worker: Callable[[int, T], Awaitable[R]],
    limit: int,
    label: str = "task",
) -> list[R | None]:
    """Like ``run_limited`` but a failing item yields None and a warning."""
    if not items:
        return []
    semaphore = asyncio.Semaphore(max(1, limit))

    async def _run(i: int, item: T) -> R | None:
        async with semaphore:
            try:
                return await worker(i, item)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"{label} {i} failed: {e}")
                return None

    return list(await asyncio.gather(*(_run(i, item) for i, item in enumerate(items))))


def batched(items: Sequence[Any], size: int) -> list[list[Any]]:
    if size <= 0:
        size = len(items) or 1
    return [list(items[i : i + size]) for i in range(0, len(items), size)]
