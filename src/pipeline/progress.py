"""
Stage progress reporting and LLM call timing.

A ProgressReporter wraps an optional callback; with no callback every method
is a no-op, so stages can report unconditionally.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any

from loguru import logger

ProgressCallback = Callable[[int, str], None]

DEFAULT_MIN_INTERVAL_SECONDS = 2.0


class ProgressReporter:
    """
    Throttled progress updater.

    Updates are forwarded at most once per ``min_interval`` seconds unless the
    percentage reaches 100. Percentages are clamped to [0, 100] and never move
    backwards. A throttled update is kept as pending: a later forwarded update
    replaces it and ``flush()`` sends it when the stage finishes.

    Example:
        >>> reporter = ProgressReporter(job.report, stage="concept_graph_build")
        >>> reporter.update_range(3, 10, 20, 60, "Inventorying concepts 3/10")
    """

    def __init__(
        self,
        callback: ProgressCallback | None = None,
        stage: str = "",
        min_interval: float = DEFAULT_MIN_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.callback = callback
        self.stage = stage
        self.min_interval = max(min_interval, 0.0)
        self._clock = clock
        self._last_sent: float | None = None
        self._last_pct = 0
        self._pending: tuple[int, str] | None = None

    @property
    def enabled(self) -> bool:
        return self.callback is not None

    def update(self, pct: int, msg: str) -> None:
        if self.callback is None:
            return
        pct = max(0, min(100, int(pct)))
        pct = max(pct, self._last_pct)
        now = self._clock()
        if pct < 100 and self._last_sent is not None and now - self._last_sent < self.min_interval:
            self._pending = (pct, msg)
            return
        self._send(now, pct, msg)

    def flush(self) -> None:
        """Forward the latest throttled update, if one is pending."""
        if self.callback is None or self._pending is None:
            return
        pct, msg = self._pending
        self._send(self._clock(), max(pct, self._last_pct), msg)

    def _send(self, now: float, pct: int, msg: str) -> None:
        self._pending = None
        self._last_sent = now
        self._last_pct = pct
        try:
            self.callback(pct, msg)
        except Exception as e:  # Reporter failures never fail a stage
            logger.warning(f"Progress callback failed ({self.stage}): {e}")

    def update_range(self, done: int, total: int, start: int, end: int, msg: str) -> None:
        """Map ``done/total`` linearly onto the ``[start, end]`` percentage band."""
        if self.callback is None:
            return
        if total <= 0:
            self.update(start, msg)
            return
        done = max(0, min(done, total))
        self.update(start + int((end - start) * done / total), msg)


@contextmanager
def llm_timer(op: str, fields: dict[str, Any] | None = None) -> Iterator[None]:
    """
    Log the duration of an LLM or embedding call.

    Start is logged at DEBUG, completion at INFO, failure at WARNING; the
    exception is re-raised.
    """
    extra = " ".join(f"{k}={v}" for k, v in sorted((fields or {}).items()))
    logger.debug(f"llm start op={op} {extra}".rstrip())
    started = time.monotonic()
    try:
        yield
    except Exception as e:
        elapsed_ms = int((time.monotonic() - started) * 1000)
        logger.warning(f"llm failed op={op} elapsed_ms={elapsed_ms} {extra} error={e}".rstrip())
        raise
    elapsed_ms = int((time.monotonic() - started) * 1000)
    logger.info(f"llm done op={op} elapsed_ms={elapsed_ms} {extra}".rstrip())
