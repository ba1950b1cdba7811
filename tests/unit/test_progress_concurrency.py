"""
Unit tests for progress reporting and bounded fan-out.
"""
import asyncio

import pytest

from src.pipeline.concurrency import batched, run_limited, run_limited_settled
from src.pipeline.progress import ProgressReporter, llm_timer


class Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class TestProgressReporter:
    """Throttled, clamped, monotonic updates."""

    def reporter(self, min_interval=2.0):
        sent = []
        clock = Clock()
        reporter = ProgressReporter(lambda pct, msg: sent.append((pct, msg)), "stage", min_interval, clock)
        return reporter, sent, clock

    def test_throttles_within_interval(self):
        reporter, sent, clock = self.reporter()

        reporter.update(10, "a")
        clock.now = 1.0
        reporter.update(20, "b")
        clock.now = 2.5
        reporter.update(30, "c")

        assert sent == [(10, "a"), (30, "c")]

    def test_completion_bypasses_throttle(self):
        reporter, sent, _ = self.reporter()

        reporter.update(10, "a")
        reporter.update(100, "done")

        assert sent[-1] == (100, "done")

    def test_clamped_and_monotonic(self):
        reporter, sent, _ = self.reporter(min_interval=0)

        reporter.update(150, "over")
        reporter.update(40, "back")
        reporter.update(-5, "negative")

        assert [p for p, _ in sent] == [100, 100, 100]

    def test_update_range(self):
        reporter, sent, _ = self.reporter(min_interval=0)

        reporter.update_range(3, 10, 20, 60, "3/10")
        reporter.update_range(20, 10, 20, 60, "overshoot")
        reporter.update_range(0, 0, 70, 90, "empty")

        assert [p for p, _ in sent] == [32, 60, 70]

    def test_flush_sends_latest_throttled_update(self):
        """Only the newest held-back update is delivered."""
        reporter, sent, clock = self.reporter()

        reporter.update(10, "a")
        clock.now = 0.5
        reporter.update(20, "b")
        clock.now = 1.0
        reporter.update(25, "c")
        reporter.flush()

        assert sent == [(10, "a"), (25, "c")]

    def test_next_allowed_update_supersedes_pending(self):
        reporter, sent, clock = self.reporter()

        reporter.update(10, "a")
        clock.now = 1.0
        reporter.update(20, "b")
        clock.now = 3.0
        reporter.update(30, "c")
        reporter.flush()

        assert sent == [(10, "a"), (30, "c")]

    def test_flush_without_pending_is_a_noop(self):
        reporter, sent, _ = self.reporter()

        reporter.flush()
        reporter.update(10, "a")
        reporter.flush()

        assert sent == [(10, "a")]

    def test_flush_without_callback(self):
        reporter = ProgressReporter()

        reporter.update(50, "ignored")
        reporter.flush()

    def test_callback_errors_are_swallowed(self):
        def broken(pct, msg):
            raise RuntimeError("job row gone")

        ProgressReporter(broken, "stage").update(50, "x")

    def test_no_callback(self):
        reporter = ProgressReporter()

        assert not reporter.enabled
        reporter.update(50, "ignored")
        reporter.update_range(1, 2, 0, 100, "ignored")


class TestLLMTimer:
    def test_reraises(self):
        with pytest.raises(ValueError):
            with llm_timer("concept_inventory", {"chunks": 3}):
                raise ValueError("bad json")

    def test_passes_through(self):
        with llm_timer("embed"):
            value = 1

        assert value == 1


class TestRunLimited:
    """Error-group fan-out."""

    @pytest.mark.asyncio
    async def test_order_and_limit(self):
        in_flight = 0
        peak = 0

        async def worker(i, item):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.001 * (5 - i))
            in_flight -= 1
            return item * 2

        out = await run_limited([1, 2, 3, 4, 5], worker, 2)

        assert out == [2, 4, 6, 8, 10]
        assert peak <= 2

    @pytest.mark.asyncio
    async def test_first_error_propagates_and_cancels(self):
        finished = []

        async def worker(i, item):
            if i == 0:
                raise RuntimeError("boom")
            await asyncio.sleep(0.05)
            finished.append(i)
            return i

        with pytest.raises(RuntimeError, match="boom"):
            await run_limited([0, 1, 2], worker, 3)
        assert finished == []

    @pytest.mark.asyncio
    async def test_empty(self):
        async def worker(i, item):
            return item

        assert await run_limited([], worker, 4) == []


class TestRunLimitedSettled:
    @pytest.mark.asyncio
    async def test_failures_become_none(self):
        async def worker(i, item):
            if item == "bad":
                raise RuntimeError("nope")
            return item.upper()

        assert await run_limited_settled(["a", "bad", "c"], worker, 0) == ["A", None, "C"]


@pytest.mark.parametrize(
    "items,size,expected",
    [([1, 2, 3], 2, [[1, 2], [3]]), ([1, 2], 0, [[1, 2]]), ([], 3, [])],
)
def test_batched(items, size, expected):
    assert batched(items, size) == expected
