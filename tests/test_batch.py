"""Tests for the bounded worker pool."""

import asyncio
import random

import pytest

from storesync.sync.batch import BatchProcessor


class TestBatchProcessor:
    async def test_never_exceeds_concurrency(self):
        in_flight = 0
        peak = 0

        async def worker(item):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(random.uniform(0, 0.005))
            in_flight -= 1
            return item * 2

        result = await BatchProcessor(concurrency=4).run(list(range(30)), worker)

        assert peak == 4
        assert result.total == result.successful == 30
        assert [r.result for r in result.results] == [i * 2 for i in range(30)]

    async def test_slow_item_does_not_block_others(self):
        order = []

        async def worker(item):
            await asyncio.sleep(0.05 if item == "slow" else 0)
            order.append(item)

        await BatchProcessor(concurrency=2).run(["slow", "a", "b", "c"], worker)
        assert order[-1] == "slow"
        assert order[:3] == ["a", "b", "c"]

    async def test_failures_are_isolated(self):
        async def worker(item):
            if item % 3 == 0:
                raise ValueError(f"bad {item}")
            return item

        result = await BatchProcessor(concurrency=3).run([1, 2, 3, 4, 5, 6], worker)

        assert (result.successful, result.failed) == (4, 2)
        failed = [r for r in result.results if not r.success]
        assert [r.item for r in failed] == [3, 6]
        assert all(isinstance(r.error, ValueError) for r in failed)

    async def test_callbacks(self):
        progress, ok, errors = [], [], []

        async def worker(item):
            if item == "x":
                raise RuntimeError("x")
            return item.upper()

        await BatchProcessor().run(
            ["a", "x", "b"],
            worker,
            on_progress=lambda done, total: progress.append((done, total)),
            on_success=lambda item, value: ok.append(value),
            on_error=lambda item, e: errors.append(item),
        )
        assert [p[0] for p in progress] == [1, 2, 3]
        assert all(p[1] == 3 for p in progress)
        assert sorted(ok) == ["A", "B"]
        assert errors == ["x"]

    async def test_callback_errors_are_ignored(self):
        def explode(*args):
            raise RuntimeError("callback bug")

        async def worker(item):
            return item

        result = await BatchProcessor().run([1, 2], worker, on_progress=explode, on_success=explode)
        assert result.successful == 2

    async def test_per_call_concurrency_override(self):
        in_flight = peak = 0

        async def worker(item):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0)
            in_flight -= 1

        await BatchProcessor(concurrency=20).run(range(10), worker, concurrency=1)
        assert peak == 1

    async def test_empty_input(self):
        async def worker(item):
            raise AssertionError("not called")

        result = await BatchProcessor().run([], worker)
        assert (result.total, result.successful, result.failed, result.results) == (0, 0, 0, [])

    async def test_rejects_zero_concurrency(self):
        async def worker(item):
            return item

        with pytest.raises(ValueError):
            await BatchProcessor().run([1], worker, concurrency=0)
