"""Tests for the gather_or_cancel fan-out helper."""

from __future__ import annotations

import asyncio

import pytest

from caldelta.core.concurrency import gather_or_cancel

pytestmark = pytest.mark.unit


class TestGatherOrCancel:
    async def test_results_follow_input_order(self):
        async def value(n: int, delay: float) -> int:
            await asyncio.sleep(delay)
            return n

        results = await gather_or_cancel([value(1, 0.02), value(2, 0), value(3, 0.01)])

        assert results == [1, 2, 3]

    async def test_empty_input(self):
        assert await gather_or_cancel([]) == []

    async def test_first_failure_cancels_siblings(self):
        cancelled = asyncio.Event()

        async def slow() -> int:
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled.set()
                raise
            return 1

        async def boom() -> int:
            await asyncio.sleep(0)
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError, match="boom"):
            await gather_or_cancel([slow(), boom()])

        assert cancelled.is_set()

    async def test_outer_cancel_cancels_children(self):
        started = asyncio.Event()
        cancelled = asyncio.Event()

        async def child() -> None:
            started.set()
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled.set()
                raise

        task = asyncio.create_task(gather_or_cancel([child()]))
        await started.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert cancelled.is_set()
