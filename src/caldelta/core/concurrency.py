"""Fan-out helper shared by the reconciler and the calendar service."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Iterable


async def gather_or_cancel[T](awaitables: Iterable[Awaitable[T]]) -> list[T]:
    """Run ``awaitables`` concurrently and return their results in order.

    On the first failure every sibling still running is cancelled (and
    awaited) before the original exception propagates, so partial results are
    never returned.
    """
    tasks = [asyncio.ensure_future(aw) for aw in awaitables]
    try:
        return list(await asyncio.gather(*tasks))
    except BaseException:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise
