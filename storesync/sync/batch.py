"""
Bounded-concurrency fan-out over independent items.

A fixed number of worker coroutines pull the next item as soon as they finish
the previous one, so slow items never hold back a whole chunk.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, List, Optional, Sequence, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_CONCURRENCY = 20


@dataclass
class ItemResult(Generic[T]):
    item: T
    success: bool
    result: Any = None
    error: Optional[BaseException] = None


@dataclass
class BatchResult(Generic[T]):
    total: int
    successful: int
    failed: int
    duration_ms: int
    results: List[ItemResult[T]] = field(default_factory=list)


class BatchProcessor:
    def __init__(self, concurrency: int = DEFAULT_CONCURRENCY):
        self.concurrency = concurrency

    async def run(
        self,
        items: Sequence[T],
        worker: Callable[[T], Awaitable[Any]],
        *,
        concurrency: Optional[int] = None,
        on_progress: Optional[Callable[[int, int], None]] = None,
        on_success: Optional[Callable[[T, Any], None]] = None,
        on_error: Optional[Callable[[T, BaseException], None]] = None,
    ) -> BatchResult[T]:
        """
        Run ``worker`` over ``items`` with at most ``concurrency`` in flight.

        A failing item is recorded in its own ItemResult and never stops the
        batch. ``results`` follows input order, not completion order.
        """
        limit = concurrency if concurrency is not None else self.concurrency
        if limit < 1:
            raise ValueError("concurrency must be >= 1")

        items = list(items)
        total = len(items)
        results: List[Optional[ItemResult[T]]] = [None] * total
        started = time.perf_counter()
        next_index = 0
        processed = 0

        logger.info("starting batch processing", extra={"total_items": total, "concurrency": limit})

        async def run_one(index: int) -> None:
            nonlocal processed
            item = items[index]
            try:
                value = await worker(item)
            except Exception as e:
                results[index] = ItemResult(item=item, success=False, error=e)
                _safe_call(on_error, item, e)
            else:
                results[index] = ItemResult(item=item, success=True, result=value)
                _safe_call(on_success, item, value)
            processed += 1
            _safe_call(on_progress, processed, total)

        async def pool_worker() -> None:
            nonlocal next_index
            while next_index < total:
                index = next_index
                next_index += 1
                await run_one(index)

        await asyncio.gather(*(pool_worker() for _ in range(min(limit, total))))

        done = [r for r in results if r is not None]
        successful = sum(1 for r in done if r.success)
        duration_ms = int((time.perf_counter() - started) * 1000)

        logger.info(
            "batch processing completed",
            extra={"total": total, "successful": successful, "failed": total - successful,
                   "duration_ms": duration_ms},
        )
        return BatchResult(total=total, successful=successful, failed=total - successful,
                           duration_ms=duration_ms, results=done)


def _safe_call(callback: Optional[Callable[..., Any]], *args: Any) -> None:
    if callback is None:
        return
    try:
        callback(*args)
    except Exception:
        logger.exception("batch callback raised; ignoring")
