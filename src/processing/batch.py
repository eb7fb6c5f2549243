import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Sequence, TypeVar

from core.entities import ItemResult
from core.errors import RunCancelled
from services.rate_limiter import TokenBucket

logger = logging.getLogger(__name__)

ItemT = TypeVar("ItemT")
ValueT = TypeVar("ValueT")


async def map_isolated(
    items: Sequence[ItemT],
    worker: Callable[[ItemT], Awaitable[ValueT]],
    *,
    concurrency: int = 1,
    limiter: Optional[TokenBucket] = None,
    cancel_event: Optional[asyncio.Event] = None,
) -> List[ItemResult[ValueT]]:
    """
    Run `worker` once per item with at most `concurrency` calls in flight.

    A worker exception is captured on that item's ItemResult and never stops
    the batch. Results come back in input order whatever the completion order.
    Cancellation is checked before each call: items already started finish,
    the rest are skipped and RunCancelled is raised once the batch settles.
    """
    semaphore = asyncio.Semaphore(max(1, concurrency))
    results: List[Optional[ItemResult[ValueT]]] = [None] * len(items)

    def _cancelled() -> bool:
        return cancel_event is not None and cancel_event.is_set()

    async def _run(index: int, item: ItemT) -> None:
        async with semaphore:
            if _cancelled():
                raise RunCancelled()
            if limiter is not None:
                await limiter.acquire()
                if _cancelled():
                    raise RunCancelled()
            try:
                results[index] = ItemResult(index=index, value=await worker(item))
            except Exception as e:
                results[index] = ItemResult(index=index, error=e)

    outcomes = await asyncio.gather(
        *(_run(i, item) for i, item in enumerate(items)),
        return_exceptions=True,
    )
    for outcome in outcomes:
        if isinstance(outcome, BaseException):
            raise outcome

    return results
