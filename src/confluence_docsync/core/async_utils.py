"""Async utilities for bridging blocking REST calls into the sync driver."""

import asyncio
import logging
from typing import Any, Callable, Coroutine, Sequence, TypeVar

T = TypeVar("T")
logger = logging.getLogger(__name__)


async def run_sync(
    func: Callable[..., T], *args: Any, **kwargs: Any
) -> T:
    """Run a synchronous function in a thread pool without blocking the event loop.

    Args:
        func: Synchronous function to call
        *args: Positional arguments for func
        **kwargs: Keyword arguments for func

    Returns:
        Result of func(*args, **kwargs)

    Example:
        page = await run_sync(client.get_page, page_id)
    """
    return await asyncio.to_thread(func, *args, **kwargs)


async def run_limited(
    semaphore: asyncio.Semaphore,
    func: Callable[..., T],
    *args: Any,
    **kwargs: Any,
) -> T:
    """Run a synchronous function in a thread pool, bounded by *semaphore*.

    The semaphore is owned by the caller (one per sync run), so concurrent
    runs never share a limit.
    """
    async with semaphore:
        return await asyncio.to_thread(func, *args, **kwargs)


async def gather_limited(
    coros: Sequence[Coroutine[Any, Any, T]],
) -> list[T]:
    """Run coroutines concurrently and return their results in order.

    Each coroutine should use run_limited internally. Exceptions propagate
    from the first failure.
    """
    return list(await asyncio.gather(*coros))
