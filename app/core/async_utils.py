"""
Async utilities for wrapping synchronous ledger and journal calls.

Provides run_sync() to offload blocking database I/O to threads so a
metering tick never stalls the event loop for other live calls.
"""

import asyncio
import logging
import time
from typing import Any, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def run_sync(func: Callable[..., T], *args: Any) -> T:
    """
    Run a synchronous function in a worker thread without blocking the loop.

    If the awaiting task is cancelled, the call is allowed to finish before
    CancelledError propagates: a thread cannot be interrupted, and callers
    rely on its writes having landed once the task is done.

    Args:
        func: Synchronous callable to execute.
        *args: Positional arguments forwarded to func.

    Returns:
        The return value of func(*args).

    Raises:
        Exception: Any exception raised by func propagates unchanged.
    """
    name = getattr(func, "__qualname__", None) or getattr(func, "__name__", repr(func))
    start = time.perf_counter()
    future = asyncio.ensure_future(asyncio.to_thread(func, *args))
    try:
        result = await asyncio.shield(future)
    except asyncio.CancelledError:
        try:
            await future
        except Exception:
            logger.exception("run_sync %s failed after cancellation", name)
        raise
    elapsed = (time.perf_counter() - start) * 1000
    logger.debug("run_sync %s completed in %.2fms", name, elapsed)
    return result
