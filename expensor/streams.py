"""
Queue helpers shared by the poller and the batch writer
"""

import asyncio
import logging
from typing import Any

logger = logging.getLogger(__name__)


class _EndOfStream:
    def __repr__(self) -> str:
        return "END_OF_STREAM"


END_OF_STREAM = _EndOfStream()


async def put_until_stopped(queue: asyncio.Queue, item: Any, stop: asyncio.Event) -> bool:
    """
    Put ``item`` on a bounded queue, waiting for room, unless ``stop`` fires first.

    Returns:
        True if the item was queued, False if the stop signal won
    """
    if stop.is_set():
        return False
    put = asyncio.ensure_future(queue.put(item))
    stopped = asyncio.ensure_future(stop.wait())
    try:
        await asyncio.wait({put, stopped}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        stopped.cancel()
    if put.done() and not put.cancelled():
        return True
    put.cancel()
    return False


async def close_queue(queue: asyncio.Queue, timeout: float, name: str) -> bool:
    """Send the end-of-stream marker, giving up after ``timeout`` seconds"""
    try:
        await asyncio.wait_for(queue.put(END_OF_STREAM), timeout=timeout)
        return True
    except asyncio.TimeoutError:
        logger.warning(f"Could not close {name} queue within {timeout}s; consumer is gone")
        return False
