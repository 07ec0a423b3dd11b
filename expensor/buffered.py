"""
Buffered Batch Writer
Consumes records from a queue and hands them to a sink in batches bounded by
count and time. Acknowledgments are emitted only for successfully flushed records.
"""

import asyncio
import json
import logging
import os
from typing import Awaitable, Callable, List, Optional, Sequence

from .errors import ShutdownRequested, SinkFlushError
from .models import ExtractedRecord
from .streams import END_OF_STREAM, close_queue

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 10
DEFAULT_FLUSH_INTERVAL = 30.0
DEFAULT_ACK_TIMEOUT = 5.0

Flusher = Callable[[List[ExtractedRecord]], None]
Releaser = Callable[[List[str]], Awaitable[None]]


class BufferedWriter:
    """Generic batching loop around a sink's flush function"""

    def __init__(
        self,
        flush: Flusher,
        batch_size: int = DEFAULT_BATCH_SIZE,
        flush_interval: float = DEFAULT_FLUSH_INTERVAL,
        name: str = "sink",
        ack_timeout: float = DEFAULT_ACK_TIMEOUT,
        dead_letter_path: Optional[str] = None,
        release: Optional[Releaser] = None,
    ):
        """
        Args:
            flush: Blocking callable persisting a batch; raises on failure
            batch_size: Record count that triggers an immediate flush
            flush_interval: Seconds between timer-driven flushes
            name: Sink name used in logs and errors
            ack_timeout: Max seconds to wait for room on the ack queue per id
            dead_letter_path: JSON-lines file receiving batches that failed to flush
            release: Coroutine function handed the ids whose acks were dropped
        """
        self._flush_fn = flush
        self.batch_size = batch_size if batch_size > 0 else DEFAULT_BATCH_SIZE
        self.flush_interval = flush_interval if flush_interval > 0 else DEFAULT_FLUSH_INTERVAL
        self.name = name
        self.ack_timeout = ack_timeout
        self.dead_letter_path = dead_letter_path
        self._release = release

        self._buffer: List[ExtractedRecord] = []
        self.flushed = 0
        self.acked = 0

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    async def run(self, records: asyncio.Queue, acks: asyncio.Queue, stop: asyncio.Event) -> None:
        """
        Consume ``records`` until end-of-stream or ``stop``.

        Raises:
            ShutdownRequested: stop fired and the final flush succeeded
            SinkFlushError: a flush failed; the run ends
        """
        logger.info(
            f"Buffered writer for {self.name} started "
            f"(batch_size={self.batch_size}, flush_interval={self.flush_interval}s)"
        )
        loop = asyncio.get_running_loop()
        next_tick = loop.time() + self.flush_interval
        getter: Optional[asyncio.Future] = None
        stopped = asyncio.ensure_future(stop.wait())

        try:
            while True:
                if getter is None:
                    getter = asyncio.ensure_future(records.get())
                timeout = max(0.0, next_tick - loop.time())
                done, _ = await asyncio.wait(
                    {getter, stopped}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
                )

                if getter in done:
                    item = getter.result()
                    getter = None
                    if item is END_OF_STREAM:
                        logger.info(f"Record stream for {self.name} closed, flushing remaining buffer")
                        await self._flush(acks)
                        return
                    self._buffer.append(item)
                    if stopped not in done and len(self._buffer) >= self.batch_size:
                        await self._flush(acks)

                if stopped in done:
                    logger.info(f"Buffered writer for {self.name} stopping, flushing remaining buffer")
                    await self._flush(acks)
                    raise ShutdownRequested(f"{self.name} writer stopped")

                now = loop.time()
                if now >= next_tick:
                    while next_tick <= now:
                        next_tick += self.flush_interval
                    if self._buffer:
                        logger.debug(f"Flush interval elapsed for {self.name}")
                        await self._flush(acks)
        finally:
            stopped.cancel()
            if getter is not None:
                getter.cancel()
            await close_queue(acks, self.ack_timeout, "acknowledgment")

    async def _flush(self, acks: asyncio.Queue) -> None:
        if not self._buffer:
            return
        batch, self._buffer = self._buffer, []

        logger.debug(f"Flushing {len(batch)} record(s) to {self.name}")
        try:
            await asyncio.to_thread(self._flush_fn, batch)
        except Exception as e:
            logger.error(
                f"Flush to {self.name} failed for {len(batch)} record(s) "
                f"(message ids: {[r.message_id for r in batch]}): {e}"
            )
            self._dead_letter(batch)
            if isinstance(e, SinkFlushError):
                raise
            raise SinkFlushError(self.name, len(batch), str(e)) from e

        self.flushed += len(batch)
        logger.info(f"Flushed {len(batch)} record(s) to {self.name}")
        await self._acknowledge(batch, acks)

    async def _acknowledge(self, batch: Sequence[ExtractedRecord], acks: asyncio.Queue) -> None:
        pending = [record.message_id for record in batch if record.message_id]
        for position, message_id in enumerate(pending):
            try:
                await asyncio.wait_for(acks.put(message_id), timeout=self.ack_timeout)
            except asyncio.TimeoutError:
                dropped = pending[position:]
                logger.warning(
                    f"Acknowledgment queue stalled; dropping {len(dropped)} ack(s) for {self.name} "
                    f"starting at {message_id}"
                )
                if self._release is not None:
                    await self._release(dropped)
                return
            self.acked += 1

    def _dead_letter(self, batch: Sequence[ExtractedRecord]) -> None:
        if not self.dead_letter_path:
            return
        try:
            directory = os.path.dirname(self.dead_letter_path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            with open(self.dead_letter_path, "a", encoding="utf-8") as f:
                for record in batch:
                    f.write(json.dumps({"sink": self.name, **record.to_dict()}) + "\n")
            logger.warning(f"Wrote {len(batch)} record(s) to dead-letter file {self.dead_letter_path}")
        except OSError as e:
            logger.error(f"Could not write dead-letter file {self.dead_letter_path}: {e}")
