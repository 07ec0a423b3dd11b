"""
Poller / Reader
Evaluates every enabled rule against the source on a fixed interval, pushes
extracted records downstream, and marks messages consumed once the writer
acknowledges them.
"""

import asyncio
import logging
from typing import Optional, Protocol, Sequence, Set

from .config import ReaderConfig
from .extractor import extract
from .models import ExtractedRecord, Rule, SourceMessage
from .streams import END_OF_STREAM, close_queue, put_until_stopped

logger = logging.getLogger(__name__)


class Source(Protocol):
    """Capability set every source adapter provides"""

    def list_matching(self, query: str) -> Sequence[str]:
        ...

    def fetch(self, message_id: str) -> SourceMessage:
        ...

    def mark_consumed(self, message_id: str) -> None:
        ...


class Poller:
    """Owns the rule set, the poll cycle and the acknowledgment loop"""

    def __init__(self, source: Source, config: ReaderConfig):
        self.source = source
        self.config = config
        self.state = "idle"
        self.poll_count = 0
        self.emitted = 0
        self.consumed = 0
        # Emitted but not yet acknowledged; skipped by later polls.
        self._in_flight: Set[str] = set()
        self._in_flight_lock = asyncio.Lock()

    async def run(self, records: asyncio.Queue, acks: asyncio.Queue, stop: asyncio.Event) -> None:
        """
        Poll until ``stop`` fires, then close ``records`` and wait (bounded)
        for the acknowledgment loop to drain.
        """
        ack_task = asyncio.create_task(self.drain_acknowledgments(acks))
        logger.info(
            f"Poller started with {len(self.config.rules)} rule(s), "
            f"interval {self.config.interval}s"
        )
        try:
            while not stop.is_set():
                await self.poll_once(records, stop)
                try:
                    await asyncio.wait_for(stop.wait(), timeout=self.config.interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            logger.info("Poller stopping, closing record stream")
            await close_queue(records, self.config.shutdown_timeout, "record")
            try:
                await asyncio.wait_for(ack_task, timeout=self.config.shutdown_timeout)
            except asyncio.TimeoutError:
                logger.warning("Acknowledgment loop did not finish in time; unacknowledged messages stay unread")
            logger.info(f"Poller stopped after {self.poll_count} poll(s), {self.consumed} message(s) consumed")

    async def poll_once(self, records: asyncio.Queue, stop: asyncio.Event) -> None:
        """One Polling state: a task per enabled rule, joined before returning to Idle"""
        self.state = "polling"
        self.poll_count += 1
        enabled = [rule for rule in self.config.rules if rule.enabled]
        for rule in self.config.rules:
            if not rule.enabled:
                logger.debug(f"Skipping disabled rule {rule.name}")
        logger.info(f"Starting rule evaluation ({len(enabled)} enabled rule(s))")

        limit = asyncio.Semaphore(self.config.max_concurrent_rules)

        async def bounded(rule: Rule) -> None:
            async with limit:
                await self.process_rule(rule, records, stop)

        try:
            await asyncio.gather(*(bounded(rule) for rule in enabled))
        finally:
            self.state = "idle"
        logger.info("Rule evaluation complete")

    async def process_rule(self, rule: Rule, records: asyncio.Queue, stop: asyncio.Event) -> None:
        try:
            message_ids = await asyncio.to_thread(self.source.list_matching, rule.query)
        except Exception as e:
            logger.error(f"Failed to list messages for rule {rule.name} ({rule.source}): {e}")
            return

        logger.info(f"Rule {rule.name} ({rule.source}) found {len(message_ids)} message(s)")
        for message_id in message_ids:
            if stop.is_set():
                return
            async with self._in_flight_lock:
                if message_id in self._in_flight:
                    logger.debug(f"Message {message_id} already in flight, skipping")
                    continue
                self._in_flight.add(message_id)
            try:
                record = await self.process_message(rule, message_id)
            except Exception as e:
                logger.error(f"Failed to process message {message_id} for rule {rule.name}: {e}")
                await self._forget(message_id)
                continue
            if record is None:
                await self._forget(message_id)
                continue
            if not await put_until_stopped(records, record, stop):
                await self._forget(message_id)
                return
            self.emitted += 1

    async def process_message(self, rule: Rule, message_id: str) -> Optional[ExtractedRecord]:
        message = await asyncio.to_thread(self.source.fetch, message_id)
        if not message.body:
            logger.warning(f"Empty message body for {message_id} (subject: {message.subject!r})")
            return None

        record = extract(message.body, rule.amount_pattern, rule.merchant_pattern, message.received_at)
        record.category, record.bucket = self.config.labels.lookup(record.merchant_info)
        record.source = rule.source
        record.currency = rule.currency
        record.labels = rule.labels
        record.message_id = message_id
        record.description = message.subject or None
        record.metadata = {"rule": rule.name, "subject": message.subject}

        logger.debug(
            f"Extracted transaction from {message_id}: amount={record.amount} "
            f"merchant={record.merchant_info!r} category={record.category!r}"
        )
        return record

    async def drain_acknowledgments(self, acks: asyncio.Queue) -> None:
        """Mark each acknowledged message consumed until the writer closes the ack queue"""
        while True:
            message_id = await acks.get()
            if message_id is END_OF_STREAM:
                logger.info("Acknowledgment stream closed")
                return
            await self.mark_consumed(message_id)

    async def mark_consumed(self, message_id: str) -> None:
        try:
            await asyncio.to_thread(self.source.mark_consumed, message_id)
        except Exception as e:
            logger.warning(f"Failed to mark message {message_id} as consumed: {e}")
        else:
            self.consumed += 1
            logger.debug(f"Marked message {message_id} as consumed")
        await self._forget(message_id)

    async def release(self, message_ids: Sequence[str]) -> None:
        """Drop ids whose acknowledgment will never arrive so a later poll re-delivers them"""
        async with self._in_flight_lock:
            self._in_flight.difference_update(message_ids)
        logger.info(f"Released {len(message_ids)} unacknowledged message(s) for re-delivery")

    async def _forget(self, message_id: str) -> None:
        async with self._in_flight_lock:
            self._in_flight.discard(message_id)
