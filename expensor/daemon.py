#!/usr/bin/env python3
"""
Expensor daemon
Wires the poller, the batch writer and the configured sink together and runs
them until SIGINT/SIGTERM.
"""

import asyncio
import logging
import signal
import sys
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from .auth import authorized_session
from .buffered import BufferedWriter
from .config import Settings
from .errors import ConfigurationError, ExpensorError, ShutdownRequested, SinkFlushError
from .health import HealthServer
from .log import configure_logging
from .poller import Poller
from .registry import Registry, default_registry

logger = logging.getLogger(__name__)


@dataclass
class Pipeline:
    poller: Poller
    writer: BufferedWriter
    sink: Any


class Runner:
    """Builds the pipeline from settings and manages its lifecycle"""

    def __init__(
        self,
        registry: Registry,
        session=None,
        session_factory: Callable = authorized_session,
    ):
        self.registry = registry
        self.session = session
        self.session_factory = session_factory
        self.pipeline: Optional[Pipeline] = None
        self.writer_error: Optional[BaseException] = None

    def build(self, settings: Settings) -> Pipeline:
        """
        Resolve plugins and validate every payload.

        Raises:
            ConfigurationError: anything malformed; raised before any polling starts
        """
        reader_plugin = self.registry.get_reader(settings.reader)
        writer_plugin = self.registry.get_writer(settings.writer)
        reader_payload = settings.reader_payload()
        writer_payload = settings.writer_payload()

        scopes = self.registry.all_scopes(settings.reader, settings.writer)
        logger.info(f"Configuration loaded (reader={settings.reader}, writer={settings.writer}, scopes={scopes})")
        if self.session is None and scopes:
            self.session = self.session_factory(settings.token_file, scopes)

        source, reader_config = reader_plugin.create(
            self.session, reader_payload, settings.base_currency, settings.shutdown_timeout
        )
        sink, buffer_config = writer_plugin.create(self.session, writer_payload, settings.base_currency)
        logger.info(f"Loaded {len(reader_config.rules)} rule(s) and {len(reader_config.labels)} label(s)")

        poller = Poller(source, reader_config)
        writer = BufferedWriter(
            sink.flush,
            batch_size=buffer_config.batch_size,
            flush_interval=float(buffer_config.flush_interval),
            name=sink.name,
            dead_letter_path=buffer_config.dead_letter_path,
            release=poller.release,
        )
        return Pipeline(poller=poller, writer=writer, sink=sink)

    def stats(self) -> Dict[str, Any]:
        if self.pipeline is None:
            return {"status": "starting"}
        poller, writer = self.pipeline.poller, self.pipeline.writer
        return {
            "status": "unhealthy" if self.writer_error else "healthy",
            "sink": self.pipeline.sink.name,
            "poller_state": poller.state,
            "polls": poller.poll_count,
            "emitted": poller.emitted,
            "consumed": poller.consumed,
            "buffered": writer.buffered,
            "flushed": writer.flushed,
            "acknowledged": writer.acked,
        }

    async def run(self, settings: Settings, stop: asyncio.Event) -> None:
        """
        Run until ``stop`` fires or the writer fails.

        Raises:
            ConfigurationError: invalid configuration (nothing was polled)
            SinkFlushError: the writer stopped on a batch-fatal error
        """
        pipeline = self.build(settings)
        try:
            await asyncio.to_thread(pipeline.sink.open)
        except ExpensorError:
            raise
        except Exception as e:
            raise ExpensorError(f"opening {pipeline.sink.name} sink failed: {e}") from e
        self.pipeline = pipeline

        health = None
        if settings.health_port:
            health = HealthServer(self.stats)
            await health.start("0.0.0.0", settings.health_port)

        records: asyncio.Queue = asyncio.Queue(maxsize=settings.queue_size)
        acks: asyncio.Queue = asyncio.Queue(maxsize=settings.queue_size)
        writer_task = asyncio.create_task(pipeline.writer.run(records, acks, stop))
        poller_task = asyncio.create_task(pipeline.poller.run(records, acks, stop))
        logger.info("Daemon started")

        try:
            try:
                await writer_task
            except ShutdownRequested:
                logger.info("Writer finished final flush")
            except SinkFlushError as e:
                self.writer_error = e
                logger.error(f"Writer error: {e}")
                stop.set()
            await poller_task
        finally:
            if not poller_task.done():
                stop.set()
                poller_task.cancel()
            try:
                await asyncio.to_thread(pipeline.sink.close)
            except Exception as e:
                logger.error(f"Closing {pipeline.sink.name} sink failed: {e}")
            if health is not None:
                await health.stop()

        if self.writer_error is not None:
            raise self.writer_error
        logger.info("Daemon stopped")


def _request_stop(stop: asyncio.Event, sig: signal.Signals) -> None:
    logger.info(f"Received shutdown signal {sig.name}")
    stop.set()


async def serve(settings: Settings, registry: Optional[Registry] = None) -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _request_stop, stop, sig)
        except NotImplementedError:
            logger.debug(f"Signal handlers unavailable for {sig.name} on this platform")
    await Runner(registry or default_registry()).run(settings, stop)


def main() -> int:
    """Process entry point; returns the exit code"""
    try:
        settings = Settings.from_env()
    except ConfigurationError as e:
        configure_logging()
        logger.error(f"Configuration error: {e}")
        return 1

    configure_logging(settings.log_level, settings.log_dir)
    logger.info("Starting expensor daemon")
    try:
        asyncio.run(serve(settings))
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return 1
    except SinkFlushError as e:
        logger.error(f"Pipeline stopped with fatal sink error: {e}")
        return 1
    except ExpensorError as e:
        logger.error(f"Daemon failed: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
