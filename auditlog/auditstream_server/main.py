"""
AuditStream Server - Main entry point.

This module starts the delivery engine with all components:
- Stream registry and dead-letter stores (SQLite or in-memory)
- EventBuffer and DeliveryScheduler (buffer -> HTTP destinations)
- HTTP API (stream management, ingest, dead-letter operations)
- Optional Kafka ingest consumer (topic -> buffer)

Usage:
    python -m auditlog.auditstream_server.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - Interrupted dead-letter replays are reset before delivery starts
    - The HTTP API stops accepting events before the scheduler stops
    - Events still buffered at shutdown are not delivered (the buffer is
      in memory); Kafka records they came from stay uncommitted

How to change safely:
    - Keep the shutdown order: ingest, HTTP, scheduler, worker, stores
    - Test shutdown with deliveries in flight
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from pathlib import Path

import json_log_formatter
from aiohttp import web

from .api import ApiServices, create_http_app, start_http_server
from .buffer import EventBuffer
from .config import IngestBackend, ServerConfig, StorageBackend
from .crypto import SecretCipher
from .deadletter import (
    DeadLetterSink,
    DeadLetterStore,
    InMemoryDeadLetterStore,
    SqliteDeadLetterStore,
)
from .delivery import DeliveryWorker
from .ingest import EventSource, IngestConsumer, create_event_source
from .registry import (
    DestinationStore,
    InMemoryDestinationStore,
    SqliteDestinationStore,
    StreamRegistry,
)
from .scheduler import DeliveryScheduler

logger = logging.getLogger(__name__)


def setup_logging(config: ServerConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Server configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    formatter: logging.Formatter
    if config.observability.log_format == "json":
        formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("aiokafka").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)


class Server:
    """AuditStream server orchestrator.

    Attributes:
        config: Server configuration
        registry: Stream destination registry
        buffer: Per-project event buffer
        dead_letters: Dead-letter sink
        worker: HTTP delivery worker
        scheduler: Delivery scheduler
        consumer: Kafka ingest consumer (INGEST_BACKEND=kafka only)

    Example:
        >>> server = Server()
        >>> await server.start()
        >>> # Server is running until request_shutdown()
        >>> await server.stop()
    """

    def __init__(self, config: ServerConfig | None = None) -> None:
        """Initialize the server.

        Args:
            config: Optional server configuration (loaded from env if not provided)
        """
        self.config = config or ServerConfig.from_env()
        self._running = False
        self._shutdown_event = asyncio.Event()

        # Components (initialized in start())
        self.registry: StreamRegistry | None = None
        self.buffer: EventBuffer | None = None
        self.dead_letters: DeadLetterSink | None = None
        self.worker: DeliveryWorker | None = None
        self.scheduler: DeliveryScheduler | None = None
        self.source: EventSource | None = None
        self.consumer: IngestConsumer | None = None
        self._http_runner: web.AppRunner | None = None

        # Background tasks
        self._tasks: list[asyncio.Task] = []

    async def _create_stores(self) -> tuple[DestinationStore, DeadLetterStore]:
        storage = self.config.storage
        if storage.backend == StorageBackend.MEMORY:
            logger.warning("Using in-memory storage; streams and dead letters are not durable")
            return InMemoryDestinationStore(), InMemoryDeadLetterStore()

        data_dir = Path(storage.data_dir)
        data_dir.mkdir(parents=True, exist_ok=True)
        cipher = SecretCipher(self.config.secrets.encryption_key)

        destination_store = SqliteDestinationStore(
            str(data_dir / storage.registry_db),
            cipher,
            wal_mode=storage.wal_mode,
            busy_timeout_ms=storage.busy_timeout_ms,
        )
        dead_letter_store = SqliteDeadLetterStore(
            str(data_dir / storage.dead_letter_db),
            cipher,
            wal_mode=storage.wal_mode,
            busy_timeout_ms=storage.busy_timeout_ms,
        )
        await destination_store.initialize()
        await dead_letter_store.initialize()
        return destination_store, dead_letter_store

    async def start(self) -> None:
        """Start the server and block until shutdown is requested."""
        if self._running:
            logger.warning("Server already running")
            return

        logger.info("Starting AuditStream server")
        self.config.log_config()

        try:
            destination_store, dead_letter_store = await self._create_stores()

            self.registry = StreamRegistry(destination_store)
            self.buffer = EventBuffer(
                capacity=self.config.buffer.capacity,
                overflow_policy=self.config.buffer.overflow_policy,
            )
            self.dead_letters = DeadLetterSink(dead_letter_store, self.buffer)
            await self.dead_letters.recover()

            self.worker = DeliveryWorker(self.config.delivery, self.config.breaker)
            self.scheduler = DeliveryScheduler(
                self.buffer,
                self.registry,
                self.worker,
                self.dead_letters,
                self.config.scheduler,
            )
            self._tasks.append(asyncio.create_task(self.scheduler.start()))

            if self.config.ingest.backend == IngestBackend.KAFKA:
                self.source = create_event_source(self.config.ingest)
                await self.source.connect()
                self.consumer = IngestConsumer(
                    self.source,
                    self.buffer,
                    topic=self.config.ingest.topic,
                    group_id=self.config.ingest.consumer_group,
                )
                self._tasks.append(asyncio.create_task(self.consumer.start()))

            app = create_http_app(
                ApiServices(
                    registry=self.registry,
                    buffer=self.buffer,
                    dead_letters=self.dead_letters,
                    scheduler=self.scheduler,
                    worker=self.worker,
                    consumer=self.consumer,
                )
            )
            self._http_runner = await start_http_server(
                app, self.config.http.host, self.config.http.port
            )

            self._running = True
            logger.info("AuditStream server started successfully")

            # Wait for shutdown signal
            await self._shutdown_event.wait()

        except Exception as e:
            logger.error(f"Server startup failed: {e}", exc_info=True)
            self._running = True
            await self.stop()
            raise

    async def stop(self) -> None:
        """Stop the server gracefully."""
        if not self._running:
            return

        logger.info("Stopping AuditStream server")

        if self.consumer:
            await self.consumer.stop()

        if self._http_runner:
            await self._http_runner.cleanup()
            self._http_runner = None

        if self.scheduler:
            await self.scheduler.stop()

        # Stop background loops
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        if self.worker:
            await self.worker.close()

        if self.source:
            await self.source.close()

        self._running = False
        logger.info("AuditStream server stopped")

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()


def main() -> None:
    """Main entry point."""
    # Load configuration
    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)

    server = Server(config)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        server.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    try:
        loop.run_until_complete(server.start())
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(server.stop())
        loop.close()


if __name__ == "__main__":
    main()
