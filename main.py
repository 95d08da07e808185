#!/usr/bin/env python3
"""
LTP Ingest - live last-traded-price ingestion

Keeps the latest traded price of every watchlist instrument fresh in the
ltp_history table, using the polling or streaming broker transport.

Usage:
    python main.py                      # Run with default config
    python main.py --config my.yaml     # Run with custom config
    python main.py --transport streaming
    python main.py --fetch-once         # One polling cycle + prune, then exit
"""

import asyncio
import argparse
import signal
import sys
from typing import Optional

from loguru import logger

from ltp_ingest.config import load_config
from ltp_ingest.core.auth import AuthProvider, StaticCredentialsProvider, StoredCredentialsProvider
from ltp_ingest.core.broker_client import BrokerClient
from ltp_ingest.database.db import Database
from ltp_ingest.ingestion.directory import InstrumentDirectory
from ltp_ingest.ingestion.price_writer import PriceWriter
from ltp_ingest.ingestion.registry import IngestionEngine
from ltp_ingest.ingestion.retention import RetentionJob
from ltp_ingest.transports.factory import build_transport, transport_factory


class LtpIngestor:
    """
    Main application class.

    Orchestrates:
    - Database and watchlist directory
    - Broker client and credentials
    - Ingestion engine (one transport)
    - Retention housekeeping
    """

    def __init__(self, config: dict):
        self.config = config

        self.db: Optional[Database] = None
        self.auth: Optional[AuthProvider] = None
        self.broker: Optional[BrokerClient] = None
        self.directory: Optional[InstrumentDirectory] = None
        self.writer: Optional[PriceWriter] = None
        self.engine: Optional[IngestionEngine] = None
        self.retention: Optional[RetentionJob] = None

        # Task tracking
        self._tasks: list[asyncio.Task] = []
        self._is_running = False
        self._stopped = asyncio.Event()

    def _setup_logging(self):
        """Configure logging"""
        log_config = self.config.get('logging', {})
        level = log_config.get('level', 'INFO')

        # Remove default handler
        logger.remove()

        logger.add(
            sys.stderr,
            level=level,
            format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
        )

        log_file = log_config.get('file')
        if log_file:
            logger.add(
                log_file,
                level=level,
                rotation="10 MB",
                retention="7 days"
            )

    async def initialize(self):
        """Initialize all components"""
        self._setup_logging()
        logger.info("Initializing LTP Ingest...")

        self.db = Database(self.config.get('database', {}).get('url', 'ltp_ingest.db'))
        await self.db.initialize()

        broker_config = self.config.get('broker', {})
        if broker_config.get('access_token'):
            self.auth = StaticCredentialsProvider(
                broker_config['access_token'], broker_config.get('feed_token')
            )
            logger.info("Using broker credentials from environment")
        else:
            self.auth = StoredCredentialsProvider(self.db)

        self.broker = BrokerClient(broker_config, auth=self.auth)
        self.directory = InstrumentDirectory(self.db)

        ingest_config = self.config.get('ingest', {})
        self.writer = PriceWriter(self.db, native_upsert=bool(ingest_config.get('native_upsert')))

        self.engine = IngestionEngine(
            transport_factory(
                ingest_config,
                broker=self.broker,
                auth=self.auth,
                directory=self.directory,
                writer=self.writer,
            ),
            directory=self.directory,
        )

        retention_config = self.config.get('retention', {})
        if retention_config.get('enabled', True):
            self.retention = RetentionJob(
                self.db,
                days=int(retention_config.get('days', 10)),
                interval=float(retention_config.get('interval', 3600)),
            )

        logger.info(f"Initialization complete (transport: {ingest_config.get('transport', 'polling')})")

    async def start(self):
        """Start ingesting and block until stop()"""
        if self._is_running:
            return

        self._is_running = True
        logger.info("Starting LTP Ingest...")

        if not await self.engine.resync_from_store():
            logger.warning("Nothing subscribed yet; waiting for watchlist tokens or a resync")

        if self.retention:
            self._tasks.append(asyncio.create_task(self.retention.start()))

        logger.info(f"LTP Ingest running: {self.engine.get_status()}")
        await self._stopped.wait()

    async def fetch_once(self) -> int:
        """One polling cycle over the whole watchlist, then prune"""
        transport = build_transport(
            {**self.config.get('ingest', {}), 'transport': 'polling'},
            broker=self.broker,
            auth=self.auth,
            directory=self.directory,
            writer=self.writer,
        )

        instruments = await self.directory.tracked_instruments()
        if not instruments:
            logger.info("No watchlist items with instrument tokens found.")
            return 0

        await transport.subscribe_identifiers([i.identifier for i in instruments])
        written = await transport.poll_once()

        if self.retention:
            await self.retention.prune_once()

        logger.info(f"LTP fetch complete: {written} prices written")
        return written

    async def stop(self):
        """Stop everything"""
        logger.info("Stopping LTP Ingest...")
        self._is_running = False

        if self.retention:
            self.retention.stop()

        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        if self.engine:
            await self.engine.disconnect()

        if self.broker:
            await self.broker.close()

        if self.db:
            await self.db.close()

        self._stopped.set()
        logger.info("LTP Ingest stopped")


async def main():
    """Main entry point"""
    parser = argparse.ArgumentParser(
        description="LTP Ingest - live last-traded-price ingestion"
    )
    parser.add_argument(
        '--config', '-c',
        default='config.yaml',
        help='Path to configuration file'
    )
    parser.add_argument(
        '--transport', '-t',
        choices=['polling', 'streaming'],
        help='Override the configured transport'
    )
    parser.add_argument(
        '--fetch-once',
        action='store_true',
        help='Run a single polling cycle and retention prune, then exit'
    )

    args = parser.parse_args()

    config = load_config(args.config)
    if args.transport:
        config['ingest']['transport'] = args.transport

    app = LtpIngestor(config)

    if args.fetch_once:
        try:
            await app.initialize()
            await app.fetch_once()
        finally:
            await app.stop()
        return

    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        asyncio.create_task(app.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await app.initialize()
        await app.start()
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    finally:
        if app._is_running:
            await app.stop()


if __name__ == "__main__":
    asyncio.run(main())
