"""
Polling transport: fetch LTP for every tracked instrument on a fixed timer.
No persistent connection; the cycle interval doubles as the retry throttle.
"""

import asyncio
from datetime import datetime
from typing import Dict, Iterable, Optional, Set

from loguru import logger

from ..core.broker_client import BrokerClient
from ..errors import AuthFailure
from ..ingestion.directory import InstrumentDirectory
from ..ingestion.grouping import MAX_BATCH, group_by_venue
from ..ingestion.price_writer import PriceWriter
from ..ingestion.types import TrackedInstrument
from .base import Transport


class PollingTransport(Transport):
    """
    Periodically request current prices for all tracked instruments.

    Each cycle:
    - Groups instruments by venue in chunks of at most batch_size
    - Fetches chunks sequentially with batch_delay between calls
    - Writes each returned price straight to the PriceWriter
    """

    name = "polling"

    def __init__(
        self,
        broker: BrokerClient,
        directory: InstrumentDirectory,
        writer: PriceWriter,
        poll_interval: float = 7.0,
        batch_size: int = MAX_BATCH,
        batch_delay: float = 1.0,
    ):
        """
        Initialize the polling transport.

        Args:
            broker: Broker client used for quote requests
            directory: Resolves identifiers to symbol and venue
            writer: Persistence layer for observed prices
            poll_interval: Seconds between poll cycles
            batch_size: Max identifiers per quote request
            batch_delay: Seconds to wait between quote requests
        """
        self.broker = broker
        self.directory = directory
        self.writer = writer
        self.poll_interval = poll_interval
        self.batch_size = batch_size
        self.batch_delay = batch_delay

        # identifier -> instrument
        self._tracked: Dict[str, TrackedInstrument] = {}
        self._reported_unfetchable: Set[str] = set()

        self._running = False
        self._task: Optional[asyncio.Task] = None

        # Stats
        self._cycles = 0
        self._written = 0
        self._failed_batches = 0
        self._last_poll_time: Optional[datetime] = None

        # Set while the broker rejects our credentials; cleared by the next successful fetch
        self._auth_error: Optional[str] = None

    async def start(self) -> bool:
        if self._running:
            return True

        self._running = True
        self._task = asyncio.create_task(self._poll_loop())
        logger.info(f"PollingTransport started (every {self.poll_interval}s)")
        return True

    async def disconnect(self):
        self._running = False
        task, self._task = self._task, None

        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        logger.info("PollingTransport stopped")

    async def subscribe_identifiers(self, identifiers: Iterable[str]) -> bool:
        wanted = list(dict.fromkeys(str(i) for i in identifiers if i))
        if not wanted:
            return False

        missing = [i for i in wanted if i not in self._tracked]
        if not missing:
            return True

        try:
            found = await self.directory.lookup_many(missing)
        except Exception as e:
            logger.error(f"PollingTransport: error looking up tokens: {e}")
            return False

        self._tracked.update(found)

        unresolved = [i for i in missing if i not in found]
        if unresolved:
            logger.warning(f"PollingTransport: {len(unresolved)} unknown tokens ignored: {unresolved[:10]}")

        logger.info(
            f"PollingTransport: subscribed to {len(found)} new tokens. "
            f"Total: {len(self._tracked)}"
        )
        return bool(found) or len(missing) < len(wanted)

    async def _poll_loop(self):
        while self._running:
            try:
                if self._tracked:
                    await self.poll_once()
            except Exception as e:
                logger.error(f"PollingTransport: poll cycle failed: {e}")

            await asyncio.sleep(self.poll_interval)

    async def poll_once(self) -> int:
        """
        Run a single fetch-and-save cycle.

        Returns:
            Number of prices written
        """
        start_time = datetime.utcnow()
        self.writer.roll_day()

        grouping = group_by_venue(list(self._tracked.values()), self.batch_size)
        self._report_unfetchable(grouping.unfetchable)

        written = 0
        for i, request in enumerate(grouping.requests()):
            if i:
                await asyncio.sleep(self.batch_delay)

            venue = next(iter(request))
            try:
                quotes = await self.broker.fetch_prices(request)
            except AuthFailure as e:
                # Every batch shares the credentials; wait for an external token refresh
                if self._auth_error is None:
                    logger.error(f"PollingTransport: broker rejected credentials, run token refresh ({e})")
                else:
                    logger.debug(f"PollingTransport: credentials still rejected ({e})")
                self._auth_error = str(e) or type(e).__name__
                break
            except Exception as e:
                self._failed_batches += 1
                logger.error(f"PollingTransport: batch fetch failed for {venue} ({len(request[venue])} tokens): {e}")
                continue

            if self._auth_error is not None:
                logger.info("PollingTransport: credentials accepted again")
                self._auth_error = None

            for quote in quotes:
                if quote.price is None:
                    continue

                inst = self._tracked.get(quote.identifier)
                if inst is None:
                    continue

                try:
                    await self.writer.observe(inst.symbol, inst.venue, quote.price)
                    written += 1
                except Exception as e:
                    logger.error(f"PollingTransport: failed to save {inst.symbol}: {e}")

        self._cycles += 1
        self._written += written
        self._last_poll_time = datetime.utcnow()
        elapsed = (self._last_poll_time - start_time).total_seconds()
        logger.debug(
            f"Poll cycle: {grouping.identifier_count} tokens, {written} written, {elapsed:.2f}s"
        )
        return written

    def _report_unfetchable(self, instruments):
        fresh = [i for i in instruments if i.identifier not in self._reported_unfetchable]
        if fresh:
            self._reported_unfetchable.update(i.identifier for i in fresh)
            logger.warning(
                f"PollingTransport: unfetchable, no venue: {[i.symbol for i in fresh]}"
            )

    def get_status(self) -> dict:
        return {
            "transport": self.name,
            "running": self._running and self._auth_error is None,
            "subscribed_count": len(self._tracked),
            "last_error": self._auth_error,
            "cycles": self._cycles,
            "written": self._written,
            "failed_batches": self._failed_batches,
            "last_poll": self._last_poll_time.isoformat() if self._last_poll_time else None,
        }
