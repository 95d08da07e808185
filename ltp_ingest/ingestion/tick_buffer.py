"""
Tick coalescing between periodic flushes.

Ticks arrive far faster than the store should be written to, so only the
latest observation per identifier survives until the next flush. Earlier
ticks within the same interval are overwritten.
"""

import asyncio
from collections import OrderedDict
from datetime import date
from typing import Dict, Iterable, Optional

from loguru import logger

from ..errors import ResolutionFailure
from .directory import InstrumentDirectory
from .price_writer import PriceWriter
from .types import PriceObservation

DEFAULT_CAPACITY = 10_000


class TickBuffer:
    """
    Bounded identifier -> latest observation map.

    When full, a tick for a new identifier evicts the identifier that was
    updated least recently.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        if capacity < 1:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self.capacity = capacity
        self._ticks: "OrderedDict[str, PriceObservation]" = OrderedDict()

        # Stats
        self._received = 0
        self._evicted = 0

    def __len__(self):
        return len(self._ticks)

    def put(self, obs: PriceObservation):
        self._received += 1
        key = obs.identifier

        if key in self._ticks:
            self._ticks.move_to_end(key)
        elif len(self._ticks) >= self.capacity:
            evicted, _ = self._ticks.popitem(last=False)
            self._evicted += 1
            logger.debug(f"Tick buffer full, evicted {evicted}")

        self._ticks[key] = obs

    def restore(self, observations: Iterable[PriceObservation]) -> int:
        """
        Put back observations that were taken but never written.

        A tick that arrived for the same identifier since the snapshot is
        newer and is kept. Entries that no longer fit are dropped.

        Returns:
            Number of observations restored
        """
        restored = 0
        # Restored entries are older than anything buffered since the snapshot
        for obs in reversed(list(observations)):
            if obs.identifier in self._ticks:
                continue
            if len(self._ticks) >= self.capacity:
                self._evicted += 1
                continue
            self._ticks[obs.identifier] = obs
            self._ticks.move_to_end(obs.identifier, last=False)
            restored += 1
        return restored

    def snapshot_and_clear(self) -> Dict[str, PriceObservation]:
        """Swap in a fresh buffer and hand back the old one. Never awaits."""
        snapshot, self._ticks = self._ticks, OrderedDict()
        return snapshot

    def get_stats(self) -> dict:
        return {
            "pending": len(self._ticks),
            "received": self._received,
            "evicted": self._evicted,
        }


class FlushScheduler:
    """
    Drains a TickBuffer into the PriceWriter on a fixed interval.

    Missing symbols are resolved through a local identifier -> symbol map,
    falling back to the instrument directory.
    """

    def __init__(
        self,
        buffer: TickBuffer,
        writer: PriceWriter,
        directory: InstrumentDirectory,
    ):
        self.buffer = buffer
        self.writer = writer
        self.directory = directory

        self._symbols: Dict[str, str] = {}
        self._venues: Dict[str, Optional[str]] = {}
        self._last_flush_day: Optional[date] = None

        # Stats
        self._flushes = 0
        self._written = 0
        self._dropped = 0

    async def _resolve(self, obs: PriceObservation):
        ident = obs.identifier
        if ident not in self._symbols:
            inst = await self.directory.resolve(ident)
            self._symbols[ident] = inst.symbol
            self._venues[ident] = inst.venue
        return self._symbols[ident], obs.venue or self._venues.get(ident)

    async def flush(self) -> int:
        """
        Persist everything buffered since the last flush.

        Returns:
            Number of observations written
        """
        snapshot = self.buffer.snapshot_and_clear()

        today = self.writer.today()
        if self._last_flush_day != today:
            self.writer.roll_day(today)
            self._last_flush_day = today

        if not snapshot:
            return 0

        self._flushes += 1
        written = 0
        pending = list(snapshot.values())

        try:
            while pending:
                obs = pending[0]
                try:
                    if obs.symbol:
                        symbol, venue = obs.symbol, obs.venue
                    else:
                        symbol, venue = await self._resolve(obs)

                    await self.writer.observe(symbol, venue, obs.price, today)
                    written += 1

                except ResolutionFailure as e:
                    self._dropped += 1
                    logger.warning(f"Dropping tick: {e}")
                except Exception as e:
                    self._dropped += 1
                    logger.error(f"Error flushing tick for token {obs.identifier}: {e}")

                pending.pop(0)

        except asyncio.CancelledError:
            # Unwritten observations go back so the next flush persists them
            restored = self.buffer.restore(pending)
            logger.debug(f"Flush cancelled, {restored} ticks returned to buffer")
            self._written += written
            raise

        self._written += written
        logger.debug(f"Flushed {written}/{len(snapshot)} ticks")
        return written

    async def run(self, interval: float):
        """Flush every `interval` seconds until cancelled"""
        while True:
            await asyncio.sleep(interval)
            try:
                await self.flush()
            except Exception as e:
                logger.error(f"Flush cycle error: {e}")

    def get_stats(self) -> dict:
        return {
            "buffer": self.buffer.get_stats(),
            "flushes": self._flushes,
            "written": self._written,
            "dropped": self._dropped,
        }
