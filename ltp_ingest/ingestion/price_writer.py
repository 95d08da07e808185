"""
Idempotent price persistence: one row per (symbol, day), last write wins.
"""

from datetime import date
from decimal import Decimal
from typing import Callable, Optional, Set

from loguru import logger
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..database.db import Database
from ..errors import PersistenceFailure


class ExistenceCache:
    """
    Symbols known to already have a row for the current day.

    Scoped to a single day: asking about any other day misses, and rolling
    to a new day drops every entry.
    """

    def __init__(self):
        self._day: Optional[date] = None
        self._symbols: Set[str] = set()

    @property
    def day(self) -> Optional[date]:
        return self._day

    def __len__(self):
        return len(self._symbols)

    def roll(self, day: date) -> bool:
        """Move the cache to `day`. Returns True if that cleared it."""
        if self._day == day:
            return False
        had_entries = bool(self._symbols)
        self._symbols.clear()
        self._day = day
        return had_entries

    def contains(self, symbol: str, day: date) -> bool:
        return self._day == day and symbol in self._symbols

    def add(self, symbol: str, day: date):
        self.roll(day)
        self._symbols.add(symbol)

    def discard(self, symbol: str):
        self._symbols.discard(symbol)

    def clear(self):
        self._symbols.clear()


class PriceWriter:
    """
    Writes observed prices into the per-day price history.

    Default path: once a symbol is known to have a row today, only an
    UPDATE is issued; otherwise an existence check decides between UPDATE
    and INSERT. With native_upsert the store's INSERT .. ON CONFLICT is
    used for every write and the cache is bypassed.
    """

    def __init__(
        self,
        db: Database,
        native_upsert: bool = False,
        today: Callable[[], date] = date.today,
    ):
        self.db = db
        self.native_upsert = native_upsert
        self.today = today
        self.cache = ExistenceCache()

        # Stats
        self._writes = 0
        self._existence_checks = 0
        self._failures = 0

    async def observe(
        self,
        symbol: str,
        venue: Optional[str],
        price: Decimal,
        day: Optional[date] = None,
    ):
        """
        Record `price` as the latest price of `symbol` on `day` (default today).

        Raises:
            PersistenceFailure: the store rejected the write
        """
        day = day or self.today()
        price = Decimal(str(price))

        try:
            if self.native_upsert:
                await self.db.upsert_price_point(symbol, venue, day, price)
            elif self.cache.contains(symbol, day):
                touched = await self.db.update_price_point(symbol, day, price)
                if not touched:
                    # Row vanished underneath the cache (pruned or deleted)
                    self.cache.discard(symbol)
                    await self._check_and_write(symbol, venue, price, day)
            else:
                await self._check_and_write(symbol, venue, price, day)
        except SQLAlchemyError as e:
            self._failures += 1
            raise PersistenceFailure(f"Failed to write {symbol} {day}: {e}") from e

        self._writes += 1

    async def _check_and_write(self, symbol: str, venue: Optional[str], price: Decimal, day: date):
        self._existence_checks += 1
        if await self.db.exists_price_point(symbol, day):
            await self.db.update_price_point(symbol, day, price)
        else:
            try:
                await self.db.insert_price_point(symbol, venue, day, price)
                logger.debug(f"New price point: {symbol} {day} = {price}")
            except IntegrityError:
                # Another writer inserted the row between check and insert
                await self.db.update_price_point(symbol, day, price)

        # Only cache what is actually today's row
        if day == self.today():
            self.cache.add(symbol, day)

    def roll_day(self, day: Optional[date] = None) -> bool:
        """Invalidate the existence cache if the calendar day changed"""
        day = day or self.today()
        cleared = self.cache.roll(day)
        if cleared:
            logger.info(f"Day rollover to {day}: existence cache cleared")
        return cleared

    def get_stats(self) -> dict:
        return {
            "writes": self._writes,
            "existence_checks": self._existence_checks,
            "failures": self._failures,
            "cached_symbols": len(self.cache),
        }
