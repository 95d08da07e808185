"""
Instrument directory backed by the watchlist table.
Resolves broker identifiers to symbol and venue, with an in-process cache.
"""

from typing import Dict, Iterable, List, Optional

from loguru import logger

from ..database.db import Database
from ..errors import ResolutionFailure
from .types import TrackedInstrument


class InstrumentDirectory:
    """
    Identifier -> TrackedInstrument lookups.

    Resolved entries are cached for the life of the process. Watchlist rows
    are never edited in place (removal + re-add), so entries do not go stale
    in a way that matters for price writes.
    """

    def __init__(self, db: Database):
        self.db = db
        self._cache: Dict[str, TrackedInstrument] = {}

    def cached(self, identifier: str) -> Optional[TrackedInstrument]:
        return self._cache.get(str(identifier))

    async def lookup_many(self, identifiers: Iterable[str]) -> Dict[str, TrackedInstrument]:
        """
        Bulk-resolve identifiers.

        Returns:
            Mapping for the identifiers that are known; unknown ones are absent
        """
        wanted = [str(i) for i in identifiers]
        found: Dict[str, TrackedInstrument] = {}
        missing = []

        for ident in wanted:
            inst = self._cache.get(ident)
            if inst:
                found[ident] = inst
            else:
                missing.append(ident)

        if missing:
            for row in await self.db.get_watchlist_items(missing):
                inst = TrackedInstrument(
                    identifier=str(row.instrument_token),
                    venue=row.exchange,
                    symbol=row.symbol,
                )
                self._cache[inst.identifier] = inst
                found[inst.identifier] = inst

        return found

    async def resolve(self, identifier: str) -> TrackedInstrument:
        """
        Resolve a single identifier.

        Raises:
            ResolutionFailure: identifier is not on the watchlist
        """
        found = await self.lookup_many([identifier])
        inst = found.get(str(identifier))
        if inst is None:
            raise ResolutionFailure(f"Unknown instrument token {identifier}")
        return inst

    async def tracked_instruments(self) -> List[TrackedInstrument]:
        """Everything on the watchlist that has a token"""
        items = await self.db.get_tracked_items()
        instruments = []
        for row in items:
            inst = TrackedInstrument(
                identifier=str(row.instrument_token),
                venue=row.exchange,
                symbol=row.symbol,
            )
            self._cache[inst.identifier] = inst
            instruments.append(inst)

        logger.debug(f"Directory: {len(instruments)} tracked instruments on watchlist")
        return instruments

    def forget(self, identifier: str):
        self._cache.pop(str(identifier), None)
