"""
Retention housekeeping for the price history.
"""

import asyncio
from datetime import date, timedelta
from typing import Callable

from loguru import logger

from ..database.db import Database


class RetentionJob:
    """Periodically delete price points older than `days` days"""

    def __init__(
        self,
        db: Database,
        days: int = 10,
        interval: float = 3600.0,
        today: Callable[[], date] = date.today,
    ):
        self.db = db
        self.days = days
        self.interval = interval
        self.today = today
        self._running = False

    def cutoff(self) -> date:
        return self.today() - timedelta(days=self.days)

    async def prune_once(self) -> int:
        cutoff = self.cutoff()
        removed = await self.db.prune_price_points(cutoff)
        if removed:
            logger.info(f"Pruned {removed} price points dated before {cutoff}")
        return removed

    async def start(self):
        """Run until stop() is called"""
        self._running = True
        logger.info(f"Retention job started (keeping {self.days} days)")

        while self._running:
            try:
                await self.prune_once()
            except Exception as e:
                logger.error(f"Retention prune error: {e}")

            await asyncio.sleep(self.interval)

    def stop(self):
        self._running = False
        logger.info("Retention job stopped")
