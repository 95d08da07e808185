"""
Subscription registry: owns the single active transport and decides what
it tracks. Built once by the application and handed to whoever needs it.
"""

import asyncio
from typing import TYPE_CHECKING, Callable, Iterable, Optional

from loguru import logger

from .directory import InstrumentDirectory

if TYPE_CHECKING:
    from ..transports.base import Transport


class IngestionEngine:
    """
    Lazily starts one transport and forwards subscriptions to it.

    Concurrent callers that arrive while the transport is starting wait
    for that start instead of creating a second transport.
    """

    def __init__(
        self,
        transport_factory: Callable[[], "Transport"],
        directory: InstrumentDirectory,
        init_wait_attempts: int = 50,
        init_wait_interval: float = 0.1,
    ):
        """
        Args:
            transport_factory: Builds the configured transport; called at most once
            directory: Watchlist-backed instrument directory
            init_wait_attempts: Polls a waiting caller makes before giving up
            init_wait_interval: Seconds between those polls
        """
        self._transport_factory = transport_factory
        self.directory = directory
        self.init_wait_attempts = init_wait_attempts
        self.init_wait_interval = init_wait_interval

        self.transport: Optional["Transport"] = None
        self._initializing = False

    @property
    def started(self) -> bool:
        return self.transport is not None and self.transport.is_running

    async def _ensure_started(self) -> bool:
        if self.started:
            return True

        if self._initializing:
            attempts = 0
            while self._initializing and attempts < self.init_wait_attempts:
                await asyncio.sleep(self.init_wait_interval)
                attempts += 1
            return self.started

        self._initializing = True
        try:
            if self.transport is None:
                self.transport = self._transport_factory()
                logger.info(f"IngestionEngine: created {self.transport.name} transport")

            started = await self.transport.start()
            if started:
                logger.info(f"IngestionEngine: {self.transport.name} transport started")
            else:
                logger.warning(f"IngestionEngine: {self.transport.name} transport failed to start")
            return started

        except Exception as e:
            logger.warning(f"IngestionEngine: failed to start transport: {e}")
            return False
        finally:
            self._initializing = False

    async def subscribe_identifiers(self, identifiers: Iterable[str]) -> bool:
        """
        Track the given identifiers, starting the transport if needed.

        Returns:
            False if nothing was given, the transport could not start, or
            the transport refused the subscription
        """
        ids = [str(i) for i in (identifiers or []) if i]
        if not ids:
            return False

        if not await self._ensure_started():
            logger.warning("IngestionEngine: cannot subscribe because transport is not started")
            return False

        try:
            return await self.transport.subscribe_identifiers(ids)
        except Exception as e:
            logger.error(f"IngestionEngine: error subscribing tokens: {e}")
            return False

    async def subscribe_one(self, identifier: str) -> bool:
        if not identifier:
            return False
        return await self.subscribe_identifiers([str(identifier)])

    async def resync_from_store(self) -> bool:
        """
        Re-subscribe everything on the watchlist.

        Used after an item is removed and after a manual reconnect; removed
        identifiers are not unsubscribed.
        """
        try:
            instruments = await self.directory.tracked_instruments()
        except Exception as e:
            logger.error(f"IngestionEngine: error resubscribing from DB: {e}")
            return False

        ids = list(dict.fromkeys(inst.identifier for inst in instruments))
        if not ids:
            logger.info("IngestionEngine: no tokens to subscribe")
            return False

        return await self.subscribe_identifiers(ids)

    def get_status(self) -> dict:
        if self.transport is None:
            return {"running": False, "subscribed_count": 0}
        return self.transport.get_status()

    async def disconnect(self):
        if self.transport is not None:
            await self.transport.disconnect()
