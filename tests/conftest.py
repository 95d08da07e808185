"""
Shared test fixtures for the LTP Ingest test suite.
All tests run offline with in-memory SQLite and mocked broker services.
"""

import asyncio
from datetime import date
from decimal import Decimal

import pytest
from unittest.mock import AsyncMock, MagicMock

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from ltp_ingest.database.models import Base
from ltp_ingest.database.db import Database
from ltp_ingest.core.auth import Credentials
from ltp_ingest.core.broker_client import BrokerClient, PriceQuote
from ltp_ingest.core.stream_client import RawTick
from ltp_ingest.ingestion.directory import InstrumentDirectory
from ltp_ingest.ingestion.price_writer import PriceWriter

TODAY = date(2025, 1, 15)


@pytest.fixture
async def db():
    """
    Create an in-memory async SQLite database for testing.
    Each test gets a completely fresh database.
    """
    database = Database.__new__(Database)
    database.db_url = "sqlite+aiosqlite://"
    database._async_initialized = False
    database.async_engine = None
    database.AsyncSessionLocal = None

    database.async_engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with database.async_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    database.AsyncSessionLocal = async_sessionmaker(
        database.async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    database._async_initialized = True

    yield database

    await database.async_engine.dispose()


@pytest.fixture
async def watchlist(db):
    """Seed the watchlist with two NSE instruments and one without a venue."""
    await db.add_watchlist_item("AAA-EQ", "NSE", "1001")
    await db.add_watchlist_item("BBB-EQ", "NSE", "1002")
    await db.add_watchlist_item("CCC-EQ", None, "1003")
    return db


@pytest.fixture
def directory(db):
    return InstrumentDirectory(db)


class Clock:
    """Mutable "today" for day-rollover tests."""

    def __init__(self, day: date = TODAY):
        self.day = day

    def __call__(self) -> date:
        return self.day


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def writer(db, clock):
    return PriceWriter(db, today=clock)


@pytest.fixture
def credentials():
    return Credentials(access_token="jwt-access-token-0123456789", feed_token="feed-token")


@pytest.fixture
def mock_auth(credentials):
    auth = AsyncMock()
    auth.current_credentials = AsyncMock(return_value=credentials)
    return auth


@pytest.fixture
def mock_broker():
    """Mock BrokerClient that returns no quotes by default."""
    broker = MagicMock(spec=BrokerClient)
    broker.fetch_prices = AsyncMock(return_value=[])
    broker.open_stream = AsyncMock()
    broker.close = AsyncMock()
    return broker


@pytest.fixture
def make_quote():
    def _factory(identifier, price, venue="NSE"):
        return PriceQuote(
            identifier=identifier,
            venue=venue,
            price=None if price is None else Decimal(str(price)),
        )

    return _factory


class FakeStreamConnection:
    """
    In-memory stand-in for StreamConnection.

    Ticks pushed with feed() are yielded by ticks(); drop() ends the
    iteration as if the server closed the socket.
    """

    _CLOSE = object()

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()
        self.subscriptions = []
        self.closed = False

    def feed(self, identifier, price, venue="NSE"):
        self._queue.put_nowait(RawTick(identifier=identifier, venue=venue, price=Decimal(str(price))))

    def drop(self):
        self._queue.put_nowait(self._CLOSE)

    async def subscribe(self, tokens_by_venue):
        self.subscriptions.append(tokens_by_venue)
        return sum(len(t) for t in tokens_by_venue.values())

    async def ticks(self):
        while True:
            item = await self._queue.get()
            if item is self._CLOSE:
                return
            yield item

    async def close(self):
        self.closed = True


@pytest.fixture
def make_stream_connection():
    return FakeStreamConnection


@pytest.fixture
def wait_until():
    """Yield to the event loop until predicate() is true."""
    async def _wait(predicate, timeout: float = 2.0):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(0.005)

    return _wait
