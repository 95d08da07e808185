"""
Database initialization, session management and the store operations
the ingestion engine consumes.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional, Sequence
from contextlib import asynccontextmanager

from sqlalchemy import event, select, update, delete
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from loguru import logger

from .models import Base, WatchlistItem, PricePoint, BrokerToken


class Database:
    """Async database connection, session management and store queries"""

    def __init__(self, db_path: str = "ltp_ingest.db"):
        """
        Initialize database connection.

        Args:
            db_path: Path to SQLite database file, or full async connection URL
        """
        if "://" in db_path:
            # Plain sqlite URLs get the async driver
            if db_path.startswith("sqlite:///"):
                db_path = db_path.replace("sqlite:///", "sqlite+aiosqlite:///", 1)
            self.db_url = db_path
        else:
            self.db_url = f"sqlite+aiosqlite:///{db_path}"

        self.async_engine = None
        self.AsyncSessionLocal = None
        self._async_initialized = False

    @property
    def dialect(self) -> str:
        if self.async_engine is None:
            return self.db_url.split("+", 1)[0].split(":", 1)[0]
        return self.async_engine.dialect.name

    async def initialize(self):
        """Initialize async database connection and create tables"""
        if self._async_initialized:
            return

        self.async_engine = create_async_engine(self.db_url, echo=False)

        if self.async_engine.dialect.name == "sqlite" and ":memory:" not in self.db_url:
            # WAL lets the dashboard read while ticks are being flushed
            @event.listens_for(self.async_engine.sync_engine, "connect")
            def set_sqlite_pragma(dbapi_connection, connection_record):
                cursor = dbapi_connection.cursor()
                cursor.execute("PRAGMA journal_mode=WAL")
                cursor.execute("PRAGMA synchronous=NORMAL")
                cursor.close()

        async with self.async_engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        self.AsyncSessionLocal = async_sessionmaker(
            self.async_engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

        self._async_initialized = True
        logger.info(f"Async database initialized ({self.dialect})")

    async def close(self):
        """Close async database connection"""
        if self.async_engine:
            await self.async_engine.dispose()
            self._async_initialized = False

    @asynccontextmanager
    async def session(self):
        """Get an async database session with automatic cleanup"""
        if not self._async_initialized:
            await self.initialize()

        async with self.AsyncSessionLocal() as session:
            try:
                yield session
                await session.commit()
            except Exception as e:
                await session.rollback()
                logger.error(f"Database error: {e}")
                raise

    # ==================== Price history ====================

    async def exists_price_point(self, symbol: str, day: date) -> bool:
        """Check whether a price point exists for (symbol, day)"""
        async with self.session() as session:
            result = await session.execute(
                select(PricePoint.id)
                .where(PricePoint.symbol == symbol, PricePoint.date == day)
                .limit(1)
            )
            return result.first() is not None

    async def get_price_point(self, symbol: str, day: date) -> Optional[PricePoint]:
        async with self.session() as session:
            result = await session.execute(
                select(PricePoint).where(PricePoint.symbol == symbol, PricePoint.date == day)
            )
            return result.scalar_one_or_none()

    async def update_price_point(self, symbol: str, day: date, price: Decimal) -> int:
        """
        Overwrite the price of an existing row.

        Returns:
            Number of rows touched (0 if the row does not exist)
        """
        async with self.session() as session:
            result = await session.execute(
                update(PricePoint)
                .where(PricePoint.symbol == symbol, PricePoint.date == day)
                .values(ltp=price, fetched_at=datetime.utcnow())
            )
            return result.rowcount

    async def insert_price_point(
        self,
        symbol: str,
        exchange: Optional[str],
        day: date,
        price: Decimal
    ) -> PricePoint:
        async with self.session() as session:
            point = PricePoint(
                symbol=symbol,
                exchange=exchange,
                date=day,
                ltp=price,
                fetched_at=datetime.utcnow(),
            )
            session.add(point)
            await session.flush()
            return point

    async def upsert_price_point(
        self,
        symbol: str,
        exchange: Optional[str],
        day: date,
        price: Decimal
    ):
        """Insert or overwrite the (symbol, day) row in a single statement"""
        insert = pg_insert if self.dialect == "postgresql" else sqlite_insert
        now = datetime.utcnow()

        stmt = insert(PricePoint).values(
            symbol=symbol,
            exchange=exchange,
            date=day,
            ltp=price,
            fetched_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[PricePoint.symbol, PricePoint.date],
            set_={"ltp": stmt.excluded.ltp, "fetched_at": stmt.excluded.fetched_at},
        )

        async with self.session() as session:
            await session.execute(stmt)

    async def prune_price_points(self, before: date) -> int:
        """Delete price points dated strictly before the given day"""
        async with self.session() as session:
            result = await session.execute(
                delete(PricePoint).where(PricePoint.date < before)
            )
            return result.rowcount

    # ==================== Watchlist ====================

    async def add_watchlist_item(
        self,
        symbol: str,
        exchange: Optional[str] = None,
        instrument_token: Optional[str] = None
    ) -> WatchlistItem:
        """Get existing watchlist item or create new one"""
        async with self.session() as session:
            result = await session.execute(
                select(WatchlistItem).where(
                    WatchlistItem.symbol == symbol,
                    WatchlistItem.exchange == exchange,
                )
            )
            item = result.scalar_one_or_none()

            if not item:
                item = WatchlistItem(
                    symbol=symbol,
                    exchange=exchange,
                    instrument_token=instrument_token,
                )
                session.add(item)
                await session.flush()
                logger.debug(f"Created watchlist item: {symbol} ({exchange})")

            return item

    async def remove_watchlist_item(self, symbol: str, exchange: Optional[str] = None) -> int:
        async with self.session() as session:
            stmt = delete(WatchlistItem).where(WatchlistItem.symbol == symbol)
            if exchange is not None:
                stmt = stmt.where(WatchlistItem.exchange == exchange)
            result = await session.execute(stmt)
            return result.rowcount

    async def get_watchlist_items(self, tokens: Sequence[str]) -> List[WatchlistItem]:
        """Bulk lookup of watchlist items by instrument token"""
        if not tokens:
            return []

        async with self.session() as session:
            result = await session.execute(
                select(WatchlistItem).where(
                    WatchlistItem.instrument_token.in_([str(t) for t in tokens])
                )
            )
            return list(result.scalars().all())

    async def get_tracked_items(self) -> List[WatchlistItem]:
        """All watchlist items that carry an instrument token"""
        async with self.session() as session:
            result = await session.execute(
                select(WatchlistItem)
                .where(WatchlistItem.instrument_token.is_not(None))
                .order_by(WatchlistItem.id)
            )
            return list(result.scalars().all())

    # ==================== Broker tokens ====================

    async def get_latest_token(self) -> Optional[BrokerToken]:
        async with self.session() as session:
            result = await session.execute(
                select(BrokerToken).order_by(BrokerToken.last_refreshed.desc()).limit(1)
            )
            return result.scalar_one_or_none()

    async def save_token(
        self,
        access_token: str,
        feed_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
        expires_at: Optional[str] = None
    ) -> BrokerToken:
        """Replace the stored tokens, keeping a single latest row"""
        async with self.session() as session:
            await session.execute(delete(BrokerToken))
            token = BrokerToken(
                access_token=access_token,
                feed_token=feed_token,
                refresh_token=refresh_token,
                expires_at=expires_at,
                last_refreshed=datetime.utcnow(),
            )
            session.add(token)
            await session.flush()
            return token
