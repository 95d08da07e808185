"""
Database models for LTP Ingest
"""

from datetime import datetime

from sqlalchemy import (
    Column, String, Integer, Numeric, Date, DateTime, Text,
    UniqueConstraint, Index
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class WatchlistItem(Base):
    """
    Instrument someone asked to track.

    Rows without an instrument_token were added by symbol only and cannot
    be fetched until the token is backfilled.
    """
    __tablename__ = "watchlist_item"

    id = Column(Integer, primary_key=True, autoincrement=True)
    symbol = Column(String(64), nullable=False)

    # Exchange segment (NSE, BSE, NFO, ...)
    exchange = Column(String(16), nullable=True)

    # Broker-assigned instrument token
    instrument_token = Column(String(32), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("symbol", "exchange", name="uq_watchlist_item_symbol_exchange"),
        Index("ix_watchlist_item_token", "instrument_token"),
    )

    def __repr__(self):
        return f"<WatchlistItem {self.symbol} {self.exchange} ({self.instrument_token})>"


class PricePoint(Base):
    """
    One LTP per symbol per calendar day.

    Later observations on the same day overwrite ltp and fetched_at.
    """
    __tablename__ = "ltp_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    symbol = Column(String(64), nullable=False)
    exchange = Column(String(16), nullable=True)
    date = Column(Date, nullable=False)
    ltp = Column(Numeric(14, 4), nullable=False)

    # Wall-clock time of the last write
    fetched_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("symbol", "date", name="uq_ltp_history_symbol_date"),
        Index("ix_ltp_history_date", "date"),
    )

    def __repr__(self):
        return f"<PricePoint {self.symbol} {self.date} {self.ltp}>"


class BrokerToken(Base):
    """Latest broker session tokens, written by the token refresh job"""
    __tablename__ = "angel_tokens"

    id = Column(Integer, primary_key=True, autoincrement=True)
    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text, nullable=True)

    # Streaming feed token
    feed_token = Column(Text, nullable=True)

    expires_at = Column(String(64), nullable=True)
    last_refreshed = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<BrokerToken refreshed={self.last_refreshed}>"
