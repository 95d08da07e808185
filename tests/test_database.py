"""Tests for the store queries, watchlist and broker token tables."""

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError

from ltp_ingest.core.auth import StaticCredentialsProvider, StoredCredentialsProvider
from ltp_ingest.database.db import Database
from ltp_ingest.errors import AuthUnavailable, ResolutionFailure

from conftest import TODAY


class TestUrl:
    def test_plain_path_uses_aiosqlite(self):
        assert Database("data/prices.db").db_url == "sqlite+aiosqlite:///data/prices.db"

    def test_sync_sqlite_url_rewritten(self):
        assert Database("sqlite:///x.db").db_url == "sqlite+aiosqlite:///x.db"

    def test_other_url_kept(self):
        db = Database("postgresql+asyncpg://u:p@host/prices")
        assert db.db_url == "postgresql+asyncpg://u:p@host/prices"
        assert db.dialect == "postgresql"


class TestPricePoints:
    async def test_insert_update_exists(self, db):
        assert await db.exists_price_point("AAA-EQ", TODAY) is False

        await db.insert_price_point("AAA-EQ", "NSE", TODAY, Decimal("10"))
        assert await db.exists_price_point("AAA-EQ", TODAY) is True

        assert await db.update_price_point("AAA-EQ", TODAY, Decimal("11")) == 1
        assert (await db.get_price_point("AAA-EQ", TODAY)).ltp == Decimal("11")

    async def test_update_missing_row_touches_nothing(self, db):
        assert await db.update_price_point("AAA-EQ", TODAY, Decimal("1")) == 0

    async def test_duplicate_insert_rejected(self, db):
        await db.insert_price_point("AAA-EQ", "NSE", TODAY, Decimal("10"))
        with pytest.raises(IntegrityError):
            await db.insert_price_point("AAA-EQ", "NSE", TODAY, Decimal("12"))

    async def test_upsert(self, db):
        await db.upsert_price_point("AAA-EQ", "NSE", TODAY, Decimal("10"))
        await db.upsert_price_point("AAA-EQ", "NSE", TODAY, Decimal("12"))
        assert (await db.get_price_point("AAA-EQ", TODAY)).ltp == Decimal("12")

    async def test_prune_strictly_before(self, db):
        for offset in range(4):
            await db.insert_price_point("AAA-EQ", "NSE", TODAY - timedelta(days=offset), Decimal("1"))

        assert await db.prune_price_points(TODAY - timedelta(days=1)) == 2
        assert await db.exists_price_point("AAA-EQ", TODAY - timedelta(days=1))
        assert not await db.exists_price_point("AAA-EQ", TODAY - timedelta(days=2))


class TestWatchlist:
    async def test_add_is_get_or_create(self, db):
        first = await db.add_watchlist_item("AAA-EQ", "NSE", "1001")
        second = await db.add_watchlist_item("AAA-EQ", "NSE", "1001")
        assert first.id == second.id

    async def test_lookup_by_tokens(self, watchlist):
        items = await watchlist.get_watchlist_items(["1001", 1003, "9999"])
        assert sorted(i.symbol for i in items) == ["AAA-EQ", "CCC-EQ"]
        assert await watchlist.get_watchlist_items([]) == []

    async def test_tracked_items_need_token(self, watchlist):
        await watchlist.add_watchlist_item("NOTOKEN", "NSE")
        tracked = await watchlist.get_tracked_items()
        assert [i.symbol for i in tracked] == ["AAA-EQ", "BBB-EQ", "CCC-EQ"]

    async def test_remove(self, watchlist):
        assert await watchlist.remove_watchlist_item("AAA-EQ") == 1
        assert len(await watchlist.get_tracked_items()) == 2


class TestDirectory:
    async def test_resolve_and_cache(self, watchlist, directory):
        inst = await directory.resolve("1001")
        assert (inst.symbol, inst.venue) == ("AAA-EQ", "NSE")
        assert directory.cached("1001") == inst

        directory.forget("1001")
        assert directory.cached("1001") is None

    async def test_lookup_many_omits_unknown(self, watchlist, directory):
        found = await directory.lookup_many(["1001", "4242"])
        assert list(found) == ["1001"]

    async def test_unknown_raises(self, watchlist, directory):
        with pytest.raises(ResolutionFailure):
            await directory.resolve("4242")

    async def test_tracked_instruments(self, watchlist, directory):
        instruments = await directory.tracked_instruments()
        assert [(i.identifier, i.venue) for i in instruments] == [
            ("1001", "NSE"), ("1002", "NSE"), ("1003", None),
        ]


class TestCredentials:
    async def test_no_token_row(self, db):
        with pytest.raises(AuthUnavailable):
            await StoredCredentialsProvider(db).current_credentials()

    async def test_latest_token(self, db):
        await db.save_token("old-access", feed_token="old-feed")
        await db.save_token("new-access", feed_token="new-feed")

        creds = await StoredCredentialsProvider(db).current_credentials()
        assert creds.access_token == "new-access"
        assert creds.feed_token == "new-feed"

    async def test_feed_token_falls_back_to_refresh_token(self, db):
        await db.save_token("access", refresh_token="legacy-feed")
        creds = await StoredCredentialsProvider(db).current_credentials()
        assert creds.feed_token == "legacy-feed"

    async def test_static_provider(self):
        assert (await StaticCredentialsProvider("a", "f").current_credentials()).feed_token == "f"
        with pytest.raises(AuthUnavailable):
            await StaticCredentialsProvider(None).current_credentials()
