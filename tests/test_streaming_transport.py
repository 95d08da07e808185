"""Tests for StreamingTransport - state machine, backoff, watchdog, tick flow."""

import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import select

from ltp_ingest.database.models import PricePoint
from ltp_ingest.errors import AuthUnavailable, NetworkError, Unauthorized
from ltp_ingest.transports.base import ConnectionState
from ltp_ingest.transports.streaming import StreamingTransport, backoff_delay


@pytest.fixture
def make_transport(mock_broker, mock_auth, directory, writer):
    created = []

    def _factory(**overrides):
        params = dict(
            flush_interval=60.0,
            heartbeat_interval=60.0,
            liveness_window=600.0,
            reconnect_base_delay=0.01,
            max_reconnect_attempts=10,
        )
        params.update(overrides)
        transport = StreamingTransport(mock_broker, mock_auth, directory, writer, **params)
        created.append(transport)
        return transport

    yield _factory

    for transport in created:
        if transport.state != ConnectionState.IDLE:
            transport._stop_timers()
            transport._cancel(transport._reconnect_task)


@pytest.fixture
def connections(mock_broker, make_stream_connection):
    """Every open_stream call hands out a fresh fake connection"""
    opened = []

    async def _open(credentials):
        conn = make_stream_connection()
        opened.append(conn)
        return conn

    mock_broker.open_stream.side_effect = _open
    return opened


class TestBackoff:
    def test_delays_double(self):
        assert [backoff_delay(2.0, n) for n in range(1, 5)] == [2.0, 4.0, 8.0, 16.0]

    async def test_reconnect_schedule_then_failed(self, make_transport, mock_broker, monkeypatch):
        mock_broker.open_stream.side_effect = NetworkError("refused")
        transport = make_transport(reconnect_base_delay=2.0, max_reconnect_attempts=4)

        real_sleep = asyncio.sleep
        delays = []

        async def fake_sleep(delay, *args, **kwargs):
            delays.append(delay)
            await real_sleep(0)

        monkeypatch.setattr(asyncio, "sleep", fake_sleep)

        assert await transport.start() is False
        for _ in range(200):
            if transport.state == ConnectionState.FAILED:
                break
            await real_sleep(0)

        assert delays == [2.0, 4.0, 8.0, 16.0]
        assert mock_broker.open_stream.await_count == 5

        status = transport.get_status()
        assert status["state"] == "failed"
        assert status["running"] is False
        assert status["next_reconnect_delay"] is None
        assert "Gave up" in status["last_error"]
        assert transport._reconnect_task is None or transport._reconnect_task.done()

    async def test_failed_connect_reports_reconnecting(self, make_transport, mock_broker):
        mock_broker.open_stream.side_effect = NetworkError("refused")
        transport = make_transport(reconnect_base_delay=60.0)

        assert await transport.start() is False

        status = transport.get_status()
        assert status["state"] == "reconnecting"
        assert status["running"] is True
        assert status["reconnect_attempts"] == 1
        assert status["next_reconnect_delay"] == 60.0
        await transport.disconnect()

    async def test_start_resets_attempts(self, make_transport, mock_broker, connections):
        transport = make_transport(reconnect_base_delay=60.0)
        transport._reconnect_attempts = 3
        transport.state = ConnectionState.FAILED

        assert await transport.start() is True
        assert transport.state == ConnectionState.CONNECTED
        assert transport.get_status()["reconnect_attempts"] == 0
        await transport.disconnect()


class TestAuth:
    async def test_no_credentials_stays_idle(self, make_transport, mock_auth, mock_broker):
        mock_auth.current_credentials.side_effect = AuthUnavailable("no token")
        transport = make_transport()

        assert await transport.start() is False
        assert transport.state == ConnectionState.IDLE
        mock_broker.open_stream.assert_not_awaited()

    async def test_rejected_handshake_fails(self, make_transport, mock_broker):
        mock_broker.open_stream.side_effect = Unauthorized("401")
        transport = make_transport()

        assert await transport.start() is False
        assert transport.state == ConnectionState.FAILED
        assert transport._reconnect_task is None


class TestConnected:
    async def test_start_is_idempotent(self, make_transport, connections):
        transport = make_transport()
        assert await transport.start() is True
        assert await transport.start() is True
        assert len(connections) == 1
        await transport.disconnect()

    async def test_ticks_coalesced_and_flushed_on_disconnect(
        self, make_transport, connections, watchlist, wait_until
    ):
        transport = make_transport()
        await transport.start()
        assert await transport.subscribe_identifiers(["1001"]) is True

        conn = connections[0]
        assert conn.subscriptions == [{"NSE": ["1001"]}]

        for price in (10, 11, 12):
            conn.feed("1001", price)
        await wait_until(lambda: transport.get_status()["ticks_received"] == 3)

        await transport.disconnect()

        async with watchlist.session() as session:
            rows = (await session.execute(select(PricePoint))).scalars().all()
        assert [(r.symbol, r.ltp) for r in rows] == [("AAA-EQ", Decimal("12"))]
        assert conn.closed
        assert transport.state == ConnectionState.IDLE

    async def test_flush_timer_persists_ticks(self, make_transport, connections, watchlist, wait_until):
        transport = make_transport(flush_interval=0.01)
        await transport.start()
        await transport.subscribe_identifiers(["1002"])

        connections[0].feed("1002", "250.75")
        await wait_until(lambda: transport.flusher.get_stats()["written"] == 1)
        await transport.disconnect()

    async def test_subscribe_unknown_tokens(self, make_transport, connections, watchlist):
        transport = make_transport()
        await transport.start()

        assert await transport.subscribe_identifiers(["9999"]) is False
        assert connections[0].subscriptions == []
        await transport.disconnect()

    async def test_server_close_reconnects_and_resubscribes(
        self, make_transport, connections, watchlist, wait_until
    ):
        transport = make_transport()
        await transport.start()
        await transport.subscribe_identifiers(["1001", "1002"])

        connections[0].drop()
        await wait_until(lambda: transport.get_status()["connects"] == 2)

        assert connections[0].closed
        assert connections[1].subscriptions == [{"NSE": ["1001", "1002"]}]
        assert transport.state == ConnectionState.CONNECTED
        assert transport.get_status()["reconnect_attempts"] == 0
        await transport.disconnect()

    async def test_heartbeat_timeout_forces_reconnect(
        self, make_transport, connections, wait_until
    ):
        transport = make_transport(heartbeat_interval=0.01, liveness_window=0.03)
        await transport.start()

        await wait_until(lambda: len(connections) >= 2)

        assert connections[0].closed
        await transport.disconnect()
        assert transport.state == ConnectionState.IDLE


class TestSubscribeStates:
    async def test_subscribe_when_idle(self, make_transport, watchlist):
        transport = make_transport()
        assert await transport.subscribe_identifiers(["1001"]) is False

    async def test_subscribe_while_reconnecting_is_queued(
        self, make_transport, mock_broker, watchlist
    ):
        mock_broker.open_stream.side_effect = NetworkError("refused")
        transport = make_transport(reconnect_base_delay=60.0)
        await transport.start()

        assert await transport.subscribe_identifiers(["1001"]) is True
        assert transport.get_status()["subscribed_count"] == 1
        await transport.disconnect()


class TestDisconnect:
    async def test_disconnect_from_idle(self, make_transport):
        transport = make_transport()
        await transport.disconnect()
        assert transport.state == ConnectionState.IDLE

    async def test_disconnect_cancels_pending_reconnect(self, make_transport, mock_broker):
        mock_broker.open_stream.side_effect = NetworkError("refused")
        transport = make_transport(reconnect_base_delay=60.0)
        await transport.start()
        pending = transport._reconnect_task

        await transport.disconnect()

        assert pending.cancelled()
        assert transport._reconnect_task is None
        assert transport.get_status()["running"] is False

    async def test_disconnect_cancels_timers(self, make_transport, connections):
        transport = make_transport()
        await transport.start()
        tasks = [transport._reader_task, transport._flush_task, transport._heartbeat_task]

        await transport.disconnect()

        assert all(t.done() for t in tasks)
        assert transport._reader_task is None

    async def test_disconnect_during_slow_flush_keeps_ticks(
        self, make_transport, connections, watchlist, writer, monkeypatch, wait_until
    ):
        original = writer.observe
        started = []

        async def slow_observe(symbol, venue, price, day=None):
            started.append(symbol)
            await asyncio.sleep(0.2)
            return await original(symbol, venue, price, day)

        monkeypatch.setattr(writer, "observe", slow_observe)
        transport = make_transport(flush_interval=0.01)
        await transport.start()
        await transport.subscribe_identifiers(["1001", "1002"])

        connections[0].feed("1001", 100)
        connections[0].feed("1002", 200)
        await wait_until(lambda: started)

        await transport.disconnect()

        async with watchlist.session() as session:
            rows = (await session.execute(select(PricePoint))).scalars().all()
        assert {r.symbol: r.ltp for r in rows} == {"AAA-EQ": Decimal("100"), "BBB-EQ": Decimal("200")}

    async def test_connection_lost_during_slow_flush_keeps_ticks(
        self, make_transport, connections, watchlist, writer, monkeypatch, wait_until
    ):
        original = writer.observe
        started = []

        async def slow_first(symbol, venue, price, day=None):
            if not started:
                started.append(symbol)
                await asyncio.sleep(10)
            return await original(symbol, venue, price, day)

        monkeypatch.setattr(writer, "observe", slow_first)
        transport = make_transport(flush_interval=0.01)
        await transport.start()
        await transport.subscribe_identifiers(["1001", "1002"])

        connections[0].feed("1001", 100)
        connections[0].feed("1002", 200)
        await wait_until(lambda: started)

        connections[0].drop()
        await wait_until(lambda: transport.get_status()["connects"] == 2)

        async with watchlist.session() as session:
            rows = (await session.execute(select(PricePoint))).scalars().all()
        assert sorted(r.symbol for r in rows) == ["AAA-EQ", "BBB-EQ"]
        await transport.disconnect()
