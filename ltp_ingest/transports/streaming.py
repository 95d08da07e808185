"""
Streaming transport: live ticks over a persistent SmartStream connection.

State machine:

    IDLE -> CONNECTING -> CONNECTED -> (RECONNECTING <-> CONNECTED) -> FAILED

Ticks go into a TickBuffer and are persisted by a flush timer. A heartbeat
watchdog forces a reconnect when no tick has arrived within the liveness
window, even if the socket itself looks healthy.
"""

import asyncio
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from loguru import logger

from ..core.auth import AuthProvider, Credentials
from ..core.broker_client import BrokerClient
from ..core.stream_client import StreamConnection
from ..errors import AuthFailure, ExhaustedReconnect
from ..ingestion.directory import InstrumentDirectory
from ..ingestion.grouping import group_by_venue
from ..ingestion.price_writer import PriceWriter
from ..ingestion.tick_buffer import DEFAULT_CAPACITY, FlushScheduler, TickBuffer
from ..ingestion.types import PriceObservation, TrackedInstrument
from .base import ConnectionState, Transport

SUBSCRIBE_BATCH = 100


def backoff_delay(base_delay: float, attempt: int) -> float:
    """Delay before reconnect attempt `attempt` (1-based)"""
    return base_delay * (2 ** (attempt - 1))


class StreamingTransport(Transport):
    """Push-based ingestion with reconnect backoff and tick coalescing"""

    name = "streaming"

    def __init__(
        self,
        broker: BrokerClient,
        auth: AuthProvider,
        directory: InstrumentDirectory,
        writer: PriceWriter,
        flush_interval: float = 2.0,
        heartbeat_interval: float = 10.0,
        liveness_window: float = 60.0,
        reconnect_base_delay: float = 2.0,
        max_reconnect_attempts: int = 10,
        buffer_capacity: int = DEFAULT_CAPACITY,
    ):
        """
        Initialize the streaming transport.

        Args:
            broker: Broker client that opens stream connections
            auth: Credential source, consulted on every (re)connect
            directory: Resolves identifiers to symbol and venue
            writer: Persistence layer used by the flush timer
            flush_interval: Seconds between buffer flushes
            heartbeat_interval: Seconds between liveness checks
            liveness_window: Max seconds without a tick before reconnecting
            reconnect_base_delay: Backoff base in seconds
            max_reconnect_attempts: Attempts before giving up (FAILED)
            buffer_capacity: Max distinct identifiers held between flushes
        """
        self.broker = broker
        self.auth = auth
        self.directory = directory
        self.flush_interval = flush_interval
        self.heartbeat_interval = heartbeat_interval
        self.liveness_window = liveness_window
        self.reconnect_base_delay = reconnect_base_delay
        self.max_reconnect_attempts = max_reconnect_attempts

        self.buffer = TickBuffer(buffer_capacity)
        self.flusher = FlushScheduler(self.buffer, writer, directory)

        self.state = ConnectionState.IDLE
        self._conn: Optional[StreamConnection] = None

        self._reader_task: Optional[asyncio.Task] = None
        self._flush_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None

        self._reconnect_attempts = 0
        self._next_reconnect_delay: Optional[float] = None
        self._last_tick: float = 0.0
        self._last_error: Optional[str] = None

        # identifier -> instrument, re-sent after every reconnect
        self._tracked: Dict[str, TrackedInstrument] = {}

        # Stats
        self._ticks_received = 0
        self._connects = 0
        self._connected_at: Optional[datetime] = None

    # ==================== Lifecycle ====================

    async def start(self) -> bool:
        """
        Connect now.

        From IDLE, RECONNECTING or FAILED this also cancels any pending
        reconnect and resets the attempt counter.
        """
        if self.state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
            return True

        self._cancel(self._reconnect_task)
        self._reconnect_task = None
        self._reconnect_attempts = 0
        self._next_reconnect_delay = None

        try:
            credentials = await self.auth.current_credentials()
        except AuthFailure as e:
            logger.warning(f"No access token available; run token refresh first ({e})")
            self._last_error = str(e)
            self.state = ConnectionState.IDLE
            return False

        return await self._connect(credentials)

    async def _connect(self, credentials: Credentials) -> bool:
        self.state = ConnectionState.CONNECTING
        logger.info("Stream connecting...")

        try:
            conn = await self.broker.open_stream(credentials)
        except AuthFailure as e:
            logger.error(f"Stream rejected credentials: {e}")
            self._last_error = str(e)
            self.state = ConnectionState.FAILED
            self._stop_timers()
            return False
        except Exception as e:
            logger.error(f"Stream connect failed: {e}")
            self._last_error = str(e)
            self._schedule_reconnect()
            return False

        if self.state != ConnectionState.CONNECTING:
            # disconnect() ran while we were connecting
            await conn.close()
            return False

        loop = asyncio.get_running_loop()
        self._conn = conn
        self.state = ConnectionState.CONNECTED
        self._reconnect_attempts = 0
        self._next_reconnect_delay = None
        self._last_error = None
        self._last_tick = loop.time()
        self._connects += 1
        self._connected_at = datetime.utcnow()

        self._reader_task = asyncio.create_task(self._read_loop(conn))
        self._flush_task = asyncio.create_task(self.flusher.run(self.flush_interval))
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        logger.info("Stream connected")

        # A fresh socket has no subscriptions
        if self._tracked:
            await self._send_subscriptions(list(self._tracked.values()))

        return True

    async def disconnect(self):
        """Cancel all timers, flush what is buffered, close, go IDLE"""
        self.state = ConnectionState.IDLE

        tasks = [self._reader_task, self._flush_task, self._heartbeat_task, self._reconnect_task]
        self._stop_timers()
        self._cancel(self._reconnect_task)
        self._reconnect_task = None

        pending = [
            t for t in tasks
            if t is not None and t is not asyncio.current_task()
        ]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        await self._close_connection()
        await self._final_flush()
        logger.info("Stream disconnected")

    # ==================== Reconnection ====================

    def _schedule_reconnect(self):
        if self._reconnect_attempts >= self.max_reconnect_attempts:
            error = ExhaustedReconnect(
                f"Gave up after {self._reconnect_attempts} reconnect attempts"
            )
            logger.error(f"Max reconnection attempts reached. {error}")
            self._last_error = str(error)
            self.state = ConnectionState.FAILED
            self._next_reconnect_delay = None
            self._stop_timers()
            return

        self._reconnect_attempts += 1
        delay = backoff_delay(self.reconnect_base_delay, self._reconnect_attempts)
        self._next_reconnect_delay = delay
        self.state = ConnectionState.RECONNECTING

        logger.info(
            f"Scheduling stream reconnect in {delay:.1f}s "
            f"(attempt {self._reconnect_attempts}/{self.max_reconnect_attempts})"
        )

        self._cancel(self._reconnect_task)
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay))

    async def _reconnect_after(self, delay: float):
        await asyncio.sleep(delay)

        if self.state != ConnectionState.RECONNECTING:
            return

        logger.info("Attempting to reconnect stream...")
        try:
            credentials = await self.auth.current_credentials()
        except AuthFailure as e:
            logger.error(f"Reconnect aborted, no usable credentials: {e}")
            self._last_error = str(e)
            self.state = ConnectionState.FAILED
            self._stop_timers()
            return

        await self._connect(credentials)

    async def _handle_connection_lost(self, reason: str):
        if self.state != ConnectionState.CONNECTED:
            return

        logger.warning(f"Stream lost: {reason}")
        self._last_error = reason
        self.state = ConnectionState.RECONNECTING

        # A cancelled flush hands its unwritten ticks back to the buffer
        await self._wait_stopped(self._stop_timers())
        await self._close_connection()
        await self._final_flush()

        if self.state != ConnectionState.RECONNECTING:
            # disconnect() ran while we were tearing down
            return
        self._schedule_reconnect()

    # ==================== Background tasks ====================

    async def _read_loop(self, conn: StreamConnection):
        loop = asyncio.get_running_loop()
        try:
            async for tick in conn.ticks():
                self._last_tick = loop.time()
                self._ticks_received += 1

                inst = self._tracked.get(tick.identifier)
                self.buffer.put(PriceObservation(
                    identifier=tick.identifier,
                    venue=tick.venue or (inst.venue if inst else None),
                    price=tick.price,
                    symbol=inst.symbol if inst else None,
                    observed_at=tick.exchange_time or datetime.utcnow(),
                ))
            reason = "closed by server"
        except asyncio.CancelledError:
            raise
        except Exception as e:
            reason = str(e) or type(e).__name__

        await self._handle_connection_lost(reason)

    async def _heartbeat_loop(self):
        loop = asyncio.get_running_loop()
        while True:
            await asyncio.sleep(self.heartbeat_interval)

            if self.state != ConnectionState.CONNECTED:
                continue

            silence = loop.time() - self._last_tick
            if silence > self.liveness_window:
                logger.warning(f"Stream heartbeat missing for {silence:.0f}s. Reconnecting...")
                await self._handle_connection_lost("heartbeat timeout")
                return

    async def _final_flush(self):
        try:
            await self.flusher.flush()
        except Exception as e:
            logger.error(f"Final flush failed: {e}")

    async def _close_connection(self):
        conn, self._conn = self._conn, None
        if conn is not None:
            await conn.close()

    def _stop_timers(self) -> List[asyncio.Task]:
        """Cancel reader, flush and heartbeat tasks. Returns the ones cancelled."""
        cancelled = []
        for task in (self._reader_task, self._flush_task, self._heartbeat_task):
            if self._cancel(task):
                cancelled.append(task)
        self._reader_task = None
        self._flush_task = None
        self._heartbeat_task = None
        return cancelled

    @staticmethod
    async def _wait_stopped(tasks: List[asyncio.Task]):
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    @staticmethod
    def _cancel(task: Optional[asyncio.Task]) -> bool:
        # A task tearing the connection down must not cancel itself
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            return True
        return False

    # ==================== Subscriptions ====================

    async def subscribe_identifiers(self, identifiers: Iterable[str]) -> bool:
        """
        Subscribe identifiers in LTP mode.

        While CONNECTING or RECONNECTING the identifiers are only recorded;
        they are sent once the connection is up.
        """
        wanted = list(dict.fromkeys(str(i) for i in identifiers if i))
        if not wanted:
            return False

        if self.state in (ConnectionState.IDLE, ConnectionState.FAILED):
            logger.warning("Stream not connected; cannot subscribe to tokens")
            return False

        try:
            found = await self.directory.lookup_many(wanted)
        except Exception as e:
            logger.error(f"Stream: error looking up tokens: {e}")
            return False

        unresolved = [i for i in wanted if i not in found]
        if unresolved:
            logger.warning(f"Stream: {len(unresolved)} unknown tokens ignored: {unresolved[:10]}")
        if not found:
            return False

        self._tracked.update(found)

        if self.state != ConnectionState.CONNECTED:
            logger.info(f"Stream: {len(found)} tokens queued until reconnect")
            return True

        return await self._send_subscriptions(list(found.values()))

    async def _send_subscriptions(self, instruments: List[TrackedInstrument]) -> bool:
        conn = self._conn
        if conn is None:
            return False

        grouping = group_by_venue(instruments, SUBSCRIBE_BATCH)
        if grouping.unfetchable:
            logger.warning(
                f"Stream: cannot subscribe, no venue: {[i.symbol for i in grouping.unfetchable]}"
            )

        try:
            for request in grouping.requests():
                await conn.subscribe(request)
        except Exception as e:
            logger.error(f"Error subscribing to tokens: {e}")
            return False

        return grouping.identifier_count > 0

    # ==================== Status ====================

    def get_status(self) -> dict:
        running = self.state in (
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
            ConnectionState.RECONNECTING,
        )
        return {
            "transport": self.name,
            "running": running,
            "subscribed_count": len(self._tracked),
            "state": self.state.value,
            "reconnect_attempts": self._reconnect_attempts,
            "next_reconnect_delay": self._next_reconnect_delay,
            "ticks_received": self._ticks_received,
            "connects": self._connects,
            "connected_since": self._connected_at.isoformat() if self._connected_at else None,
            "last_error": self._last_error,
            "flush": self.flusher.get_stats(),
        }
