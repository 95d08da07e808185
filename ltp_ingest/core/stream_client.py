"""
SmartStream websocket connection for live LTP ticks.

Ticks arrive as little-endian binary packets; LTP mode packets carry:

    offset  size  field
    0       1     subscription mode
    1       1     exchange type
    2       25    token, NUL padded ASCII
    27      8     sequence number
    35      8     exchange timestamp (ms since epoch)
    43      8     last traded price (paise)

The server expects a literal "ping" text frame periodically and answers
with "pong".
"""

import asyncio
import json
import struct
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import AsyncIterator, Dict, List, Optional, Tuple

import websockets
from websockets.exceptions import ConnectionClosed, InvalidStatus, WebSocketException
from loguru import logger

from ..errors import NetworkError, Unauthorized
from .auth import Credentials

STREAM_URL = "wss://smartapisocket.angelone.in/smart-stream"
PING_INTERVAL = 10  # seconds between "ping" frames

ACTION_SUBSCRIBE = 1
MODE_LTP = 1

EXCHANGE_TYPES = {
    "NSE": 1,
    "NFO": 2,
    "BSE": 3,
    "BFO": 4,
    "MCX": 5,
    "NCDEX": 7,
    "CDS": 13,
}
VENUES = {code: venue for venue, code in EXCHANGE_TYPES.items()}

LTP_PACKET = struct.Struct("<BB25sqqq")

# Currency derivatives are quoted to 7 decimal places, everything else in paise
_PRICE_DIVISORS = {13: Decimal(10_000_000)}
_DEFAULT_DIVISOR = Decimal(100)


@dataclass
class RawTick:
    """Normalized tick as decoded from the wire"""
    identifier: str
    venue: Optional[str]
    price: Decimal
    sequence: int = 0
    exchange_time: Optional[datetime] = None


def parse_ltp_packet(data: bytes) -> RawTick:
    """
    Decode an LTP-mode binary packet.

    Longer packets (quote/snap-quote modes) share the same prefix, so only
    the first LTP_PACKET.size bytes are read.

    Raises:
        ValueError: packet is shorter than an LTP packet
    """
    if len(data) < LTP_PACKET.size:
        raise ValueError(f"Packet too short: {len(data)} bytes")

    _mode, exchange_type, raw_token, sequence, ts_ms, ltp = LTP_PACKET.unpack_from(data)

    token = raw_token.split(b"\x00", 1)[0].decode("ascii").strip()
    divisor = _PRICE_DIVISORS.get(exchange_type, _DEFAULT_DIVISOR)

    exchange_time = None
    if ts_ms > 0:
        exchange_time = datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc).replace(tzinfo=None)

    return RawTick(
        identifier=token,
        venue=VENUES.get(exchange_type),
        price=Decimal(ltp) / divisor,
        sequence=sequence,
        exchange_time=exchange_time,
    )


def build_subscribe_request(
    tokens_by_venue: Dict[str, List[str]],
    action: int = ACTION_SUBSCRIBE,
    mode: int = MODE_LTP,
) -> Tuple[dict, List[str]]:
    """
    Build a subscribe frame with one tokenList entry per venue.

    Returns:
        (request, venues that have no exchange type and were left out)
    """
    token_list = []
    skipped = []

    for venue, tokens in tokens_by_venue.items():
        exchange_type = EXCHANGE_TYPES.get((venue or "").upper())
        if exchange_type is None:
            skipped.append(venue)
            continue
        token_list.append({
            "exchangeType": exchange_type,
            "tokens": [str(t) for t in tokens],
        })

    request = {
        "correlationID": uuid.uuid4().hex[:10],
        "action": action,
        "params": {
            "mode": mode,
            "tokenList": token_list,
        },
    }
    return request, skipped


class StreamConnection:
    """An open SmartStream socket"""

    def __init__(self, ws):
        self._ws = ws
        self._closed = False

        # Stats
        self._messages_received = 0
        self._ticks_received = 0

    @property
    def closed(self) -> bool:
        return self._closed

    async def subscribe(self, tokens_by_venue: Dict[str, List[str]]) -> int:
        """
        Subscribe tokens in LTP mode.

        Returns:
            Number of tokens sent
        """
        request, skipped = build_subscribe_request(tokens_by_venue)
        if skipped:
            logger.warning(f"Stream: no exchange type for venues {skipped}, not subscribing them")

        sent = sum(len(entry["tokens"]) for entry in request["params"]["tokenList"])
        if not sent:
            return 0

        try:
            await self._ws.send(json.dumps(request))
        except ConnectionClosed as e:
            raise NetworkError(f"Stream closed while subscribing: {e}") from e

        logger.info(f"Stream: subscribed to {sent} tokens")
        return sent

    async def _ping_loop(self):
        while True:
            await asyncio.sleep(PING_INTERVAL)
            try:
                await self._ws.send("ping")
            except Exception:
                break

    async def ticks(self) -> AsyncIterator[RawTick]:
        """
        Yield ticks until the socket closes.

        Raises:
            NetworkError: the connection dropped
        """
        ping_task = asyncio.create_task(self._ping_loop())
        try:
            async for message in self._ws:
                self._messages_received += 1

                if isinstance(message, bytes):
                    try:
                        tick = parse_ltp_packet(message)
                    except ValueError as e:
                        logger.debug(f"Stream: skipping packet ({e})")
                        continue
                    self._ticks_received += 1
                    yield tick
                    continue

                if message == "pong":
                    continue

                self._handle_text(message)

        except ConnectionClosed as e:
            raise NetworkError(f"Stream connection closed: {e}") from e
        finally:
            ping_task.cancel()
            self._closed = True

    def _handle_text(self, message: str):
        try:
            data = json.loads(message)
        except json.JSONDecodeError:
            logger.debug(f"Stream: unexpected text frame: {message[:100]}")
            return

        if isinstance(data, dict) and data.get("errorCode"):
            logger.error(f"Stream error message: {data.get('errorCode')} {data.get('errorMessage')}")
        else:
            logger.debug(f"Stream message: {data}")

    async def close(self):
        if self._closed:
            return
        self._closed = True
        try:
            await self._ws.close()
        except Exception as e:
            logger.error(f"Error closing stream: {e}")

    def get_stats(self) -> dict:
        return {
            "closed": self._closed,
            "messages_received": self._messages_received,
            "ticks_received": self._ticks_received,
        }


async def open_stream(
    credentials: Credentials,
    api_key: str,
    client_code: str,
    url: str = STREAM_URL,
    open_timeout: float = 10.0,
) -> StreamConnection:
    """
    Open an authenticated SmartStream connection.

    Raises:
        Unauthorized: handshake rejected with 401/403
        NetworkError: anything else that prevented the connection
    """
    headers = {
        "Authorization": f"Bearer {credentials.access_token}",
        "x-api-key": api_key or "",
        "x-client-code": client_code or "",
        "x-feed-token": credentials.feed_token or "",
    }

    try:
        ws = await websockets.connect(
            url,
            additional_headers=headers,
            ping_interval=None,  # "ping" text frames instead
            close_timeout=5,
            open_timeout=open_timeout,
        )
    except InvalidStatus as e:
        status = e.response.status_code
        if status in (401, 403):
            raise Unauthorized(f"Stream handshake rejected ({status})") from e
        raise NetworkError(f"Stream handshake failed ({status})") from e
    except (OSError, asyncio.TimeoutError, WebSocketException) as e:
        raise NetworkError(f"Stream connect failed: {e}") from e

    logger.info("Stream: connected")
    return StreamConnection(ws)
