"""
Angel One SmartAPI client - LTP quotes over REST, ticks over SmartStream.

Every broker response is normalized here into PriceQuote / RawTick, so the
transports never look at raw payloads.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from email.utils import parsedate_to_datetime
from typing import Any, Dict, List, Optional

import aiohttp
from loguru import logger
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..errors import NetworkError, RateLimited, TransientNetworkFailure, Unauthorized
from .auth import AuthProvider, Credentials
from .stream_client import STREAM_URL, StreamConnection, open_stream

API_ROOT = "https://apiconnect.angelone.in"
QUOTE_PATH = "/rest/secure/angelbroking/market/v1/quote"

# Error codes the API returns for expired or invalid sessions
UNAUTHORIZED_CODES = {"AG8001", "AG8002", "AB1010"}

# Cap on how long a single Retry-After is honoured inside one request
MAX_RETRY_AFTER = 30.0

_backoff = wait_exponential(multiplier=1, max=10)


def parse_retry_after(value: Optional[str], default: float = 1.0) -> float:
    """Retry-After in seconds; accepts delta-seconds or an HTTP date"""
    if not value:
        return default
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return default
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max((when - datetime.now(timezone.utc)).total_seconds(), 0.0)


def _wait_for_retry(retry_state) -> float:
    """Honour the broker's Retry-After on 429, exponential backoff otherwise"""
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    if isinstance(exc, RateLimited) and exc.retry_after > 0:
        return min(exc.retry_after, MAX_RETRY_AFTER)
    return _backoff(retry_state)


@dataclass
class PriceQuote:
    """One identifier's price from a quote response. price is None when unavailable."""
    identifier: str
    venue: Optional[str]
    price: Optional[Decimal]


def _to_decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        price = Decimal(str(value))
    except InvalidOperation:
        return None
    if not price.is_finite():
        return None
    return price


def normalize_quote(raw: dict) -> Optional[PriceQuote]:
    """Map a single fetched entry to a PriceQuote; None if it has no identifier"""
    if not isinstance(raw, dict):
        return None

    identifier = raw.get("symbolToken") or raw.get("instrumentToken")
    if identifier is None or identifier == "":
        return None

    price = raw.get("ltp")
    if price is None:
        price = raw.get("lastPrice")

    return PriceQuote(
        identifier=str(identifier),
        venue=raw.get("exchange"),
        price=_to_decimal(price),
    )


def extract_quotes(response: Any) -> List[PriceQuote]:
    """
    Pull quotes out of a quote-endpoint response.

    Accepts both {"data": {"fetched": [...]}} and {"fetched": [...]}.

    Raises:
        Unauthorized: the response reports an invalid session
    """
    if not isinstance(response, dict):
        logger.warning(f"Unexpected quote response type: {type(response).__name__}")
        return []

    if response.get("status") is False:
        code = response.get("errorcode") or response.get("errorCode") or ""
        message = response.get("message") or ""
        if code in UNAUTHORIZED_CODES:
            raise Unauthorized(f"{code}: {message}")
        logger.warning(f"Quote request rejected: {code} {message}")
        return []

    data = response.get("data")
    if isinstance(data, dict) and "fetched" in data:
        fetched = data.get("fetched") or []
    elif "fetched" in response:
        fetched = response.get("fetched") or []
    else:
        logger.warning(f"Unexpected quote response structure: {str(response)[:200]}")
        return []

    quotes = []
    for entry in fetched:
        quote = normalize_quote(entry)
        if quote:
            quotes.append(quote)
    return quotes


class BrokerClient:
    """
    SmartAPI client for LTP data.

    Uses:
    - REST quote endpoint for batched LTP (polling transport)
    - SmartStream websocket for live ticks (streaming transport)
    """

    def __init__(
        self,
        config: dict,
        auth: AuthProvider,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.api_key = config.get('api_key') or ""
        self.client_code = config.get('client_code') or ""
        self.api_root = (config.get('api_root') or API_ROOT).rstrip("/")
        self.stream_url = config.get('stream_url') or STREAM_URL
        self.timeout = float(config.get('timeout', 10))
        self.auth = auth

        self._session = session

        # Stats
        self._requests = 0
        self._failures = 0

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session"""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers={
                    'Accept': 'application/json',
                    'Content-Type': 'application/json',
                    'X-UserType': 'USER',
                    'X-SourceID': 'WEB',
                    'User-Agent': 'LtpIngest/0.1',
                }
            )
        return self._session

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()

    def _headers(self, credentials: Credentials) -> dict:
        return {
            'X-PrivateKey': self.api_key,
            'Authorization': f'Bearer {credentials.access_token}',
        }

    @retry(
        retry=retry_if_exception_type(TransientNetworkFailure),
        stop=stop_after_attempt(3),
        wait=_wait_for_retry,
        reraise=True,
    )
    async def _post(self, path: str, payload: dict, headers: dict) -> Any:
        """POST with retry on transient failures"""
        session = await self._get_session()
        self._requests += 1

        try:
            async with session.post(f"{self.api_root}{path}", json=payload, headers=headers) as response:
                if response.status == 429:
                    retry_after = parse_retry_after(response.headers.get('Retry-After'))
                    logger.warning(f"Rate limited by broker (retry after {retry_after}s)")
                    raise RateLimited(retry_after=retry_after)

                if response.status in (401, 403):
                    raise Unauthorized(f"HTTP {response.status}")

                if response.status >= 400:
                    raise NetworkError(f"HTTP {response.status} from {path}")

                return await response.json(content_type=None)

        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self._failures += 1
            raise NetworkError(f"{type(e).__name__}: {e}") from e

    async def fetch_prices(self, exchange_tokens: Dict[str, List[str]]) -> List[PriceQuote]:
        """
        Fetch LTP for up to 50 tokens per exchange.

        Args:
            exchange_tokens: {venue: [identifier, ...]}

        Returns:
            One PriceQuote per identifier the broker answered for

        Raises:
            AuthUnavailable, Unauthorized, RateLimited, NetworkError
        """
        if not exchange_tokens:
            return []

        credentials = await self.auth.current_credentials()
        payload = {
            "mode": "LTP",
            "exchangeTokens": {
                venue: [str(t) for t in tokens]
                for venue, tokens in exchange_tokens.items()
            },
        }

        response = await self._post(QUOTE_PATH, payload, self._headers(credentials))
        quotes = extract_quotes(response)

        # Quote entries do not always echo the exchange
        if len(exchange_tokens) == 1:
            venue = next(iter(exchange_tokens))
            for quote in quotes:
                quote.venue = quote.venue or venue

        return quotes

    async def open_stream(self, credentials: Credentials) -> StreamConnection:
        return await open_stream(
            credentials,
            api_key=self.api_key,
            client_code=self.client_code,
            url=self.stream_url,
            open_timeout=self.timeout,
        )

    def get_stats(self) -> dict:
        return {
            "requests": self._requests,
            "failures": self._failures,
        }
