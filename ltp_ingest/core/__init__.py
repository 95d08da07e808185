"""
Broker-facing adapters: credentials, REST quotes and the tick stream.
"""

from .auth import AuthProvider, Credentials, StoredCredentialsProvider, StaticCredentialsProvider
from .broker_client import BrokerClient, PriceQuote, extract_quotes, normalize_quote
from .stream_client import RawTick, StreamConnection, parse_ltp_packet, build_subscribe_request

__all__ = [
    "AuthProvider",
    "Credentials",
    "StoredCredentialsProvider",
    "StaticCredentialsProvider",
    "BrokerClient",
    "PriceQuote",
    "extract_quotes",
    "normalize_quote",
    "RawTick",
    "StreamConnection",
    "parse_ltp_packet",
    "build_subscribe_request",
]
