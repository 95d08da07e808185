"""
Interchangeable price transports: polling (REST) and streaming (websocket).
"""

from .base import ConnectionState, Transport
from .polling import PollingTransport
from .streaming import StreamingTransport, backoff_delay
from .factory import build_transport, transport_factory

__all__ = [
    "ConnectionState",
    "Transport",
    "PollingTransport",
    "StreamingTransport",
    "backoff_delay",
    "build_transport",
    "transport_factory",
]
