"""
Base transport interface for price ingestion
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Iterable


class ConnectionState(str, Enum):
    """Streaming connection lifecycle"""
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"  # Terminal until an explicit start()


class Transport(ABC):
    """
    Abstract source of price observations.

    Exactly one transport is active per engine; which one is chosen from
    configuration when the engine is built.
    """

    name: str = "transport"

    @abstractmethod
    async def start(self) -> bool:
        """Start ingesting. Idempotent while running."""
        pass

    @abstractmethod
    async def subscribe_identifiers(self, identifiers: Iterable[str]) -> bool:
        """Add identifiers to the tracked set"""
        pass

    @abstractmethod
    async def disconnect(self):
        """Stop ingesting and cancel every pending timer. Safe in any state."""
        pass

    @abstractmethod
    def get_status(self) -> dict:
        """At least {"running": bool, "subscribed_count": int}"""
        pass

    @property
    def is_running(self) -> bool:
        return bool(self.get_status().get("running"))
