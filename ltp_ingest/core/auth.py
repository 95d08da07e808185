"""
Broker credentials.

Tokens are issued and refreshed by an external job that writes them to
the angel_tokens table; the engine only reads the latest row.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from loguru import logger

from ..database.db import Database
from ..errors import AuthUnavailable


@dataclass(frozen=True)
class Credentials:
    access_token: str
    feed_token: Optional[str] = None

    def __repr__(self):
        return f"<Credentials access={self.access_token[:10]}... feed={'yes' if self.feed_token else 'no'}>"


class AuthProvider(ABC):
    """Source of the current broker session credentials"""

    @abstractmethod
    async def current_credentials(self) -> Credentials:
        """
        Return usable credentials.

        Raises:
            AuthUnavailable: nothing usable is available
        """
        pass


class StoredCredentialsProvider(AuthProvider):
    """Reads the most recently refreshed token row from the database"""

    def __init__(self, db: Database):
        self.db = db

    async def current_credentials(self) -> Credentials:
        try:
            row = await self.db.get_latest_token()
        except Exception as e:
            logger.error(f"Error fetching broker token from DB: {e}")
            raise AuthUnavailable(f"Token lookup failed: {e}") from e

        if row is None:
            raise AuthUnavailable("No tokens in database")
        if not row.access_token:
            raise AuthUnavailable("No access token in database")

        # Older refresh jobs stored the feed token in refresh_token
        return Credentials(
            access_token=row.access_token,
            feed_token=row.feed_token or row.refresh_token,
        )


class StaticCredentialsProvider(AuthProvider):
    """Fixed credentials, e.g. from environment variables"""

    def __init__(self, access_token: Optional[str], feed_token: Optional[str] = None):
        self._access_token = access_token
        self._feed_token = feed_token

    async def current_credentials(self) -> Credentials:
        if not self._access_token:
            raise AuthUnavailable("No access token configured")
        return Credentials(self._access_token, self._feed_token)
