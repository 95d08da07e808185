"""
Failure taxonomy for the ingestion engine.

Adapters translate library exceptions into these at the boundary so the
transports only ever branch on one set of types.
"""


class IngestionError(Exception):
    """Base class for every failure raised inside the engine"""


class TransientNetworkFailure(IngestionError):
    """Network-level failure that is retried automatically"""


class NetworkError(TransientNetworkFailure):
    """Connection refused, timeout, unexpected HTTP status, closed socket"""


class RateLimited(TransientNetworkFailure):
    """Upstream returned HTTP 429"""

    def __init__(self, message: str = "Rate limited", retry_after: float = 0.0):
        super().__init__(message)
        self.retry_after = retry_after


class AuthFailure(IngestionError):
    """Credentials missing or rejected; needs an external token refresh"""


class AuthUnavailable(AuthFailure):
    """No usable credentials are stored"""


class Unauthorized(AuthFailure):
    """Broker rejected the stored credentials"""


class ResolutionFailure(IngestionError):
    """Identifier could not be mapped to a symbol or venue"""


class PersistenceFailure(IngestionError):
    """A store read or write failed"""


class ExhaustedReconnect(IngestionError):
    """Streaming transport gave up after the maximum reconnect attempts"""
