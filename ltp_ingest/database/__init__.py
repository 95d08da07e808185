from .models import Base, WatchlistItem, PricePoint, BrokerToken
from .db import Database

__all__ = [
    'Base', 'WatchlistItem', 'PricePoint', 'BrokerToken',
    'Database',
]
