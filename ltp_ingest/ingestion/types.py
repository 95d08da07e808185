"""
Value types shared by the transports, the tick buffer and the writer
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional


@dataclass(frozen=True)
class TrackedInstrument:
    """An instrument the engine keeps fresh. Identifier is unique per venue."""
    identifier: str
    venue: Optional[str]
    symbol: str


@dataclass
class PriceObservation:
    """A single price seen by a transport, consumed once by persistence"""
    identifier: str
    venue: Optional[str]
    price: Decimal
    symbol: Optional[str] = None
    observed_at: datetime = field(default_factory=datetime.utcnow)

    def __repr__(self):
        return f"<PriceObservation {self.symbol or self.identifier}@{self.venue} {self.price}>"
