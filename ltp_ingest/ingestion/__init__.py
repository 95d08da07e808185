"""
Ingestion core: grouping, coalescing, persistence and the subscription
registry that ties a transport to them.
"""

from .types import TrackedInstrument, PriceObservation
from .grouping import MAX_BATCH, VenueChunks, group_by_venue
from .directory import InstrumentDirectory
from .price_writer import ExistenceCache, PriceWriter
from .tick_buffer import TickBuffer, FlushScheduler
from .registry import IngestionEngine
from .retention import RetentionJob

__all__ = [
    "TrackedInstrument",
    "PriceObservation",
    "MAX_BATCH",
    "VenueChunks",
    "group_by_venue",
    "InstrumentDirectory",
    "ExistenceCache",
    "PriceWriter",
    "TickBuffer",
    "FlushScheduler",
    "IngestionEngine",
    "RetentionJob",
]
