"""
Venue grouping for batched price requests.

The quote endpoint accepts at most MAX_BATCH tokens per request, keyed by
exchange segment, so tracked instruments are partitioned by venue and each
venue's identifiers are split into fixed-size chunks.
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List

from .types import TrackedInstrument

MAX_BATCH = 50


@dataclass
class VenueChunks:
    """Result of grouping: fetchable chunks plus instruments with no venue"""
    chunks: Dict[str, List[List[str]]] = field(default_factory=dict)
    unfetchable: List[TrackedInstrument] = field(default_factory=list)

    def requests(self) -> List[Dict[str, List[str]]]:
        """Flatten into one {venue: identifiers} request body per chunk"""
        return [
            {venue: chunk}
            for venue, venue_chunks in self.chunks.items()
            for chunk in venue_chunks
        ]

    @property
    def identifier_count(self) -> int:
        return sum(len(c) for venue_chunks in self.chunks.values() for c in venue_chunks)


def group_by_venue(
    instruments: Iterable[TrackedInstrument],
    max_batch: int = MAX_BATCH,
) -> VenueChunks:
    """
    Partition instruments by venue and chunk each venue's identifiers.

    Venues and identifiers keep first-seen order. An identifier repeated
    within a venue is emitted once.

    Args:
        instruments: Tracked instruments
        max_batch: Upper bound on identifiers per chunk

    Returns:
        VenueChunks with venue -> ordered chunks and the instruments that
        were skipped for having no venue
    """
    if max_batch < 1:
        raise ValueError(f"max_batch must be positive, got {max_batch}")

    by_venue: Dict[str, List[str]] = {}
    seen = set()
    result = VenueChunks()

    for inst in instruments:
        if not inst.venue:
            result.unfetchable.append(inst)
            continue

        key = (inst.venue, inst.identifier)
        if key in seen:
            continue
        seen.add(key)
        by_venue.setdefault(inst.venue, []).append(inst.identifier)

    for venue, identifiers in by_venue.items():
        result.chunks[venue] = [
            identifiers[i : i + max_batch]
            for i in range(0, len(identifiers), max_batch)
        ]

    return result
