"""
MissingSymbolRecord model: the ledger of unmatched symbol sightings.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from market_etl.core.clock import utc_now


class ResolutionStatus(str, Enum):
    PENDING = "pending"
    FOUND = "found"
    NOT_FOUND = "not_found"
    SKIPPED = "skipped"


class MissingSymbolRecord(BaseModel):
    """
    A symbol seen in a feed that did not resolve to a canonical symbol.

    Attributes:
        id: Auto-increment primary key
        symbol_text: Symbol exactly as the feed spelled it
        source: Where it was seen (e.g. "news_feed", "coingecko")
        first_seen_at: First sighting
        last_seen_at: Most recent sighting
        seen_count: Sightings while pending
        resolution_status: pending until a sweep settles it
        resolved_sid: Canonical SID once found
        resolution_details: Free-text note from the last resolution attempt
        resolved_at: When the record left pending
    """

    id: int | None = None
    symbol_text: str = Field(..., min_length=1)
    source: str = Field(..., min_length=1)
    first_seen_at: datetime = Field(default_factory=utc_now)
    last_seen_at: datetime = Field(default_factory=utc_now)
    seen_count: int = Field(default=1, ge=1)
    resolution_status: ResolutionStatus = ResolutionStatus.PENDING
    resolved_sid: int | None = None
    resolution_details: str | None = None
    resolved_at: datetime | None = None

    @property
    def is_pending(self) -> bool:
        return self.resolution_status == ResolutionStatus.PENDING
