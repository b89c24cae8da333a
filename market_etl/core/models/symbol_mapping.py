"""
SymbolMapping model linking a canonical SID to a provider's identifier.
"""

from datetime import datetime

from pydantic import BaseModel, Field


class SymbolMapping(BaseModel):
    """
    Provider-specific identifier for a canonical symbol.

    Unique per (sid, source_name). Among verified rows, unique per
    (source_name, source_identifier). Rows are never deleted, a losing
    mapping is demoted to unverified instead.

    Attributes:
        id: Auto-increment primary key
        sid: Canonical symbol id
        source_name: Provider name, e.g. "coingecko"
        source_identifier: Provider's own id, e.g. "bitcoin"
        verified: Whether this mapping is the active one for the identifier
        confidence: Confidence of the match that produced the mapping
        last_verified_at: Last time the mapping was confirmed
    """

    id: int | None = None
    sid: int
    source_name: str = Field(..., min_length=1)
    source_identifier: str = Field(..., min_length=1)
    verified: bool = False
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    last_verified_at: datetime | None = None
