"""
CacheEntry model representing a persisted upstream response.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from market_etl.core.clock import utc_now


class CacheEntry(BaseModel):
    """
    A prior upstream response, unique per (source, cache_key).

    Attributes:
        source: Provider the response came from (``api_source`` column)
        cache_key: Deterministic key derived from the request descriptor
        endpoint_url: Endpoint that produced the response
        payload: Decoded response payload (JSON value, text or bytes)
        status_code: Upstream HTTP status
        headers: Selected upstream response headers
        etag: ETag header, when the provider sent one
        last_modified: Last-Modified header, when the provider sent one
        cached_at: When the entry was written
        expires_at: Entry is Fresh strictly before this instant
        hit_count: Number of Fresh reads served from this entry
    """

    source: str = Field(..., min_length=1, max_length=50)
    cache_key: str = Field(..., min_length=1, max_length=255)
    endpoint_url: str = ""
    payload: Any
    status_code: int = 200
    headers: dict[str, str] | None = None
    etag: str | None = None
    last_modified: str | None = None
    cached_at: datetime = Field(default_factory=utc_now)
    expires_at: datetime
    hit_count: int = Field(default=0, ge=0)

    def is_fresh(self, now: datetime) -> bool:
        return now < self.expires_at

    class Config:
        json_schema_extra = {
            "example": {
                "source": "coingecko",
                "cache_key": "COINGECKO_DETAILS_BITCOIN",
                "endpoint_url": "https://api.coingecko.com/api/v3/coins/bitcoin",
                "payload": {"id": "bitcoin", "symbol": "btc"},
                "status_code": 200,
                "expires_at": "2025-01-02T00:00:00Z",
            }
        }
