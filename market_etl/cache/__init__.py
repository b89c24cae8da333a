"""
Response cache: repository, payload codec and key helpers.
"""

from .keys import DEFAULT_TTLS, DataCategory, default_ttl, make_key, make_key_parts
from .repository import CacheLookup, CacheRepository, FetchedPayload, Fresh, Miss, SlotState, Stale

__all__ = [
    "CacheRepository",
    "CacheLookup",
    "FetchedPayload",
    "Fresh",
    "Stale",
    "Miss",
    "SlotState",
    "DataCategory",
    "DEFAULT_TTLS",
    "default_ttl",
    "make_key",
    "make_key_parts",
]
