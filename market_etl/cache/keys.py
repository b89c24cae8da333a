"""
Cache key construction and per-category TTL defaults.

The repository never picks a TTL on its own; loaders look one up here
(or in their provider config) and pass it explicitly.
"""

from collections.abc import Iterable
from enum import Enum


def make_key(prefix: str, identifier: str) -> str:
    """
    Key from a prefix and an identifier.

    Examples:
        >>> make_key("OVERVIEW", "aapl")
        'OVERVIEW_AAPL'
    """
    return f"{prefix}_{identifier.upper()}"


def make_key_parts(parts: Iterable[str]) -> str:
    """
    Key from several parts, upper-cased and joined with underscores.

    Examples:
        >>> make_key_parts(["time_series_daily", "ibm", "full"])
        'TIME_SERIES_DAILY_IBM_FULL'
    """
    return "_".join(str(part).upper() for part in parts)


class DataCategory(str, Enum):
    SYMBOL_SEARCH = "symbol_search"
    OVERVIEW = "overview"
    NEWS = "news"
    TOP_MOVERS = "top_movers"
    DAILY = "daily"
    INTRADAY = "intraday"
    CRYPTO_INTRADAY = "crypto_intraday"
    CRYPTO_METADATA = "crypto_metadata"


_HOUR = 3600

DEFAULT_TTLS: dict[DataCategory, int] = {
    DataCategory.SYMBOL_SEARCH: 7 * 24 * _HOUR,
    DataCategory.OVERVIEW: 30 * 24 * _HOUR,
    DataCategory.NEWS: 24 * _HOUR,
    DataCategory.TOP_MOVERS: 24 * _HOUR,
    DataCategory.DAILY: 24 * _HOUR,
    DataCategory.INTRADAY: 24 * _HOUR,
    DataCategory.CRYPTO_INTRADAY: 2 * _HOUR,
    DataCategory.CRYPTO_METADATA: 24 * _HOUR,
}


def default_ttl(category: DataCategory | str) -> int:
    """TTL in seconds for a data category."""
    return DEFAULT_TTLS[DataCategory(category)]
