"""
Input validation utilities for the ingestion core.

Source names and cache keys end up in SQL parameters, metric labels and
log fields, so they are checked once at the component boundary.
"""

import re


class ValidationError(ValueError):
    """Raised when input validation fails."""
    pass


_SOURCE_PATTERN = re.compile(r"^[a-zA-Z0-9_\-\.]+$")


def validate_source_name(source: str, field_name: str = "source") -> str:
    """
    Validate a provider/source name.

    Source names must be non-empty strings of alphanumerics, hyphens,
    underscores and dots, at most 50 characters (the width of the
    ``api_source`` column). They are normalized to lower case.

    Examples:
        >>> validate_source_name("CoinGecko")
        'coingecko'
        >>> validate_source_name("news_feed")
        'news_feed'
    """
    if not source or not isinstance(source, str):
        raise ValidationError(f"{field_name} must be a non-empty string")

    source = source.strip()
    if not source:
        raise ValidationError(f"{field_name} cannot be empty or whitespace-only")

    if not _SOURCE_PATTERN.match(source):
        raise ValidationError(
            f"{field_name} contains invalid characters. "
            "Only alphanumeric, hyphens, underscores, and dots are allowed."
        )

    if len(source) > 50:
        raise ValidationError(f"{field_name} exceeds maximum length of 50 characters")

    return source.lower()


def validate_cache_key(cache_key: str, field_name: str = "cache_key") -> str:
    """
    Validate a cache key: non-empty, printable, at most 255 characters.

    Examples:
        >>> validate_cache_key("OVERVIEW_AAPL")
        'OVERVIEW_AAPL'
    """
    if not cache_key or not isinstance(cache_key, str):
        raise ValidationError(f"{field_name} must be a non-empty string")

    if not cache_key.strip():
        raise ValidationError(f"{field_name} cannot be empty or whitespace-only")

    if not cache_key.isprintable():
        raise ValidationError(f"{field_name} contains non-printable characters")

    if len(cache_key) > 255:
        raise ValidationError(f"{field_name} exceeds maximum length of 255 characters")

    return cache_key


def validate_ttl(ttl_seconds: float, field_name: str = "ttl") -> float:
    """
    Validate a caller-supplied TTL in seconds. Must be positive.

    Examples:
        >>> validate_ttl(3600)
        3600
    """
    if isinstance(ttl_seconds, bool) or not isinstance(ttl_seconds, (int, float)):
        raise ValidationError(f"{field_name} must be a number of seconds")

    if ttl_seconds <= 0:
        raise ValidationError(f"{field_name} must be positive, got {ttl_seconds}")

    return ttl_seconds


def validate_limit(limit: int, max_limit: int = 10000, field_name: str = "limit") -> int:
    """
    Validate a query limit parameter.

    Examples:
        >>> validate_limit(100)
        100
    """
    if isinstance(limit, bool) or not isinstance(limit, int):
        raise ValidationError(f"{field_name} must be an integer")

    if limit < 1:
        raise ValidationError(f"{field_name} must be at least 1")

    if limit > max_limit:
        raise ValidationError(f"{field_name} cannot exceed {max_limit}")

    return limit
