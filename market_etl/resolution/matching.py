"""
Text normalization and name similarity for symbol resolution.
"""

import re
import unicodedata
from difflib import SequenceMatcher

from pydantic import BaseModel

from market_etl.core.models import SecurityType

# Words that distinguish legal entities, not securities.
_NAME_STOPWORDS = frozenset({
    "the", "inc", "incorporated", "corp", "corporation", "co", "company",
    "ltd", "limited", "plc", "llc", "lp", "sa", "ag", "nv", "holdings", "group",
})

_NON_ALNUM = re.compile(r"[^a-z0-9]+")

_SKIPPED_PREFIXES = {
    "FOREX:": "Skipped: FOREX symbols not supported",
    "INDEX:": "Skipped: INDEX symbols not supported",
    "COMMODITY:": "Skipped: COMMODITY symbols not supported",
}

CRYPTO_PREFIX = "CRYPTO:"


class SymbolQuery(BaseModel):
    """
    A feed's symbol text prepared for resolution.

    Attributes:
        text: Symbol to look up, prefix removed
        skip_reason: Set when the symbol is of a kind that is never resolved
        security_types: Restricts matching to these types when set
    """

    text: str
    skip_reason: str | None = None
    security_types: list[SecurityType] | None = None


def prepare_symbol(symbol_text: str) -> SymbolQuery:
    """
    Interpret feed prefixes.

    Examples:
        >>> prepare_symbol("CRYPTO:BTC").text
        'BTC'
        >>> prepare_symbol("FOREX:USD").skip_reason
        'Skipped: FOREX symbols not supported'
    """
    text = symbol_text.strip()
    upper = text.upper()

    if upper.startswith(CRYPTO_PREFIX):
        return SymbolQuery(
            text=text[len(CRYPTO_PREFIX):],
            security_types=[SecurityType.CRYPTOCURRENCY],
        )

    for prefix, reason in _SKIPPED_PREFIXES.items():
        if upper.startswith(prefix):
            return SymbolQuery(text=text, skip_reason=reason)

    return SymbolQuery(text=text)


def normalize_name(name: str) -> str:
    """
    Lower-case, strip accents and punctuation, drop legal-entity words.

    Examples:
        >>> normalize_name("Apple Inc.")
        'apple'
        >>> normalize_name("The Coca-Cola Company")
        'coca cola'
    """
    decomposed = unicodedata.normalize("NFKD", name or "")
    ascii_only = decomposed.encode("ascii", "ignore").decode("ascii").lower()
    words = [w for w in _NON_ALNUM.split(ascii_only) if w and w not in _NAME_STOPWORDS]
    return " ".join(words)


def name_similarity(a: str, b: str) -> float:
    """Similarity of two names in [0, 1] after normalization."""
    left, right = normalize_name(a), normalize_name(b)
    if not left or not right:
        return 0.0
    if left == right:
        return 1.0
    return SequenceMatcher(None, left, right).ratio()
