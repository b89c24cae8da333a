"""
Cross-provider symbol resolution.
"""

from .engine import ResolutionEngine
from .matching import SymbolQuery, name_similarity, normalize_name, prepare_symbol
from .results import (
    Ambiguous,
    Conflict,
    Matched,
    RegisterResult,
    Registered,
    ResolveResult,
    SweepReport,
    Unmatched,
)

__all__ = [
    "ResolutionEngine",
    "SymbolQuery",
    "name_similarity",
    "normalize_name",
    "prepare_symbol",
    "Ambiguous",
    "Conflict",
    "Matched",
    "RegisterResult",
    "Registered",
    "ResolveResult",
    "SweepReport",
    "Unmatched",
]
