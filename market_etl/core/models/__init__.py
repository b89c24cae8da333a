"""
Core data models for the market data ingestion core.

All models use Pydantic for runtime validation and type safety.
"""

from .cache_entry import CacheEntry
from .missing_symbol import MissingSymbolRecord, ResolutionStatus
from .process_run import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATES,
    ProcessRun,
    ProcessState,
    allowed_sources,
)
from .rate_budget import RateBudget
from .symbol import CanonicalSymbol, SecurityType, SidGenerator, decode_sid, encode_sid
from .symbol_mapping import SymbolMapping

__all__ = [
    "CacheEntry",
    "RateBudget",
    "ProcessRun",
    "ProcessState",
    "TERMINAL_STATES",
    "ALLOWED_TRANSITIONS",
    "allowed_sources",
    "CanonicalSymbol",
    "SecurityType",
    "SidGenerator",
    "encode_sid",
    "decode_sid",
    "SymbolMapping",
    "MissingSymbolRecord",
    "ResolutionStatus",
]
