"""
Store interfaces for the ingestion core.

Each component talks to its durable state through one of these abstract
stores. ``warehouse.memory`` implements them in process for tests and dry
runs; ``warehouse.cache_store``, ``warehouse.process_store`` and
``warehouse.symbol_store`` implement them on PostgreSQL.
"""

from abc import ABC, abstractmethod
from datetime import datetime

from market_etl.core.models import (
    CacheEntry,
    CanonicalSymbol,
    MissingSymbolRecord,
    ProcessRun,
    ProcessState,
    ResolutionStatus,
    SecurityType,
    SymbolMapping,
)


class CacheStore(ABC):
    """Durable table of upstream responses keyed by (source, cache_key)."""

    @abstractmethod
    async def get_entry(self, source: str, cache_key: str) -> CacheEntry | None:
        """
        Load an entry regardless of freshness.

        Raises:
            CacheCorruptionError: If the stored payload cannot be decoded
        """

    @abstractmethod
    async def upsert_entry(self, entry: CacheEntry) -> None:
        """Insert or replace the entry, resetting hit_count."""

    @abstractmethod
    async def record_hit(self, source: str, cache_key: str) -> None:
        pass

    @abstractmethod
    async def delete_entry(self, source: str, cache_key: str) -> bool:
        pass

    @abstractmethod
    async def delete_expired(self, now: datetime, source: str | None = None) -> int:
        """Delete entries with expires_at <= now, returning how many went."""


class ProcessStore(ABC):
    """
    Durable process runs.

    ``transition`` is the single mutation path for lifecycle state and is
    atomic: the row is only updated when its current state is allowed to
    reach the target.
    """

    @abstractmethod
    async def create_run(self, proc_type: str, now: datetime) -> ProcessRun:
        pass

    @abstractmethod
    async def get_run(self, run_id: int) -> ProcessRun | None:
        pass

    @abstractmethod
    async def transition(
        self,
        run_id: int,
        target: ProcessState,
        now: datetime,
        error_msg: str | None = None,
        records_processed: int | None = None,
        increment_attempts: bool = False,
    ) -> ProcessRun:
        """
        Move a run to ``target``.

        Raises:
            RunNotFound: If the run does not exist
            InvalidTransition: If the current state cannot reach target
            ValueError: If records_processed would decrease
        """

    @abstractmethod
    async def add_progress(self, run_id: int, delta: int) -> ProcessRun:
        """
        Add committed records to a run that is not terminal.

        Raises:
            RunNotFound: If the run does not exist
            InvalidTransition: If the run is terminal
        """

    @abstractmethod
    async def list_runs(self, proc_type: str | None = None, limit: int = 50) -> list[ProcessRun]:
        """Most recent runs first."""


class SymbolStore(ABC):
    """Canonical symbols, provider mappings and the missing-symbol ledger."""

    # Canonical symbols

    @abstractmethod
    async def insert_symbols(self, symbols: list[CanonicalSymbol]) -> int:
        """Insert symbols, skipping existing sids. Returns rows inserted."""

    @abstractmethod
    async def get_symbol(self, sid: int) -> CanonicalSymbol | None:
        pass

    @abstractmethod
    async def find_by_symbol(
        self, symbol: str, security_types: list[SecurityType] | None = None
    ) -> list[CanonicalSymbol]:
        """Exact (case-insensitive) ticker matches, optionally limited to types."""

    @abstractmethod
    async def list_symbols(
        self, security_types: list[SecurityType] | None = None
    ) -> list[CanonicalSymbol]:
        pass

    @abstractmethod
    async def list_sids(self) -> list[int]:
        pass

    # Provider mappings

    @abstractmethod
    async def get_verified_mapping(
        self, source_name: str, source_identifier: str
    ) -> SymbolMapping | None:
        pass

    @abstractmethod
    async def get_mapping_for_sid(self, sid: int, source_name: str) -> SymbolMapping | None:
        pass

    @abstractmethod
    async def commit_mapping(
        self, mapping: SymbolMapping, demote: SymbolMapping | None = None
    ) -> SymbolMapping:
        """
        Atomically demote ``demote`` (if given) to unverified and upsert
        ``mapping`` on (sid, source_name). Returns the stored mapping.
        """

    @abstractmethod
    async def list_mappings(self, sid: int | None = None) -> list[SymbolMapping]:
        pass

    # Missing-symbol ledger

    @abstractmethod
    async def record_sighting(
        self, symbol_text: str, source: str, now: datetime
    ) -> MissingSymbolRecord:
        """
        Upsert a sighting. Pending rows get seen_count + 1 and a new
        last_seen_at; settled rows are returned unchanged.
        """

    @abstractmethod
    async def get_missing(self, symbol_text: str, source: str) -> MissingSymbolRecord | None:
        pass

    @abstractmethod
    async def list_pending(
        self, limit: int, source: str | None = None
    ) -> list[MissingSymbolRecord]:
        """Pending records, most seen first."""

    @abstractmethod
    async def settle_missing(
        self,
        record_id: int,
        status: ResolutionStatus,
        now: datetime,
        resolved_sid: int | None = None,
        details: str | None = None,
    ) -> MissingSymbolRecord | None:
        """
        Move a pending record to a terminal status. Returns None when the
        record was already settled.
        """

    @abstractmethod
    async def annotate_missing(self, record_id: int, details: str) -> None:
        """Attach resolution details to a record without settling it."""
