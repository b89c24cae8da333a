"""
In-process store implementations.

Same contracts as the PostgreSQL stores, backed by dictionaries and an
``asyncio.Lock`` per store. Used by the unit tests and for dry runs with
``MARKET_ETL_STORE=memory``. Models handed out are copies, so callers can
never mutate stored state behind the store's back.
"""

import asyncio
import itertools
from datetime import datetime
from typing import Any

from market_etl.cache.codec import decode_payload, encode_payload
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
from market_etl.errors import InvalidTransition, RunNotFound
from market_etl.warehouse.base import CacheStore, ProcessStore, SymbolStore


class InMemoryCacheStore(CacheStore):
    """
    Rows are kept with the payload in its stored envelope form, so decode
    failures surface exactly as they do against PostgreSQL.
    """

    def __init__(self) -> None:
        self._rows: dict[tuple[str, str], dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def get_entry(self, source: str, cache_key: str) -> CacheEntry | None:
        row = self._rows.get((source, cache_key))
        if row is None:
            return None
        payload = decode_payload(row["response_data"], source, cache_key)
        return CacheEntry(**{k: v for k, v in row.items() if k != "response_data"}, payload=payload)

    async def upsert_entry(self, entry: CacheEntry) -> None:
        async with self._lock:
            row = entry.model_dump(exclude={"payload"})
            row["hit_count"] = 0
            row["response_data"] = encode_payload(entry.payload)
            self._rows[(entry.source, entry.cache_key)] = row

    async def record_hit(self, source: str, cache_key: str) -> None:
        async with self._lock:
            row = self._rows.get((source, cache_key))
            if row is not None:
                row["hit_count"] += 1

    async def delete_entry(self, source: str, cache_key: str) -> bool:
        async with self._lock:
            return self._rows.pop((source, cache_key), None) is not None

    async def delete_expired(self, now: datetime, source: str | None = None) -> int:
        async with self._lock:
            expired = [
                key
                for key, row in self._rows.items()
                if row["expires_at"] <= now and (source is None or key[0] == source)
            ]
            for key in expired:
                del self._rows[key]
            return len(expired)

    def write_raw_payload(self, source: str, cache_key: str, response_data: Any) -> None:
        """Overwrite the stored envelope of an existing row as-is."""
        self._rows[(source, cache_key)]["response_data"] = response_data


class InMemoryProcessStore(ProcessStore):
    def __init__(self) -> None:
        self._runs: dict[int, ProcessRun] = {}
        self._ids = itertools.count(1)
        self._lock = asyncio.Lock()

    async def create_run(self, proc_type: str, now: datetime) -> ProcessRun:
        async with self._lock:
            run = ProcessRun(id=next(self._ids), proc_type=proc_type, start_time=now)
            self._runs[run.id] = run
            return run.model_copy()

    async def get_run(self, run_id: int) -> ProcessRun | None:
        run = self._runs.get(run_id)
        return run.model_copy() if run else None

    async def transition(
        self,
        run_id: int,
        target: ProcessState,
        now: datetime,
        error_msg: str | None = None,
        records_processed: int | None = None,
        increment_attempts: bool = False,
    ) -> ProcessRun:
        async with self._lock:
            run = self._runs.get(run_id)
            if run is None:
                raise RunNotFound(run_id)
            if not run.can_transition_to(target):
                raise InvalidTransition(run_id, run.end_state.value, target.value)
            if records_processed is not None and records_processed < run.records_processed:
                raise ValueError(
                    f"records_processed cannot decrease for run {run_id}: "
                    f"{run.records_processed} -> {records_processed}"
                )

            update: dict[str, Any] = {"end_state": target}
            if target in (ProcessState.COMPLETED, ProcessState.FAILED, ProcessState.CANCELLED):
                update["end_time"] = now
            else:
                update["end_time"] = None
            if error_msg is not None:
                update["error_msg"] = error_msg
            if records_processed is not None:
                update["records_processed"] = records_processed
            if increment_attempts:
                update["attempts"] = run.attempts + 1

            updated = run.model_copy(update=update)
            self._runs[run_id] = updated
            return updated.model_copy()

    async def add_progress(self, run_id: int, delta: int) -> ProcessRun:
        async with self._lock:
            run = self._runs.get(run_id)
            if run is None:
                raise RunNotFound(run_id)
            if run.is_terminal:
                raise InvalidTransition(run_id, run.end_state.value, run.end_state.value)
            updated = run.model_copy(update={"records_processed": run.records_processed + delta})
            self._runs[run_id] = updated
            return updated.model_copy()

    async def list_runs(self, proc_type: str | None = None, limit: int = 50) -> list[ProcessRun]:
        runs = [
            run for run in self._runs.values()
            if proc_type is None or run.proc_type == proc_type
        ]
        runs.sort(key=lambda r: (r.start_time, r.id), reverse=True)
        return [run.model_copy() for run in runs[:limit]]


class InMemorySymbolStore(SymbolStore):
    def __init__(self) -> None:
        self._symbols: dict[int, CanonicalSymbol] = {}
        self._mappings: dict[int, SymbolMapping] = {}
        self._missing: dict[tuple[str, str], MissingSymbolRecord] = {}
        self._mapping_ids = itertools.count(1)
        self._missing_ids = itertools.count(1)
        self._lock = asyncio.Lock()

    # Canonical symbols

    async def insert_symbols(self, symbols: list[CanonicalSymbol]) -> int:
        async with self._lock:
            inserted = 0
            for symbol in symbols:
                if symbol.sid not in self._symbols:
                    self._symbols[symbol.sid] = symbol.model_copy()
                    inserted += 1
            return inserted

    async def get_symbol(self, sid: int) -> CanonicalSymbol | None:
        symbol = self._symbols.get(sid)
        return symbol.model_copy() if symbol else None

    async def find_by_symbol(
        self, symbol: str, security_types: list[SecurityType] | None = None
    ) -> list[CanonicalSymbol]:
        wanted = symbol.upper()
        return [
            s.model_copy()
            for s in await self.list_symbols(security_types)
            if s.symbol.upper() == wanted
        ]

    async def list_symbols(
        self, security_types: list[SecurityType] | None = None
    ) -> list[CanonicalSymbol]:
        return [
            s.model_copy()
            for s in sorted(self._symbols.values(), key=lambda s: s.sid)
            if not security_types or s.security_type in security_types
        ]

    async def list_sids(self) -> list[int]:
        return list(self._symbols)

    # Provider mappings

    async def get_verified_mapping(
        self, source_name: str, source_identifier: str
    ) -> SymbolMapping | None:
        for mapping in self._mappings.values():
            if (
                mapping.verified
                and mapping.source_name == source_name
                and mapping.source_identifier == source_identifier
            ):
                return mapping.model_copy()
        return None

    async def get_mapping_for_sid(self, sid: int, source_name: str) -> SymbolMapping | None:
        for mapping in self._mappings.values():
            if mapping.sid == sid and mapping.source_name == source_name:
                return mapping.model_copy()
        return None

    async def commit_mapping(
        self, mapping: SymbolMapping, demote: SymbolMapping | None = None
    ) -> SymbolMapping:
        async with self._lock:
            rows = {mapping_id: m.model_copy() for mapping_id, m in self._mappings.items()}

            if demote is not None and demote.id in rows:
                rows[demote.id] = rows[demote.id].model_copy(update={"verified": False})

            existing_id = next(
                (
                    mapping_id for mapping_id, m in rows.items()
                    if m.sid == mapping.sid and m.source_name == mapping.source_name
                ),
                None,
            )
            stored_id = existing_id if existing_id is not None else next(self._mapping_ids)
            stored = mapping.model_copy(update={"id": stored_id})
            rows[stored_id] = stored

            if stored.verified:
                for mapping_id, m in rows.items():
                    if (
                        mapping_id != stored_id
                        and m.verified
                        and m.source_name == stored.source_name
                        and m.source_identifier == stored.source_identifier
                    ):
                        raise ValueError(
                            f"{stored.source_name}:{stored.source_identifier} already has "
                            f"a verified mapping to sid {m.sid}"
                        )

            self._mappings = rows
            return stored.model_copy()

    async def list_mappings(self, sid: int | None = None) -> list[SymbolMapping]:
        return [
            m.model_copy()
            for m in sorted(self._mappings.values(), key=lambda m: m.id)
            if sid is None or m.sid == sid
        ]

    # Missing-symbol ledger

    async def record_sighting(
        self, symbol_text: str, source: str, now: datetime
    ) -> MissingSymbolRecord:
        async with self._lock:
            record = self._missing.get((symbol_text, source))
            if record is None:
                record = MissingSymbolRecord(
                    id=next(self._missing_ids),
                    symbol_text=symbol_text,
                    source=source,
                    first_seen_at=now,
                    last_seen_at=now,
                )
            elif record.is_pending:
                record = record.model_copy(
                    update={"seen_count": record.seen_count + 1, "last_seen_at": now}
                )
            self._missing[(symbol_text, source)] = record
            return record.model_copy()

    async def get_missing(self, symbol_text: str, source: str) -> MissingSymbolRecord | None:
        record = self._missing.get((symbol_text, source))
        return record.model_copy() if record else None

    async def list_pending(
        self, limit: int, source: str | None = None
    ) -> list[MissingSymbolRecord]:
        pending = [
            r for r in self._missing.values()
            if r.is_pending and (source is None or r.source == source)
        ]
        pending.sort(key=lambda r: (-r.seen_count, r.id))
        return [r.model_copy() for r in pending[:limit]]

    async def settle_missing(
        self,
        record_id: int,
        status: ResolutionStatus,
        now: datetime,
        resolved_sid: int | None = None,
        details: str | None = None,
    ) -> MissingSymbolRecord | None:
        async with self._lock:
            for key, record in self._missing.items():
                if record.id == record_id:
                    if not record.is_pending:
                        return None
                    settled = record.model_copy(
                        update={
                            "resolution_status": status,
                            "resolved_sid": resolved_sid,
                            "resolution_details": details,
                            "resolved_at": now,
                        }
                    )
                    self._missing[key] = settled
                    return settled.model_copy()
            return None

    async def annotate_missing(self, record_id: int, details: str) -> None:
        async with self._lock:
            for key, record in self._missing.items():
                if record.id == record_id:
                    self._missing[key] = record.model_copy(update={"resolution_details": details})
                    return
