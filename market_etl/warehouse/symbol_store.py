"""
PostgreSQL symbol store: ``symbols``, ``symbol_mappings`` and
``missing_symbols``.
"""

from datetime import datetime

import psycopg

from market_etl.core.models import (
    CanonicalSymbol,
    MissingSymbolRecord,
    ResolutionStatus,
    SecurityType,
    SymbolMapping,
)
from market_etl.observability.logger import get_logger
from market_etl.warehouse.base import SymbolStore
from market_etl.warehouse.connection import DatabaseConnectionPool

logger = get_logger(__name__)

_SYMBOL_COLUMNS = "sid, symbol, name, security_type"
_MAPPING_COLUMNS = (
    "id, sid, source_name, source_identifier, verified, confidence, last_verified_at"
)
_MISSING_COLUMNS = (
    "id, symbol, source, first_seen_at, last_seen_at, seen_count, "
    "resolution_status, resolved_sid, resolution_details, resolved_at"
)


def _row_to_symbol(row: dict) -> CanonicalSymbol:
    return CanonicalSymbol(
        sid=row["sid"],
        symbol=row["symbol"],
        name=row["name"],
        security_type=SecurityType(row["security_type"]),
    )


def _row_to_missing(row: dict) -> MissingSymbolRecord:
    return MissingSymbolRecord(
        id=row["id"],
        symbol_text=row["symbol"],
        source=row["source"],
        first_seen_at=row["first_seen_at"],
        last_seen_at=row["last_seen_at"],
        seen_count=row["seen_count"],
        resolution_status=ResolutionStatus(row["resolution_status"]),
        resolved_sid=row["resolved_sid"],
        resolution_details=row["resolution_details"],
        resolved_at=row["resolved_at"],
    )


def _type_values(security_types: list[SecurityType] | None) -> list[str] | None:
    return [t.value for t in security_types] if security_types else None


class PostgresSymbolStore(SymbolStore):
    def __init__(self, pool: DatabaseConnectionPool):
        self.pool = pool

    # Canonical symbols

    async def insert_symbols(self, symbols: list[CanonicalSymbol]) -> int:
        """
        Insert canonical symbols in one transaction.

        Existing sids are left untouched (ON CONFLICT DO NOTHING).
        """
        if not symbols:
            return 0

        inserted = 0
        async with self.pool.get_cursor() as cur:
            for symbol in symbols:
                await cur.execute(
                    """
                    INSERT INTO symbols (sid, symbol, name, security_type)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (sid) DO NOTHING
                    """,
                    (symbol.sid, symbol.symbol, symbol.name, symbol.security_type.value),
                )
                inserted += cur.rowcount
        return inserted

    async def get_symbol(self, sid: int) -> CanonicalSymbol | None:
        rows = await self.pool.execute_query(
            f"SELECT {_SYMBOL_COLUMNS} FROM symbols WHERE sid = %s", (sid,)
        )
        return _row_to_symbol(rows[0]) if rows else None

    async def find_by_symbol(
        self, symbol: str, security_types: list[SecurityType] | None = None
    ) -> list[CanonicalSymbol]:
        rows = await self.pool.execute_query(
            f"""
            SELECT {_SYMBOL_COLUMNS} FROM symbols
            WHERE UPPER(symbol) = UPPER(%(symbol)s)
              AND (%(types)s::text[] IS NULL OR security_type = ANY(%(types)s::text[]))
            ORDER BY sid
            """,
            {"symbol": symbol, "types": _type_values(security_types)},
        )
        return [_row_to_symbol(row) for row in rows]

    async def list_symbols(
        self, security_types: list[SecurityType] | None = None
    ) -> list[CanonicalSymbol]:
        rows = await self.pool.execute_query(
            f"""
            SELECT {_SYMBOL_COLUMNS} FROM symbols
            WHERE %(types)s::text[] IS NULL OR security_type = ANY(%(types)s::text[])
            ORDER BY sid
            """,
            {"types": _type_values(security_types)},
        )
        return [_row_to_symbol(row) for row in rows]

    async def list_sids(self) -> list[int]:
        rows = await self.pool.execute_query("SELECT sid FROM symbols")
        return [row["sid"] for row in rows]

    # Provider mappings

    async def get_verified_mapping(
        self, source_name: str, source_identifier: str
    ) -> SymbolMapping | None:
        rows = await self.pool.execute_query(
            f"""
            SELECT {_MAPPING_COLUMNS} FROM symbol_mappings
            WHERE source_name = %s AND source_identifier = %s AND verified
            """,
            (source_name, source_identifier),
        )
        return SymbolMapping(**rows[0]) if rows else None

    async def get_mapping_for_sid(self, sid: int, source_name: str) -> SymbolMapping | None:
        rows = await self.pool.execute_query(
            f"SELECT {_MAPPING_COLUMNS} FROM symbol_mappings WHERE sid = %s AND source_name = %s",
            (sid, source_name),
        )
        return SymbolMapping(**rows[0]) if rows else None

    async def commit_mapping(
        self, mapping: SymbolMapping, demote: SymbolMapping | None = None
    ) -> SymbolMapping:
        """
        Demote the losing mapping and upsert the winner in one transaction,
        so the partial unique index on verified identifiers always holds.

        Raises:
            ValueError: If another verified mapping already owns the identifier
        """
        try:
            async with self.pool.get_cursor() as cur:
                if demote is not None and demote.id is not None:
                    await cur.execute(
                        "UPDATE symbol_mappings SET verified = FALSE WHERE id = %s",
                        (demote.id,),
                    )
                await cur.execute(
                    f"""
                    INSERT INTO symbol_mappings (
                        sid, source_name, source_identifier, verified, confidence, last_verified_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s)
                    ON CONFLICT (sid, source_name) DO UPDATE SET
                        source_identifier = EXCLUDED.source_identifier,
                        verified = EXCLUDED.verified,
                        confidence = EXCLUDED.confidence,
                        last_verified_at = EXCLUDED.last_verified_at
                    RETURNING {_MAPPING_COLUMNS}
                    """,
                    (
                        mapping.sid,
                        mapping.source_name,
                        mapping.source_identifier,
                        mapping.verified,
                        mapping.confidence,
                        mapping.last_verified_at,
                    ),
                )
                row = await cur.fetchone()
        except psycopg.errors.UniqueViolation as e:
            logger.warning(
                f"Mapping rejected by uniqueness constraint: {e}",
                extra={"source": mapping.source_name, "identifier": mapping.source_identifier},
            )
            raise ValueError(
                f"{mapping.source_name}:{mapping.source_identifier} already has a verified mapping"
            ) from e

        return SymbolMapping(**row)

    async def list_mappings(self, sid: int | None = None) -> list[SymbolMapping]:
        if sid is None:
            rows = await self.pool.execute_query(
                f"SELECT {_MAPPING_COLUMNS} FROM symbol_mappings ORDER BY id"
            )
        else:
            rows = await self.pool.execute_query(
                f"SELECT {_MAPPING_COLUMNS} FROM symbol_mappings WHERE sid = %s ORDER BY id",
                (sid,),
            )
        return [SymbolMapping(**row) for row in rows]

    # Missing-symbol ledger

    async def record_sighting(
        self, symbol_text: str, source: str, now: datetime
    ) -> MissingSymbolRecord:
        rows = await self.pool.execute_query(
            f"""
            INSERT INTO missing_symbols (
                symbol, source, first_seen_at, last_seen_at, seen_count, resolution_status
            )
            VALUES (%(symbol)s, %(source)s, %(now)s, %(now)s, 1, 'pending')
            ON CONFLICT (symbol, source) DO UPDATE SET
                last_seen_at = EXCLUDED.last_seen_at,
                seen_count = missing_symbols.seen_count + 1
            WHERE missing_symbols.resolution_status = 'pending'
            RETURNING {_MISSING_COLUMNS}
            """,
            {"symbol": symbol_text, "source": source, "now": now},
        )
        if rows:
            return _row_to_missing(rows[0])

        # Settled rows are left as they are.
        existing = await self.get_missing(symbol_text, source)
        if existing is None:
            raise LookupError(f"missing symbol {source}:{symbol_text} vanished during upsert")
        return existing

    async def get_missing(self, symbol_text: str, source: str) -> MissingSymbolRecord | None:
        rows = await self.pool.execute_query(
            f"SELECT {_MISSING_COLUMNS} FROM missing_symbols WHERE symbol = %s AND source = %s",
            (symbol_text, source),
        )
        return _row_to_missing(rows[0]) if rows else None

    async def list_pending(
        self, limit: int, source: str | None = None
    ) -> list[MissingSymbolRecord]:
        rows = await self.pool.execute_query(
            f"""
            SELECT {_MISSING_COLUMNS} FROM missing_symbols
            WHERE resolution_status = 'pending'
              AND (%(source)s::text IS NULL OR source = %(source)s::text)
            ORDER BY seen_count DESC, id
            LIMIT %(limit)s
            """,
            {"source": source, "limit": limit},
        )
        return [_row_to_missing(row) for row in rows]

    async def settle_missing(
        self,
        record_id: int,
        status: ResolutionStatus,
        now: datetime,
        resolved_sid: int | None = None,
        details: str | None = None,
    ) -> MissingSymbolRecord | None:
        rows = await self.pool.execute_query(
            f"""
            UPDATE missing_symbols SET
                resolution_status = %s,
                resolved_sid = %s,
                resolution_details = %s,
                resolved_at = %s
            WHERE id = %s AND resolution_status = 'pending'
            RETURNING {_MISSING_COLUMNS}
            """,
            (status.value, resolved_sid, details, now, record_id),
        )
        return _row_to_missing(rows[0]) if rows else None

    async def annotate_missing(self, record_id: int, details: str) -> None:
        await self.pool.execute_command(
            "UPDATE missing_symbols SET resolution_details = %s WHERE id = %s",
            (details, record_id),
        )
