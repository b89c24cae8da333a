"""
Symbol resolution engine.

Maps provider identifiers and feed symbols onto canonical SIDs in three
stages of decreasing certainty:

1. a verified mapping for (source, identifier)      -> confidence 1.0
2. an exact ticker match within the source's types  -> confidence 1.0
3. a fuzzy match on the normalized security name    -> capped, needs review

Symbols that do not resolve are kept in the missing-symbol ledger and
retried by ``attempt_resolution_sweep`` after new canonical symbols load.
"""

import asyncio

from market_etl.config import Settings
from market_etl.core.clock import Clock, utc_now
from market_etl.core.models import (
    CanonicalSymbol,
    MissingSymbolRecord,
    ResolutionStatus,
    SecurityType,
    SidGenerator,
    SymbolMapping,
)
from market_etl.observability.logger import get_logger, log_operation
from market_etl.observability.metrics import (
    increment_counter,
    mapping_conflicts_total,
    missing_symbols_total,
    resolution_outcomes_total,
)
from market_etl.resolution.matching import name_similarity, normalize_name, prepare_symbol
from market_etl.resolution.results import (
    Ambiguous,
    Conflict,
    Matched,
    Registered,
    SweepReport,
    Unmatched,
)
from market_etl.utils.validation import validate_limit, validate_source_name
from market_etl.warehouse.base import SymbolStore

logger = get_logger(__name__)

_SCORE_EPSILON = 1e-9


class ResolutionEngine:
    """
    Usage:
        engine = ResolutionEngine(symbol_store, settings)
        result = await engine.resolve("coingecko", "bitcoin", candidate_name="Bitcoin")
    """

    def __init__(self, store: SymbolStore, settings: Settings | None = None, clock: Clock = utc_now):
        self.store = store
        self.settings = settings or Settings()
        self._clock = clock
        self._source_locks: dict[str, asyncio.Lock] = {}
        self._sid_lock = asyncio.Lock()
        self._sid_generator: SidGenerator | None = None

    @property
    def verify_threshold(self) -> float:
        return self.settings.resolution.verify_threshold

    def _lock_for(self, source: str) -> asyncio.Lock:
        # One per source: mapping writes touch both the identifier and the sid's row.
        lock = self._source_locks.get(source)
        if lock is None:
            lock = self._source_locks[source] = asyncio.Lock()
        return lock

    def _scope(self, source: str, override: list[SecurityType] | None) -> list[SecurityType] | None:
        if override:
            return override
        return self.settings.provider(source).security_types or None

    # Canonical symbols

    async def load_canonical_symbols(self, symbols: list[CanonicalSymbol]) -> int:
        """Insert authoritative canonical symbols, skipping known sids."""
        with log_operation("load canonical symbols", logger=logger, count=len(symbols)):
            inserted = await self.store.insert_symbols(symbols)
        async with self._sid_lock:
            self._sid_generator = None
        return inserted

    async def create_symbol(
        self, symbol: str, name: str, security_type: SecurityType
    ) -> CanonicalSymbol:
        """Mint a new SID for a security and store it."""
        async with self._sid_lock:
            if self._sid_generator is None:
                self._sid_generator = SidGenerator(await self.store.list_sids())
            canonical = CanonicalSymbol(
                sid=self._sid_generator.next_sid(security_type),
                symbol=symbol.strip().upper(),
                name=name.strip(),
                security_type=security_type,
            )
            await self.store.insert_symbols([canonical])
        logger.info(
            "Created canonical symbol",
            extra={"sid": canonical.sid, "symbol": canonical.symbol, "security_type": security_type.value},
        )
        return canonical

    # Mappings

    async def register_mapping(
        self, sid: int, source: str, source_identifier: str, confidence: float
    ) -> Registered | Conflict:
        """
        Record that ``source_identifier`` at ``source`` means ``sid``.

        When another sid already holds the identifier, the higher
        confidence wins (ties keep the incumbent), the loser is demoted to
        unverified and a Conflict is returned.

        A sid has one mapping per source. A mapping the sid already holds
        under another identifier is only replaced by a verified claim of
        strictly higher confidence, and the replaced row is reported as
        ``displaced``. A claim that may not replace it is returned with
        ``id=None`` and nothing is written.
        """
        source = validate_source_name(source)
        identifier = source_identifier.strip()
        if not identifier:
            raise ValueError("source_identifier must be a non-empty string")
        if not 0.0 <= confidence <= 1.0:
            raise ValueError(f"confidence must be within [0, 1], got {confidence}")

        async with self._lock_for(source):
            now = self._clock()
            incumbent = await self.store.get_verified_mapping(source, identifier)
            held = await self.store.get_mapping_for_sid(sid, source)
            if held is not None and held.source_identifier == identifier:
                held = None

            def displaces(verified: bool) -> bool:
                return held is None or (verified and confidence > held.confidence)

            if incumbent is None or incumbent.sid == sid:
                if incumbent is not None:
                    verified = True
                    confidence = max(confidence, incumbent.confidence)
                else:
                    verified = confidence >= self.verify_threshold
                claim = SymbolMapping(
                    sid=sid,
                    source_name=source,
                    source_identifier=identifier,
                    verified=verified,
                    confidence=confidence,
                    last_verified_at=now if verified else None,
                )
                if not displaces(verified):
                    logger.info(
                        "Mapping claim kept out by existing mapping",
                        extra={"sid": sid, "source": source, "identifier": identifier,
                               "held_identifier": held.source_identifier},
                    )
                    return Registered(mapping=claim)

                stored = await self.store.commit_mapping(claim)
                self._log_displaced(held, stored)
                logger.debug(
                    "Registered mapping",
                    extra={"sid": sid, "source": source, "identifier": identifier, "verified": verified},
                )
                return Registered(mapping=stored, displaced=held)

            increment_counter(mapping_conflicts_total, source=source)
            displaced = None
            if confidence > incumbent.confidence and displaces(True):
                winner = await self.store.commit_mapping(
                    SymbolMapping(
                        sid=sid,
                        source_name=source,
                        source_identifier=identifier,
                        verified=True,
                        confidence=confidence,
                        last_verified_at=now,
                    ),
                    demote=incumbent,
                )
                loser = incumbent.model_copy(update={"verified": False})
                displaced = held
                self._log_displaced(held, winner)
            else:
                loser = SymbolMapping(
                    sid=sid,
                    source_name=source,
                    source_identifier=identifier,
                    verified=False,
                    confidence=confidence,
                )
                if held is None:
                    loser = await self.store.commit_mapping(loser)
                winner = incumbent

            logger.warning(
                "Mapping conflict",
                extra={
                    "source": source,
                    "identifier": identifier,
                    "winner_sid": winner.sid,
                    "loser_sid": loser.sid,
                },
            )
            return Conflict(
                source_name=source,
                source_identifier=identifier,
                winner=winner,
                loser=loser,
                displaced=displaced,
            )

    def _log_displaced(self, held: SymbolMapping | None, stored: SymbolMapping) -> None:
        if held is None:
            return
        logger.warning(
            "Mapping repointed to a new identifier",
            extra={
                "sid": stored.sid,
                "source": stored.source_name,
                "old_identifier": held.source_identifier,
                "identifier": stored.source_identifier,
            },
        )

    # Resolution

    async def resolve(
        self,
        source: str,
        identifier_or_symbol: str,
        candidate_name: str | None = None,
    ) -> Matched | Ambiguous | Unmatched:
        source = validate_source_name(source)
        result = await self._resolve(source, identifier_or_symbol.strip(), candidate_name)
        increment_counter(resolution_outcomes_total, source=source, outcome=result.kind)
        return result

    async def _resolve(
        self, source: str, text: str, candidate_name: str | None
    ) -> Matched | Ambiguous | Unmatched:
        if not text:
            return Unmatched()

        mapping = await self.store.get_verified_mapping(source, text)
        if mapping is not None:
            return Matched(sid=mapping.sid, confidence=1.0, stage=1)

        query = prepare_symbol(text)
        if query.skip_reason:
            return Unmatched()
        scope = self._scope(source, query.security_types)

        candidates = await self.store.find_by_symbol(query.text, scope)
        if len(candidates) == 1:
            return Matched(sid=candidates[0].sid, confidence=1.0, stage=2)
        if len(candidates) > 1:
            if candidate_name:
                wanted = normalize_name(candidate_name)
                narrowed = [c for c in candidates if normalize_name(c.name) == wanted]
                if len(narrowed) == 1:
                    return Matched(sid=narrowed[0].sid, confidence=1.0, stage=2)
            return Ambiguous(sids=[c.sid for c in candidates], stage=2)

        if candidate_name:
            return await self._fuzzy_match(scope, candidate_name)
        return Unmatched()

    async def _fuzzy_match(
        self, scope: list[SecurityType] | None, candidate_name: str
    ) -> Matched | Ambiguous | Unmatched:
        resolution = self.settings.resolution
        best_score = 0.0
        best: list[CanonicalSymbol] = []

        for symbol in await self.store.list_symbols(scope):
            score = name_similarity(candidate_name, symbol.name)
            if score < resolution.fuzzy_threshold:
                continue
            if score > best_score + _SCORE_EPSILON:
                best_score, best = score, [symbol]
            elif abs(score - best_score) <= _SCORE_EPSILON:
                best.append(symbol)

        if not best:
            return Unmatched()
        if len(best) > 1:
            return Ambiguous(sids=[s.sid for s in best], stage=3)
        return Matched(
            sid=best[0].sid,
            confidence=min(best_score, resolution.fuzzy_confidence_cap),
            stage=3,
            requires_verification=True,
        )

    async def resolve_and_record(
        self,
        source: str,
        identifier: str,
        candidate_name: str | None = None,
    ) -> Matched | Ambiguous | Unmatched:
        """
        Resolve for a loader: new matches become mappings, anything that
        does not match lands in the missing-symbol ledger.
        """
        result = await self.resolve(source, identifier, candidate_name)
        if isinstance(result, Matched):
            if result.stage > 1:
                await self.register_mapping(result.sid, source, identifier, result.confidence)
        else:
            await self.record_missing(identifier, source)
        return result

    # Missing-symbol ledger

    async def record_missing(self, symbol_text: str, source: str) -> MissingSymbolRecord:
        source = validate_source_name(source)
        symbol_text = symbol_text.strip()
        if not symbol_text:
            raise ValueError("symbol_text must be a non-empty string")

        record = await self.store.record_sighting(symbol_text, source, self._clock())
        increment_counter(missing_symbols_total, source=source)
        logger.debug(
            "Recorded missing symbol",
            extra={"symbol": symbol_text, "source": source, "seen_count": record.seen_count},
        )
        return record

    async def attempt_resolution_sweep(
        self, limit: int = 100, source: str | None = None
    ) -> SweepReport:
        """
        Retry resolution for pending ledger records, most seen first.

        Matched records become found (and gain a mapping), unmatched ones
        become not_found, FOREX/INDEX/COMMODITY symbols are skipped and
        ambiguous ones stay pending with the candidates noted.
        """
        limit = validate_limit(limit)
        if source is not None:
            source = validate_source_name(source)

        pending = await self.store.list_pending(limit, source)
        semaphore = asyncio.Semaphore(self.settings.resolution.sweep_concurrency)
        report = SweepReport()

        async def settle(record: MissingSymbolRecord) -> None:
            async with semaphore:
                try:
                    outcome = await self._settle_pending(record)
                except Exception as e:
                    logger.error(
                        f"Resolution failed for missing symbol: {e}",
                        extra={"symbol": record.symbol_text, "source": record.source},
                        exc_info=True,
                    )
                    outcome = "errors"
            setattr(report, outcome, getattr(report, outcome) + 1)

        with log_operation("missing symbol sweep", logger=logger, pending=len(pending)):
            await asyncio.gather(*(settle(record) for record in pending))

        logger.info("Sweep finished", extra=report.model_dump())
        return report

    async def _settle_pending(self, record: MissingSymbolRecord) -> str:
        now = self._clock()
        query = prepare_symbol(record.symbol_text)
        if query.skip_reason:
            await self.store.settle_missing(
                record.id, ResolutionStatus.SKIPPED, now, details=query.skip_reason
            )
            return "skipped"

        result = await self.resolve(record.source, record.symbol_text)

        if isinstance(result, Matched):
            await self.register_mapping(
                result.sid, record.source, record.symbol_text, result.confidence
            )
            await self.store.settle_missing(
                record.id,
                ResolutionStatus.FOUND,
                now,
                resolved_sid=result.sid,
                details=f"stage {result.stage} match, confidence {result.confidence:.2f}",
            )
            return "found"

        if isinstance(result, Ambiguous):
            await self.store.annotate_missing(
                record.id, f"ambiguous: candidate sids {', '.join(map(str, result.sids))}"
            )
            return "ambiguous"

        await self.store.settle_missing(
            record.id, ResolutionStatus.NOT_FOUND, now, details="no canonical symbol matched"
        )
        return "not_found"
