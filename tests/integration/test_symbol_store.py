"""
Integration tests for symbol resolution on PostgreSQL.
"""

import pytest
import pytest_asyncio

from market_etl.core.models import (
    CanonicalSymbol,
    ResolutionStatus,
    SecurityType,
    SymbolMapping,
    encode_sid,
)
from market_etl.resolution import Conflict, Matched, ResolutionEngine
from market_etl.warehouse.symbol_store import PostgresSymbolStore

IBM = encode_sid(SecurityType.EQUITY, 1)
BTC_TRUST = encode_sid(SecurityType.EQUITY, 2)
BTC = encode_sid(SecurityType.CRYPTOCURRENCY, 1)


@pytest.fixture
def store(db_pool) -> PostgresSymbolStore:
    return PostgresSymbolStore(db_pool)


@pytest_asyncio.fixture
async def engine(store, settings, fake_clock) -> ResolutionEngine:
    engine = ResolutionEngine(store, settings, clock=fake_clock)
    await engine.load_canonical_symbols([
        CanonicalSymbol(sid=IBM, symbol="IBM", name="International Business Machines",
                        security_type=SecurityType.EQUITY),
        CanonicalSymbol(sid=BTC_TRUST, symbol="BTC", name="Grayscale Bitcoin Mini Trust",
                        security_type=SecurityType.EQUITY),
        CanonicalSymbol(sid=BTC, symbol="BTC", name="Bitcoin",
                        security_type=SecurityType.CRYPTOCURRENCY),
    ])
    return engine


@pytest.mark.integration
class TestPostgresSymbolStore:

    @pytest.mark.asyncio
    async def test_insert_is_idempotent(self, engine, store):
        again = await engine.load_canonical_symbols([
            CanonicalSymbol(sid=IBM, symbol="IBM", name="IBM", security_type=SecurityType.EQUITY),
        ])

        assert again == 0
        assert (await store.get_symbol(IBM)).name == "International Business Machines"
        assert sorted(await store.list_sids()) == sorted([IBM, BTC_TRUST, BTC])

    @pytest.mark.asyncio
    async def test_find_by_symbol_respects_types(self, engine, store):
        crypto = await store.find_by_symbol("btc", [SecurityType.CRYPTOCURRENCY])
        both = await store.find_by_symbol("BTC")

        assert [s.sid for s in crypto] == [BTC]
        assert {s.sid for s in both} == {BTC, BTC_TRUST}

    @pytest.mark.asyncio
    async def test_conflict_demotes_loser(self, engine, store):
        await engine.register_mapping(BTC_TRUST, "news_feed", "BTC", 0.96)

        result = await engine.register_mapping(BTC, "news_feed", "BTC", 1.0)

        assert isinstance(result, Conflict)
        assert result.winner.sid == BTC
        assert (await store.get_verified_mapping("news_feed", "BTC")).sid == BTC
        assert not (await store.get_mapping_for_sid(BTC_TRUST, "news_feed")).verified

    @pytest.mark.asyncio
    async def test_verified_identifier_is_unique(self, engine, store):
        """Test that the partial unique index refuses a second verified owner"""
        await engine.register_mapping(BTC, "coingecko", "bitcoin", 1.0)

        with pytest.raises(ValueError):
            await store.commit_mapping(
                SymbolMapping(
                    sid=BTC_TRUST,
                    source_name="coingecko",
                    source_identifier="bitcoin",
                    verified=True,
                    confidence=1.0,
                )
            )

        assert len(await store.list_mappings()) == 1

    @pytest.mark.asyncio
    async def test_sightings_and_settlement(self, engine, store, fake_clock):
        await engine.record_missing("XYZ", "news_feed")
        fake_clock.advance(60)
        record = await engine.record_missing("XYZ", "news_feed")
        assert record.seen_count == 2
        assert record.last_seen_at == fake_clock.now

        settled = await store.settle_missing(record.id, ResolutionStatus.NOT_FOUND, fake_clock.now)
        assert settled.resolution_status == ResolutionStatus.NOT_FOUND
        assert await store.settle_missing(record.id, ResolutionStatus.FOUND, fake_clock.now) is None

        after = await engine.record_missing("XYZ", "news_feed")
        assert after.seen_count == 2
        assert after.resolution_status == ResolutionStatus.NOT_FOUND

    @pytest.mark.asyncio
    async def test_resolution_sweep(self, engine, store):
        for _ in range(3):
            await engine.record_missing("CRYPTO:BTC", "news_feed")
        await engine.record_missing("FOREX:EURUSD", "news_feed")
        await engine.record_missing("BTC", "news_feed")
        await engine.record_missing("QQQQ", "news_feed")

        report = await engine.attempt_resolution_sweep(limit=10)

        assert (report.found, report.skipped, report.ambiguous, report.not_found) == (1, 1, 1, 1)
        found = await store.get_missing("CRYPTO:BTC", "news_feed")
        assert found.resolved_sid == BTC
        assert await engine.resolve("news_feed", "CRYPTO:BTC") == Matched(sid=BTC, confidence=1.0, stage=1)
        assert [r.symbol_text for r in await store.list_pending(10)] == ["BTC"]
