"""
Integration tests for the PostgreSQL cache store.

Runs the cache repository against a real api_response_cache table.
"""

import asyncio

import pytest

from market_etl.cache import CacheRepository, Fresh, Miss, Stale
from market_etl.warehouse.cache_store import PostgresCacheStore


@pytest.fixture
def store(db_pool) -> PostgresCacheStore:
    return PostgresCacheStore(db_pool)


@pytest.fixture
def cache(store, fake_clock) -> CacheRepository:
    return CacheRepository(store, clock=fake_clock)


@pytest.mark.integration
class TestPostgresCacheStore:

    @pytest.mark.asyncio
    async def test_put_get_and_hit_count(self, cache, store):
        await cache.put(
            "alphavantage", "OVERVIEW_IBM", {"Symbol": "IBM"}, ttl=3600,
            endpoint_url="https://www.alphavantage.co/query",
            headers={"etag": '"v1"'},
        )

        assert await cache.get("alphavantage", "OVERVIEW_IBM") == Fresh(payload={"Symbol": "IBM"})
        await cache.get("alphavantage", "OVERVIEW_IBM")

        entry = await store.get_entry("alphavantage", "OVERVIEW_IBM")
        assert entry.hit_count == 2
        assert entry.etag == '"v1"'
        assert entry.headers == {"etag": '"v1"'}
        assert entry.endpoint_url == "https://www.alphavantage.co/query"

    @pytest.mark.asyncio
    async def test_upsert_replaces_and_resets(self, cache, store, fake_clock):
        await cache.put("coingecko", "COINS_BITCOIN", {"v": 1}, ttl=60)
        await cache.get("coingecko", "COINS_BITCOIN")
        fake_clock.advance(30)

        await cache.put("coingecko", "COINS_BITCOIN", {"v": 2}, ttl=60)

        entry = await store.get_entry("coingecko", "COINS_BITCOIN")
        assert entry.payload == {"v": 2}
        assert entry.hit_count == 0
        assert entry.cached_at == fake_clock.now

    @pytest.mark.asyncio
    async def test_text_and_bytes_payloads(self, cache):
        await cache.put("alphavantage", "DAILY_IBM_CSV", "timestamp,open\n", ttl=60)
        await cache.put("alphavantage", "LOGO_IBM", b"\x89PNG\x00", ttl=60)

        assert (await cache.get("alphavantage", "DAILY_IBM_CSV")).payload == "timestamp,open\n"
        assert (await cache.get("alphavantage", "LOGO_IBM")).payload == b"\x89PNG\x00"

    @pytest.mark.asyncio
    async def test_expiry_and_purge(self, cache, fake_clock):
        await cache.put("coingecko", "A", 1, ttl=10)
        await cache.put("coingecko", "B", 2, ttl=100)
        fake_clock.advance(10)

        assert isinstance(await cache.get("coingecko", "A"), Miss)
        assert await cache.get("coingecko", "A", allow_stale=True) == Stale(payload=1)
        assert await cache.purge_expired("coingecko") == 1
        assert await cache.get("coingecko", "A", allow_stale=True) == Miss()
        assert await cache.get("coingecko", "B") == Fresh(payload=2)

    @pytest.mark.asyncio
    async def test_corrupt_row_is_miss(self, cache, db_pool):
        await cache.put("coingecko", "COINS_BITCOIN", {"v": 1}, ttl=60)
        await db_pool.execute_command(
            "UPDATE api_response_cache SET response_data = '[1, 2]'::jsonb WHERE cache_key = %s",
            ("COINS_BITCOIN",),
        )

        assert isinstance(await cache.get("coingecko", "COINS_BITCOIN"), Miss)

    @pytest.mark.asyncio
    async def test_single_flight_against_database(self, cache):
        calls = 0

        async def fetcher():
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.5)
            return {"price": 1}

        results = await asyncio.gather(
            *(cache.get_or_fetch("coingecko", "SIMPLE_PRICE_BTC", fetcher, ttl=60) for _ in range(8))
        )

        assert calls == 1
        assert results == [{"price": 1}] * 8

    @pytest.mark.asyncio
    async def test_delete_entry(self, cache, store):
        await cache.put("coingecko", "X", 1, ttl=60)

        assert await store.delete_entry("coingecko", "X") is True
        assert await store.delete_entry("coingecko", "X") is False
