"""
Unit tests for fetch orchestration and the HTTP upstream.
"""

import asyncio

import httpx
import pytest

from market_etl.cache import CacheRepository
from market_etl.config import ProviderConfig, Settings
from market_etl.errors import PermanentUpstreamError, TransientUpstreamError
from market_etl.fetch import FetchOrchestrator, HttpUpstream, RequestDescriptor, UpstreamResponse
from market_etl.observability.metrics import get_counter_value, upstream_requests_total
from market_etl.ratelimit import RateGate

OVERVIEW = RequestDescriptor(endpoint="OVERVIEW", params={"symbol": "IBM"})


@pytest.fixture
def gate(settings) -> RateGate:
    return RateGate(settings)


@pytest.fixture
def orchestrator(cache_store, fake_clock, gate, fake_upstream) -> FetchOrchestrator:
    return FetchOrchestrator(CacheRepository(cache_store, clock=fake_clock), gate, fake_upstream)


@pytest.mark.unit
class TestFetchOrchestrator:

    @pytest.mark.asyncio
    async def test_miss_goes_upstream_then_hits_cache(self, orchestrator, fake_upstream, gate):
        """Test that the second fetch is served from cache without a rate permit"""
        fake_upstream.responses[OVERVIEW.cache_key] = UpstreamResponse(
            status_code=200, payload={"Symbol": "IBM"}
        )

        first = await orchestrator.fetch("alphavantage", OVERVIEW, ttl=3600)
        second = await orchestrator.fetch("alphavantage", OVERVIEW, ttl=3600)

        assert first == second == {"Symbol": "IBM"}
        assert len(fake_upstream.calls) == 1
        assert gate.budget("alphavantage").tokens_available == 4

    @pytest.mark.asyncio
    async def test_concurrent_fetches_share_one_request(self, orchestrator, fake_upstream, gate):
        fake_upstream.gate = asyncio.Event()

        tasks = [
            asyncio.create_task(orchestrator.fetch("alphavantage", OVERVIEW, ttl=3600))
            for _ in range(5)
        ]
        await asyncio.sleep(0.01)
        fake_upstream.gate.set()
        results = await asyncio.gather(*tasks)

        assert len(fake_upstream.calls) == 1
        assert all(r == results[0] for r in results)
        assert gate.budget("alphavantage").tokens_available == 4

    @pytest.mark.asyncio
    async def test_rate_limited_response_is_transient(self, orchestrator, fake_upstream, cache_store):
        """Test that HTTP 429 raises a transient error carrying retry-after and caches nothing"""
        fake_upstream.responses[OVERVIEW.cache_key] = UpstreamResponse(
            status_code=429, headers={"Retry-After": "12"}
        )
        before = get_counter_value(upstream_requests_total, source="alphavantage", status="transient")

        with pytest.raises(TransientUpstreamError) as exc_info:
            await orchestrator.fetch("alphavantage", OVERVIEW, ttl=3600)

        assert exc_info.value.status_code == 429
        assert exc_info.value.retry_after == 12.0
        assert await cache_store.get_entry("alphavantage", OVERVIEW.cache_key) is None
        assert get_counter_value(
            upstream_requests_total, source="alphavantage", status="transient"
        ) == before + 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [400, 401, 404])
    async def test_client_errors_are_permanent(self, orchestrator, fake_upstream, status):
        fake_upstream.responses[OVERVIEW.cache_key] = UpstreamResponse(status_code=status)

        with pytest.raises(PermanentUpstreamError):
            await orchestrator.fetch("alphavantage", OVERVIEW, ttl=3600)

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self, orchestrator, fake_upstream):
        fake_upstream.responses[OVERVIEW.cache_key] = UpstreamResponse(status_code=503)

        with pytest.raises(TransientUpstreamError):
            await orchestrator.fetch("alphavantage", OVERVIEW, ttl=3600)

    @pytest.mark.asyncio
    async def test_network_error_propagates(self, orchestrator, fake_upstream):
        fake_upstream.responses[OVERVIEW.cache_key] = TransientUpstreamError("alphavantage", "reset")

        with pytest.raises(TransientUpstreamError):
            await orchestrator.fetch("alphavantage", OVERVIEW, ttl=3600)

    @pytest.mark.asyncio
    async def test_stored_entry_keeps_response_metadata(self, orchestrator, fake_upstream, cache_store):
        fake_upstream.responses[OVERVIEW.cache_key] = UpstreamResponse(
            status_code=200, payload={"Symbol": "IBM"}, headers={"etag": '"v7"'}
        )

        await orchestrator.fetch("alphavantage", OVERVIEW, ttl=3600)

        entry = await cache_store.get_entry("alphavantage", OVERVIEW.cache_key)
        assert entry.status_code == 200
        assert entry.etag == '"v7"'
        assert entry.endpoint_url == "OVERVIEW"

    @pytest.mark.asyncio
    async def test_force_refresh_refetches(self, orchestrator, fake_upstream):
        await orchestrator.fetch("alphavantage", OVERVIEW, ttl=3600)
        await orchestrator.fetch("alphavantage", OVERVIEW, ttl=3600, force_refresh=True)

        assert len(fake_upstream.calls) == 2


def av_settings() -> Settings:
    return Settings(
        providers={
            "alphavantage": ProviderConfig(
                source="alphavantage",
                base_url="https://www.alphavantage.co/query",
                api_key_env="TEST_AV_KEY",
                api_key_param="apikey",
            )
        }
    )


@pytest.mark.unit
class TestHttpUpstream:

    @pytest.mark.asyncio
    async def test_json_response_with_api_key(self, monkeypatch):
        """Test that the API key is sent and JSON bodies are decoded"""
        monkeypatch.setenv("TEST_AV_KEY", "demo")
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"Symbol": "IBM"}, headers={"ETag": '"abc"'})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        async with HttpUpstream(av_settings(), client=client) as upstream:
            response = await upstream.fetch("alphavantage", OVERVIEW)
        await client.aclose()

        assert response.status_code == 200
        assert response.payload == {"Symbol": "IBM"}
        assert response.headers["etag"] == '"abc"'
        assert seen[0].url.params["apikey"] == "demo"
        assert seen[0].url.params["symbol"] == "IBM"

    @pytest.mark.asyncio
    async def test_text_and_binary_bodies(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.params["datatype"] == "csv":
                return httpx.Response(200, text="timestamp,open\n")
            return httpx.Response(
                200, content=b"\x89PNG", headers={"content-type": "application/octet-stream"}
            )

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        upstream = HttpUpstream(av_settings(), client=client)

        csv = await upstream.fetch(
            "alphavantage", RequestDescriptor(endpoint="DAILY", params={"datatype": "csv"})
        )
        raw = await upstream.fetch(
            "alphavantage", RequestDescriptor(endpoint="LOGO", params={"datatype": "png"})
        )
        await client.aclose()

        assert csv.payload == "timestamp,open\n"
        assert raw.payload == b"\x89PNG"

    @pytest.mark.asyncio
    async def test_non_success_status_is_returned(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(429, json={"note": "slow down"}, headers={"Retry-After": "30"})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        response = await HttpUpstream(av_settings(), client=client).fetch("alphavantage", OVERVIEW)
        await client.aclose()

        assert response.status_code == 429
        assert response.retry_after == 30.0

    @pytest.mark.asyncio
    async def test_malformed_json_is_permanent(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200, content=b"{not json", headers={"content-type": "application/json"}
            )

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        with pytest.raises(PermanentUpstreamError):
            await HttpUpstream(av_settings(), client=client).fetch("alphavantage", OVERVIEW)
        await client.aclose()

    @pytest.mark.asyncio
    async def test_transport_error_is_transient(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        with pytest.raises(TransientUpstreamError):
            await HttpUpstream(av_settings(), client=client).fetch("alphavantage", OVERVIEW)
        await client.aclose()

    @pytest.mark.asyncio
    async def test_missing_url_is_permanent(self):
        upstream = HttpUpstream(Settings(), client=httpx.AsyncClient())
        with pytest.raises(PermanentUpstreamError, match="no URL"):
            await upstream.fetch("unknown", OVERVIEW)
        await upstream._client.aclose()
