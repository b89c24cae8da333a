"""
Unit tests for the per-source rate gate.

Windows are kept short (a few hundred milliseconds) so the suite stays fast
while still exercising real suspension.
"""

import asyncio
import time

import pytest

from market_etl.config import ProviderConfig, Settings
from market_etl.ratelimit import RateGate


def make_gate(capacity: int, window_seconds: float) -> RateGate:
    settings = Settings(
        default_provider=ProviderConfig(
            source="default", capacity=capacity, window_seconds=window_seconds
        )
    )
    return RateGate(settings)


@pytest.mark.unit
class TestRateGate:

    @pytest.mark.asyncio
    async def test_grants_up_to_capacity_immediately(self):
        gate = make_gate(capacity=3, window_seconds=5)

        started = time.monotonic()
        for _ in range(3):
            await gate.acquire("alphavantage")

        assert time.monotonic() - started < 0.1
        assert gate.budget("alphavantage").tokens_available == 0

    @pytest.mark.asyncio
    async def test_third_call_waits_for_window(self):
        """Test that capacity 2 per window makes the third caller wait a full window"""
        gate = make_gate(capacity=2, window_seconds=0.3)

        started = time.monotonic()
        permits = [await gate.acquire("alphavantage") for _ in range(3)]

        assert time.monotonic() - started >= 0.28
        assert permits[2].granted_at - permits[0].granted_at >= 0.3 - 1e-9
        assert permits[2].waited_seconds > 0

    @pytest.mark.asyncio
    async def test_no_window_exceeds_capacity(self):
        """Test that no rolling window holds more than capacity grants"""
        capacity, window = 2, 0.15
        gate = make_gate(capacity=capacity, window_seconds=window)

        permits = await asyncio.gather(*(gate.acquire("coingecko") for _ in range(7)))
        grants = sorted(p.granted_at for p in permits)

        for i in range(len(grants) - capacity):
            assert grants[i + capacity] - grants[i] >= window - 1e-9

    @pytest.mark.asyncio
    async def test_waiters_are_served_in_arrival_order(self):
        gate = make_gate(capacity=1, window_seconds=0.05)
        await gate.acquire("alphavantage")

        order: list[int] = []

        async def waiter(n: int) -> None:
            await gate.acquire("alphavantage")
            order.append(n)

        tasks = []
        for n in range(5):
            tasks.append(asyncio.create_task(waiter(n)))
            await asyncio.sleep(0)
        await asyncio.gather(*tasks)

        assert order == [0, 1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_cancelled_waiter_consumes_no_token(self):
        """Test that cancelling a waiter leaves the budget and other waiters intact"""
        gate = make_gate(capacity=1, window_seconds=0.2)
        await gate.acquire("alphavantage")

        first = asyncio.create_task(gate.acquire("alphavantage"))
        await asyncio.sleep(0)
        second = asyncio.create_task(gate.acquire("alphavantage"))
        await asyncio.sleep(0.01)
        assert gate.budget("alphavantage").waiting == 2

        first.cancel()
        with pytest.raises(asyncio.CancelledError):
            await first

        permit = await asyncio.wait_for(second, timeout=1.0)
        assert permit.source == "alphavantage"

        budget = gate.budget("alphavantage")
        assert budget.waiting == 0
        assert budget.tokens_available == 0

        # Only the initial grant and the second waiter's grant were taken, so
        # one window later the bucket is full again.
        await asyncio.sleep(0.21)
        assert gate.budget("alphavantage").tokens_available == 1

    @pytest.mark.asyncio
    async def test_sources_are_isolated(self):
        gate = make_gate(capacity=1, window_seconds=5)
        await gate.acquire("alphavantage")

        blocked = asyncio.create_task(gate.acquire("alphavantage"))
        started = time.monotonic()
        await asyncio.wait_for(gate.acquire("coingecko"), timeout=0.5)
        assert time.monotonic() - started < 0.1

        blocked.cancel()
        with pytest.raises(asyncio.CancelledError):
            await blocked


@pytest.mark.unit
class TestRateBudgetSnapshot:

    def test_budget_reflects_provider_config(self):
        settings = Settings(
            providers={"alphavantage": ProviderConfig(source="alphavantage", capacity=75, window_seconds=60)}
        )
        budget = RateGate(settings).budget("AlphaVantage")

        assert budget.source == "alphavantage"
        assert budget.capacity == 75
        assert budget.tokens_available == 75
        assert budget.refill_rate == pytest.approx(1.25)

    @pytest.mark.asyncio
    async def test_configure_before_use(self):
        gate = make_gate(capacity=10, window_seconds=1)
        gate.configure("newsapi", capacity=2, window_seconds=30)

        assert gate.budget("newsapi").capacity == 2
        await gate.acquire("newsapi")

        with pytest.raises(ValueError, match="already in use"):
            gate.configure("newsapi", capacity=5, window_seconds=30)

    def test_configure_rejects_bad_budget(self):
        gate = make_gate(capacity=10, window_seconds=1)
        with pytest.raises(ValueError):
            gate.configure("newsapi", capacity=0, window_seconds=30)
        with pytest.raises(ValueError):
            gate.configure("newsapi", capacity=1, window_seconds=0)
