"""
Per-source request rate gate.

Each source owns a token bucket of ``capacity`` tokens. A granted token
comes back exactly ``window_seconds`` after it was granted, so no rolling
window of that length ever contains more than ``capacity`` grants.
Waiters queue on the bucket's ``asyncio.Lock``, which wakes them in
arrival order. A waiter cancelled while queued or sleeping simply leaves
the queue without taking a token.
"""

import asyncio
import time
from collections import deque
from collections.abc import Callable

from pydantic import BaseModel

from market_etl.config import ProviderConfig, Settings
from market_etl.core.models import RateBudget
from market_etl.observability.logger import get_logger
from market_etl.observability.metrics import (
    increment_counter,
    observe_histogram,
    rate_gate_grants_total,
    rate_gate_wait_seconds,
    rate_gate_waiting,
    set_gauge,
)
from market_etl.utils.validation import validate_source_name

logger = get_logger(__name__)


class Permit(BaseModel):
    """Proof that one request may be issued to ``source`` now."""

    source: str
    granted_at: float
    waited_seconds: float = 0.0


class _Bucket:
    def __init__(self, source: str, capacity: int, window_seconds: float):
        self.source = source
        self.capacity = capacity
        self.window_seconds = window_seconds
        self.grants: deque[float] = deque()
        self.lock = asyncio.Lock()
        self.waiting = 0

    def expire(self, now: float) -> None:
        while self.grants and self.grants[0] + self.window_seconds <= now:
            self.grants.popleft()

    def available(self, now: float) -> int:
        self.expire(now)
        return self.capacity - len(self.grants)


class RateGate:
    """
    Grants request permits per source without ever exceeding the source's
    budget.

    Usage:
        gate = RateGate(settings)
        permit = await gate.acquire("alphavantage")
    """

    def __init__(
        self,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings or Settings()
        self._clock = clock
        self._buckets: dict[str, _Bucket] = {}

    def _bucket(self, source: str) -> _Bucket:
        bucket = self._buckets.get(source)
        if bucket is None:
            provider: ProviderConfig = self.settings.provider(source)
            bucket = _Bucket(source, provider.capacity, provider.window_seconds)
            self._buckets[source] = bucket
        return bucket

    def configure(self, source: str, capacity: int, window_seconds: float) -> None:
        """
        Set the budget for a source before it is first used.

        Raises:
            ValueError: If the budget is invalid or the source already has
                grants or waiters
        """
        source = validate_source_name(source)
        if capacity < 1:
            raise ValueError(f"capacity must be at least 1, got {capacity}")
        if window_seconds <= 0:
            raise ValueError(f"window_seconds must be positive, got {window_seconds}")

        existing = self._buckets.get(source)
        if existing is not None and (existing.grants or existing.waiting):
            raise ValueError(f"Rate budget for '{source}' is already in use")

        self._buckets[source] = _Bucket(source, capacity, window_seconds)
        logger.info(
            "Rate budget configured",
            extra={"source": source, "capacity": capacity, "window_seconds": window_seconds},
        )

    async def acquire(self, source: str) -> Permit:
        """
        Wait until ``source`` has a token and take it.

        Never fails. Cancellation while waiting consumes nothing.
        """
        source = validate_source_name(source)
        bucket = self._bucket(source)
        started = self._clock()

        bucket.waiting += 1
        set_gauge(rate_gate_waiting, bucket.waiting, source=source)
        try:
            async with bucket.lock:
                while True:
                    now = self._clock()
                    if bucket.available(now) > 0:
                        bucket.grants.append(now)
                        break
                    delay = bucket.grants[0] + bucket.window_seconds - now
                    logger.debug(
                        "Rate budget exhausted, waiting",
                        extra={"source": source, "delay_seconds": round(delay, 3)},
                    )
                    await asyncio.sleep(max(delay, 0.0))
        finally:
            bucket.waiting -= 1
            set_gauge(rate_gate_waiting, bucket.waiting, source=source)

        waited = now - started
        observe_histogram(rate_gate_wait_seconds, waited, source=source)
        increment_counter(rate_gate_grants_total, source=source)
        return Permit(source=source, granted_at=now, waited_seconds=waited)

    def budget(self, source: str) -> RateBudget:
        """Read-only snapshot of the source's budget."""
        source = validate_source_name(source)
        bucket = self._bucket(source)
        return RateBudget(
            source=source,
            capacity=bucket.capacity,
            window_seconds=bucket.window_seconds,
            tokens_available=bucket.available(self._clock()),
            waiting=bucket.waiting,
        )
