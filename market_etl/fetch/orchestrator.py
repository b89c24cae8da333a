"""
Fetch orchestration: cache first, then rate gate, then upstream.

A call that misses the cache claims the key in the cache repository,
takes a rate permit for the source and only then goes upstream. Callers
waiting on someone else's claim take no permit at all.
"""

from typing import Any

from market_etl.cache.repository import CacheRepository, FetchedPayload
from market_etl.errors import PermanentUpstreamError, UpstreamError, classify_status
from market_etl.fetch.upstream import RequestDescriptor, Upstream
from market_etl.observability.logger import get_logger
from market_etl.observability.metrics import (
    increment_counter,
    track_duration,
    upstream_latency_seconds,
    upstream_requests_total,
)
from market_etl.ratelimit.rate_gate import RateGate
from market_etl.utils.validation import validate_source_name

logger = get_logger(__name__)


def _status_class(error: UpstreamError) -> str:
    return "permanent" if isinstance(error, PermanentUpstreamError) else "transient"


class FetchOrchestrator:
    """
    Single entry point loaders use to get upstream data.

    Usage:
        orchestrator = FetchOrchestrator(cache, gate, HttpUpstream(settings))
        payload = await orchestrator.fetch("alphavantage", descriptor, ttl=86400)
    """

    def __init__(self, cache: CacheRepository, rate_gate: RateGate, upstream: Upstream):
        self.cache = cache
        self.rate_gate = rate_gate
        self.upstream = upstream

    async def fetch(
        self,
        source: str,
        descriptor: RequestDescriptor,
        ttl: float,
        force_refresh: bool = False,
        allow_stale: bool = False,
    ) -> Any:
        """
        Return the payload for ``descriptor``, from cache when fresh.

        Raises:
            TransientUpstreamError: Network failure, 429 or 5xx
            PermanentUpstreamError: Any other non-2xx or a malformed payload
        """
        source = validate_source_name(source)
        endpoint_url = descriptor.url or descriptor.endpoint

        async def fetcher() -> FetchedPayload:
            return await self._fetch_upstream(source, descriptor, endpoint_url)

        return await self.cache.get_or_fetch(
            source,
            descriptor.cache_key,
            fetcher,
            ttl,
            force_refresh=force_refresh,
            allow_stale=allow_stale,
            endpoint_url=endpoint_url,
        )

    async def _fetch_upstream(
        self, source: str, descriptor: RequestDescriptor, endpoint_url: str
    ) -> FetchedPayload:
        await self.rate_gate.acquire(source)

        try:
            with track_duration(upstream_latency_seconds, source=source):
                response = await self.upstream.fetch(source, descriptor)
        except UpstreamError as e:
            increment_counter(upstream_requests_total, source=source, status=_status_class(e))
            logger.warning(
                f"Upstream call failed: {e}",
                extra={"source": source, "endpoint": descriptor.endpoint},
            )
            raise

        error = classify_status(source, response.status_code, response.retry_after)
        if error is not None:
            increment_counter(upstream_requests_total, source=source, status=_status_class(error))
            logger.warning(
                f"Upstream returned HTTP {response.status_code}",
                extra={
                    "source": source,
                    "endpoint": descriptor.endpoint,
                    "status_code": response.status_code,
                    "retry_after": response.retry_after,
                },
            )
            raise error

        increment_counter(upstream_requests_total, source=source, status="ok")
        logger.debug(
            "Upstream call succeeded",
            extra={"source": source, "endpoint": descriptor.endpoint},
        )
        return FetchedPayload(
            payload=response.payload,
            status_code=response.status_code,
            headers=response.headers or None,
            endpoint_url=endpoint_url,
        )
