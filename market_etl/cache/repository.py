"""
Cache repository with single-flight fetch coordination.

At most one upstream fetch is in flight per (source, cache_key). In-flight
work lives in an arena of slots addressed by integer handles; an index
maps each key to the handle of its current claim:

    Empty --claim--> Pending(future) --publish--> Ready(payload)
      ^                   |
      +---cancel/fail-----+

Callers that find a Pending slot await its future (shielded, so a waiter
giving up never disturbs the claim). Once a slot is Ready or Empty it is
dropped from the index and the durable store governs freshness.
"""

import asyncio
import itertools
from collections.abc import Awaitable, Callable
from datetime import timedelta
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field

from market_etl.core.clock import Clock, utc_now
from market_etl.core.models import CacheEntry
from market_etl.errors import CacheCorruptionError
from market_etl.observability.logger import get_logger, log_operation
from market_etl.observability.metrics import (
    cache_coalesced_total,
    cache_corruption_total,
    cache_lookups_total,
    cache_purged_total,
    increment_counter,
)
from market_etl.utils.validation import validate_cache_key, validate_source_name, validate_ttl
from market_etl.warehouse.base import CacheStore

logger = get_logger(__name__)


class Fresh(BaseModel):
    kind: Literal["fresh"] = "fresh"
    payload: Any


class Stale(BaseModel):
    kind: Literal["stale"] = "stale"
    payload: Any


class Miss(BaseModel):
    kind: Literal["miss"] = "miss"


CacheLookup = Annotated[Union[Fresh, Stale, Miss], Field(discriminator="kind")]


class FetchedPayload(BaseModel):
    """
    What a fetcher hands back to ``get_or_fetch``. Fetchers may also return
    a bare payload, which is stored with status 200 and no headers.
    """

    payload: Any
    status_code: int = 200
    headers: dict[str, str] | None = None
    endpoint_url: str | None = None


Fetcher = Callable[[], Awaitable[Any]]


class SlotState(str, Enum):
    EMPTY = "empty"
    PENDING = "pending"
    READY = "ready"


class _ClaimAbandoned(Exception):
    """Set on a slot's future when its claimant is cancelled."""


class _Slot:
    def __init__(self, handle: int, key: tuple[str, str], future: asyncio.Future):
        self.handle = handle
        self.key = key
        self.state = SlotState.PENDING
        self.future = future


def _consume_exception(future: asyncio.Future) -> None:
    # Waiters re-raise the exception themselves; this only marks it retrieved
    # for slots nobody waited on.
    if not future.cancelled():
        future.exception()


def _header(headers: dict[str, str] | None, name: str) -> str | None:
    if not headers:
        return None
    for key, value in headers.items():
        if key.lower() == name:
            return value
    return None


class CacheRepository:
    """
    Durable response cache with TTL and single-flight fetches.

    Usage:
        cache = CacheRepository(InMemoryCacheStore())
        payload = await cache.get_or_fetch("coingecko", key, fetcher, ttl=3600)
    """

    def __init__(self, store: CacheStore, clock: Clock = utc_now):
        self.store = store
        self._clock = clock
        self._slots: dict[int, _Slot] = {}
        self._index: dict[tuple[str, str], int] = {}
        self._handles = itertools.count(1)
        self._background: set[asyncio.Task] = set()

    # Plain reads and writes

    async def get(self, source: str, key: str, allow_stale: bool = False) -> Fresh | Stale | Miss:
        """
        Look up a cached response.

        Fresh iff now < expires_at. An expired entry is Stale when the
        caller allows it and a Miss otherwise. A corrupt entry is a Miss.
        """
        source = validate_source_name(source)
        key = validate_cache_key(key)

        try:
            entry = await self.store.get_entry(source, key)
        except CacheCorruptionError as e:
            logger.warning(
                f"Ignoring corrupt cache entry: {e.reason}",
                extra={"source": source, "cache_key": key},
            )
            increment_counter(cache_corruption_total, source=source)
            increment_counter(cache_lookups_total, source=source, outcome="miss")
            return Miss()

        if entry is None:
            increment_counter(cache_lookups_total, source=source, outcome="miss")
            return Miss()

        if entry.is_fresh(self._clock()):
            await self.store.record_hit(source, key)
            increment_counter(cache_lookups_total, source=source, outcome="fresh")
            logger.debug("Cache hit", extra={"source": source, "cache_key": key})
            return Fresh(payload=entry.payload)

        if allow_stale:
            increment_counter(cache_lookups_total, source=source, outcome="stale")
            return Stale(payload=entry.payload)

        increment_counter(cache_lookups_total, source=source, outcome="miss")
        return Miss()

    async def put(
        self,
        source: str,
        key: str,
        payload: Any,
        ttl: float,
        endpoint_url: str = "",
        status_code: int = 200,
        headers: dict[str, str] | None = None,
        etag: str | None = None,
        last_modified: str | None = None,
    ) -> CacheEntry:
        """Upsert a response, resetting cached_at and expires_at."""
        source = validate_source_name(source)
        key = validate_cache_key(key)
        ttl = validate_ttl(ttl)

        now = self._clock()
        entry = CacheEntry(
            source=source,
            cache_key=key,
            endpoint_url=endpoint_url,
            payload=payload,
            status_code=status_code,
            headers=headers,
            etag=etag or _header(headers, "etag"),
            last_modified=last_modified or _header(headers, "last-modified"),
            cached_at=now,
            expires_at=now + timedelta(seconds=ttl),
        )
        await self.store.upsert_entry(entry)
        logger.debug(
            "Cached response",
            extra={"source": source, "cache_key": key, "ttl_seconds": ttl},
        )
        return entry

    async def purge_expired(self, source: str | None = None) -> int:
        """Delete every entry whose TTL has elapsed. Returns the count."""
        if source is not None:
            source = validate_source_name(source)

        with log_operation("purge expired cache", logger=logger, source=source or "*"):
            count = await self.store.delete_expired(self._clock(), source)

        increment_counter(cache_purged_total, value=count, source=source or "*")
        return count

    # Single flight

    async def get_or_fetch(
        self,
        source: str,
        key: str,
        fetcher: Fetcher,
        ttl: float,
        force_refresh: bool = False,
        allow_stale: bool = False,
        endpoint_url: str = "",
    ) -> Any:
        """
        Return the cached payload, fetching it at most once across all
        concurrent callers of the same (source, key).

        ``force_refresh`` skips the read and always starts a new fetch,
        even when another claim is in flight; the newer result replaces it.
        With ``allow_stale`` an expired payload is returned immediately and
        refreshed in the background.

        Raises:
            Whatever the fetcher raised, to the claimant and to every
            caller waiting on that claim.
        """
        source = validate_source_name(source)
        key = validate_cache_key(key)
        ttl = validate_ttl(ttl)

        # With a claim already pending, wait on it instead of reading the store.
        if not force_refresh and (allow_stale or self._pending_slot((source, key)) is None):
            lookup = await self.get(source, key, allow_stale=allow_stale)
            if isinstance(lookup, Fresh):
                return lookup.payload
            if isinstance(lookup, Stale):
                self._schedule_revalidation(source, key, fetcher, ttl, endpoint_url)
                return lookup.payload

        return await self._single_flight(source, key, fetcher, ttl, endpoint_url, force_refresh)

    def slot_state(self, source: str, key: str) -> SlotState:
        """State of the current claim for a key (EMPTY when none is in flight)."""
        slot = self._pending_slot((source, key))
        return slot.state if slot is not None else SlotState.EMPTY

    def _pending_slot(self, index_key: tuple[str, str]) -> _Slot | None:
        handle = self._index.get(index_key)
        slot = self._slots.get(handle) if handle is not None else None
        if slot is None or slot.state != SlotState.PENDING:
            return None
        return slot

    @property
    def in_flight(self) -> int:
        return sum(1 for slot in self._slots.values() if slot.state == SlotState.PENDING)

    async def _single_flight(
        self,
        source: str,
        key: str,
        fetcher: Fetcher,
        ttl: float,
        endpoint_url: str,
        force: bool,
    ) -> Any:
        index_key = (source, key)

        while not force:
            slot = self._pending_slot(index_key)
            if slot is None:
                break

            increment_counter(cache_coalesced_total, source=source)
            logger.debug(
                "Waiting on in-flight fetch",
                extra={"source": source, "cache_key": key, "handle": slot.handle},
            )
            try:
                return await asyncio.shield(slot.future)
            except _ClaimAbandoned:
                # Claimant was cancelled; contend for a new claim.
                continue

        slot = self._claim(index_key)
        try:
            # A claim that finished while this caller read the store has
            # already left a fresh entry behind.
            cached = None if force else await self._read_fresh(source, key)
            if cached is not None:
                result = FetchedPayload(payload=cached.payload)
            else:
                result = await fetcher()
                if not isinstance(result, FetchedPayload):
                    result = FetchedPayload(payload=result)
                await self.put(
                    source,
                    key,
                    result.payload,
                    ttl,
                    endpoint_url=result.endpoint_url or endpoint_url,
                    status_code=result.status_code,
                    headers=result.headers,
                )
        except asyncio.CancelledError:
            self._abandon(slot, _ClaimAbandoned())
            raise
        except Exception as e:
            logger.warning(
                f"Fetch failed, releasing claim: {e}",
                extra={"source": source, "cache_key": key, "handle": slot.handle},
            )
            self._abandon(slot, e)
            raise

        self._publish(slot, result.payload)
        return result.payload

    async def _read_fresh(self, source: str, key: str) -> CacheEntry | None:
        try:
            entry = await self.store.get_entry(source, key)
        except CacheCorruptionError:
            return None
        if entry is None or not entry.is_fresh(self._clock()):
            return None
        await self.store.record_hit(source, key)
        return entry

    def _claim(self, index_key: tuple[str, str]) -> _Slot:
        handle = next(self._handles)
        future = asyncio.get_running_loop().create_future()
        future.add_done_callback(_consume_exception)
        slot = _Slot(handle, index_key, future)
        self._slots[handle] = slot
        self._index[index_key] = handle
        return slot

    def _publish(self, slot: _Slot, payload: Any) -> None:
        slot.state = SlotState.READY
        slot.future.set_result(payload)
        self._release(slot)

    def _abandon(self, slot: _Slot, error: BaseException) -> None:
        slot.state = SlotState.EMPTY
        slot.future.set_exception(error)
        self._release(slot)

    def _release(self, slot: _Slot) -> None:
        del self._slots[slot.handle]
        # A forced refresh may have re-pointed the index to a newer claim.
        if self._index.get(slot.key) == slot.handle:
            del self._index[slot.key]

    # Stale-while-revalidate

    def _schedule_revalidation(
        self, source: str, key: str, fetcher: Fetcher, ttl: float, endpoint_url: str
    ) -> None:
        task = asyncio.create_task(
            self._revalidate(source, key, fetcher, ttl, endpoint_url),
            name=f"revalidate:{source}:{key}",
        )
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _revalidate(
        self, source: str, key: str, fetcher: Fetcher, ttl: float, endpoint_url: str
    ) -> None:
        try:
            await self._single_flight(source, key, fetcher, ttl, endpoint_url, force=False)
        except Exception as e:
            logger.warning(
                f"Background revalidation failed: {e}",
                extra={"source": source, "cache_key": key},
                exc_info=True,
            )

    async def drain(self) -> None:
        """Wait for scheduled background revalidations to finish."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
