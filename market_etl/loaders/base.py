"""
Loader framework.

A loader receives everything it talks to through a ``LoaderContext``;
nothing is looked up from module-level singletons. ``BaseLoader.run``
wraps ``load`` in a tracked process run and the context's retry policy.
"""

from abc import ABC, abstractmethod
from typing import Any, ClassVar

from market_etl.cache.repository import CacheRepository
from market_etl.config import ProviderConfig, Settings
from market_etl.fetch.orchestrator import FetchOrchestrator
from market_etl.fetch.upstream import RequestDescriptor, Upstream
from market_etl.loaders.batch_processor import BatchConfig, BatchProcessor
from market_etl.loaders.retry import RetryPolicy
from market_etl.observability.logger import get_logger
from market_etl.ratelimit.rate_gate import RateGate
from market_etl.resolution.engine import ResolutionEngine
from market_etl.tracking.process_tracker import ProcessTracker, TrackedRun
from market_etl.warehouse.connection import DatabaseConnectionPool
from market_etl.warehouse.memory import (
    InMemoryCacheStore,
    InMemoryProcessStore,
    InMemorySymbolStore,
)

logger = get_logger(__name__)


class LoaderContext:
    """
    Shared collaborators for every loader in a process.

    Attributes:
        settings: Loaded configuration
        orchestrator: Cached, rate-gated upstream access
        tracker: Process run lifecycle
        resolver: Symbol resolution engine
        retry_policy: Backoff for transient upstream failures
    """

    def __init__(
        self,
        settings: Settings,
        orchestrator: FetchOrchestrator,
        tracker: ProcessTracker,
        resolver: ResolutionEngine,
        retry_policy: RetryPolicy | None = None,
    ):
        self.settings = settings
        self.orchestrator = orchestrator
        self.tracker = tracker
        self.resolver = resolver
        self.retry_policy = retry_policy or RetryPolicy()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        upstream: Upstream,
        pool: DatabaseConnectionPool | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> "LoaderContext":
        """
        Wire the core together on the configured store backend.

        Raises:
            ValueError: If the postgres backend is selected without a pool
                or the backend name is unknown
        """
        if settings.store_backend == "memory":
            cache_store, process_store, symbol_store = (
                InMemoryCacheStore(),
                InMemoryProcessStore(),
                InMemorySymbolStore(),
            )
        elif settings.store_backend == "postgres":
            if pool is None:
                raise ValueError("The postgres store backend needs a DatabaseConnectionPool")
            from market_etl.warehouse.cache_store import PostgresCacheStore
            from market_etl.warehouse.process_store import PostgresProcessStore
            from market_etl.warehouse.symbol_store import PostgresSymbolStore

            cache_store = PostgresCacheStore(pool)
            process_store = PostgresProcessStore(pool)
            symbol_store = PostgresSymbolStore(pool)
        else:
            raise ValueError(f"Unknown store backend: {settings.store_backend}")

        logger.info("Loader context created", extra={"store_backend": settings.store_backend})
        orchestrator = FetchOrchestrator(
            CacheRepository(cache_store), RateGate(settings), upstream
        )
        return cls(
            settings=settings,
            orchestrator=orchestrator,
            tracker=ProcessTracker(process_store),
            resolver=ResolutionEngine(symbol_store, settings),
            retry_policy=retry_policy,
        )


class BaseLoader(ABC):
    """
    Base class for data loaders.

    Subclasses set ``proc_type`` and ``source`` and implement ``load``.
    Committed units are reported with ``run.add_records``; only those
    count towards records_processed. A retry runs ``load`` from the top and
    its tally replaces the failed attempt's.
    """

    proc_type: ClassVar[str]
    source: ClassVar[str]

    def __init__(self, context: LoaderContext, batch_config: BatchConfig | None = None):
        self.context = context
        provider = self.provider
        self.batch_processor = BatchProcessor(
            batch_config or BatchConfig(max_concurrency=provider.max_concurrency)
        )

    @property
    def provider(self) -> ProviderConfig:
        return self.context.settings.provider(self.source)

    @property
    def default_ttl(self) -> float:
        return self.provider.default_ttl_seconds

    async def validate_input(self, input_data: Any) -> None:
        """Reject bad input before a run is started."""

    @abstractmethod
    async def load(self, run: TrackedRun, input_data: Any) -> Any:
        pass

    async def fetch(
        self,
        descriptor: RequestDescriptor,
        ttl: float | None = None,
        force_refresh: bool = False,
        allow_stale: bool = False,
    ) -> Any:
        return await self.context.orchestrator.fetch(
            self.source,
            descriptor,
            ttl if ttl is not None else self.default_ttl,
            force_refresh=force_refresh,
            allow_stale=allow_stale,
        )

    async def run(self, input_data: Any = None) -> Any:
        """
        Validate, then load inside a tracked run with retries.

        Raises:
            Whatever ``load`` raised once retries are exhausted; the run is
            left failed (or cancelled on cancellation).
        """
        await self.validate_input(input_data)

        async with self.context.tracker.track(self.proc_type) as run:
            async def attempt() -> Any:
                run.start_attempt()
                return await self.load(run, input_data)

            return await self.context.retry_policy.execute(
                attempt,
                source=self.source,
                proc_type=self.proc_type,
                tracker=self.context.tracker,
                run_id=run.run_id,
            )
