"""
Pytest configuration and fixtures for market-etl tests

This module provides shared fixtures for unit and integration tests.
"""
import os
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, Generator

import psycopg
import pytest
import pytest_asyncio
from testcontainers.postgres import PostgresContainer

from market_etl.config import ProviderConfig, ResolutionConfig, Settings
from market_etl.core.models import SecurityType
from market_etl.fetch.upstream import RequestDescriptor, UpstreamResponse
from market_etl.warehouse.connection import DatabaseConnectionPool
from market_etl.warehouse.memory import (
    InMemoryCacheStore,
    InMemoryProcessStore,
    InMemorySymbolStore,
)


# =======================
# PYTEST CONFIGURATION
# =======================

def pytest_configure(config):
    """Configure pytest with custom markers"""
    config.addinivalue_line(
        "markers", "unit: Unit tests that don't require external services"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests that require Docker containers"
    )
    config.addinivalue_line(
        "markers", "slow: Tests that take more than 5 seconds to run"
    )


# =======================
# TEST DOUBLES
# =======================

class FakeClock:
    """Wall clock that only moves when told to."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2025, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeUpstream:
    """
    Upstream that serves canned responses per cache key.

    ``responses`` maps a descriptor's cache_key to an UpstreamResponse, or to
    an exception to raise. Unknown keys answer 200 with the key as payload.
    """

    def __init__(self):
        self.responses: dict[str, UpstreamResponse | Exception] = {}
        self.calls: list[tuple[str, RequestDescriptor]] = []
        self.gate = None

    async def fetch(self, source: str, descriptor: RequestDescriptor) -> UpstreamResponse:
        self.calls.append((source, descriptor))
        if self.gate is not None:
            await self.gate.wait()
        response = self.responses.get(descriptor.cache_key)
        if isinstance(response, Exception):
            raise response
        if response is None:
            return UpstreamResponse(status_code=200, payload={"key": descriptor.cache_key})
        return response


# =======================
# CONFIGURATION FIXTURES
# =======================

@pytest.fixture
def settings() -> Settings:
    """Settings with small budgets and an in-memory store backend"""
    return Settings(
        default_provider=ProviderConfig(source="default", capacity=10, window_seconds=1),
        providers={
            "alphavantage": ProviderConfig(
                source="alphavantage",
                capacity=5,
                window_seconds=1,
                security_types=[SecurityType.EQUITY, SecurityType.ETF],
            ),
            "coingecko": ProviderConfig(
                source="coingecko",
                capacity=5,
                window_seconds=1,
                security_types=[SecurityType.CRYPTOCURRENCY],
            ),
            "news_feed": ProviderConfig(
                source="news_feed",
                capacity=5,
                window_seconds=1,
                security_types=[SecurityType.EQUITY, SecurityType.ETF, SecurityType.CRYPTOCURRENCY],
            ),
        },
        resolution=ResolutionConfig(),
        store_backend="memory",
    )


@pytest.fixture(scope="session")
def test_env_vars():
    """
    Set test environment variables

    This fixture loads test.env and sets environment variables
    """
    from dotenv import load_dotenv

    env_path = os.path.join(
        os.path.dirname(os.path.dirname(__file__)),
        "config",
        "test.env"
    )

    if os.path.exists(env_path):
        load_dotenv(env_path, override=True)


# =======================
# IN-MEMORY FIXTURES
# =======================

@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
def cache_store() -> InMemoryCacheStore:
    return InMemoryCacheStore()


@pytest.fixture
def process_store() -> InMemoryProcessStore:
    return InMemoryProcessStore()


@pytest.fixture
def symbol_store() -> InMemorySymbolStore:
    return InMemorySymbolStore()


# =======================
# DATABASE FIXTURES (Testcontainers)
# =======================

@pytest.fixture(scope="session")
def postgres_container() -> Generator[PostgresContainer, None, None]:
    """
    Start PostgreSQL container for integration tests

    Yields:
        PostgresContainer instance with initialized database
    """
    with PostgresContainer(
        image="postgres:16.2-alpine",
        username="test_etl",
        password="test_password",
        dbname="test_market_data",
        driver=None,
    ) as postgres:
        init_sql_path = os.path.join(
            os.path.dirname(os.path.dirname(__file__)),
            "docker",
            "init-db.sql"
        )

        with open(init_sql_path, 'r') as f:
            init_sql = f.read()

        with psycopg.connect(postgres.get_connection_url()) as conn:
            with conn.cursor() as cur:
                cur.execute(init_sql)
            conn.commit()

        yield postgres


@pytest_asyncio.fixture
async def db_pool(postgres_container) -> AsyncGenerator[DatabaseConnectionPool, None]:
    """
    Open an async pool on the test database with every table emptied

    Args:
        postgres_container: PostgreSQL container fixture

    Yields:
        Open DatabaseConnectionPool
    """
    pool = DatabaseConnectionPool(
        host=postgres_container.get_container_host_ip(),
        port=int(postgres_container.get_exposed_port(5432)),
        database="test_market_data",
        user="test_etl",
        password="test_password",
        min_size=1,
        max_size=4,
    )
    await pool.open()
    await pool.execute_command(
        """
        TRUNCATE TABLE api_response_cache, missing_symbols, symbol_mappings,
                       symbols, procstates, proctypes
        RESTART IDENTITY CASCADE
        """
    )
    yield pool
    await pool.close()
