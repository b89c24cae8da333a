"""
PostgreSQL connection pool management using psycopg3

Async pool shared by the cache, process and symbol stores. Rows come
back as dictionaries.
"""
import asyncio
from contextlib import asynccontextmanager

from psycopg import OperationalError
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from market_etl.config import DatabaseConfig
from market_etl.observability.logger import get_logger

logger = get_logger(__name__)


class DatabaseConnectionPool:
    """
    Async PostgreSQL connection pool manager.

    Usage:
        async with DatabaseConnectionPool.from_config(settings.database) as pool:
            rows = await pool.execute_query("SELECT 1 AS ok")
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 5432,
        database: str = "market_data",
        user: str = "etl",
        password: str | None = None,
        min_size: int = 2,
        max_size: int = 10,
        timeout: float = 30.0,
    ) -> None:
        if not password:
            raise ValueError(
                "Database password must be provided. "
                "Set DB_PASSWORD environment variable or pass to constructor."
            )

        self.host = host
        self.port = port
        self.database = database
        self.user = user
        self.min_size = min_size
        self.max_size = max_size
        self.timeout = timeout

        self.conninfo = (
            f"host={host} "
            f"port={port} "
            f"dbname={database} "
            f"user={user} "
            f"password={password} "
            f"connect_timeout={int(timeout)}"
        )

        self._pool: AsyncConnectionPool | None = None

    @classmethod
    def from_config(cls, config: DatabaseConfig) -> "DatabaseConnectionPool":
        return cls(
            host=config.host,
            port=config.port,
            database=config.database,
            user=config.user,
            password=config.password,
            min_size=config.min_size,
            max_size=config.max_size,
            timeout=config.timeout,
        )

    async def open(self, max_retries: int = 3, retry_delay: float = 2.0) -> None:
        """
        Open the pool, retrying while the server is not reachable.

        Raises:
            OperationalError: If connection fails after all retries
        """
        if self._pool is not None:
            return

        for attempt in range(1, max_retries + 1):
            pool = AsyncConnectionPool(
                conninfo=self.conninfo,
                min_size=self.min_size,
                max_size=self.max_size,
                timeout=self.timeout,
                kwargs={"row_factory": dict_row},
                open=False,
            )
            try:
                await pool.open(wait=True, timeout=self.timeout)
            except (OperationalError, TimeoutError) as e:
                await pool.close()
                if attempt == max_retries:
                    raise OperationalError(
                        f"Failed to connect to database after {max_retries} attempts: {e}"
                    ) from e
                logger.warning(
                    f"Database connection attempt {attempt} failed, retrying",
                    extra={"db_host": self.host, "attempt": attempt},
                )
                await asyncio.sleep(retry_delay)
            else:
                self._pool = pool
                logger.info(
                    "Database pool opened",
                    extra={"db_host": self.host, "db_name": self.database},
                )
                return

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    @asynccontextmanager
    async def get_connection(self):
        """
        Borrow a connection. The transaction commits when the block exits
        normally and rolls back when it raises.

        Raises:
            RuntimeError: If pool is not open
        """
        if self._pool is None:
            raise RuntimeError("Connection pool is not open. Call open() first.")

        async with self._pool.connection() as conn:
            yield conn

    @asynccontextmanager
    async def get_cursor(self):
        async with self.get_connection() as conn:
            async with conn.cursor() as cur:
                yield cur

    async def execute_query(self, query: str, params: tuple | dict | None = None) -> list[dict]:
        async with self.get_cursor() as cur:
            await cur.execute(query, params)
            return await cur.fetchall()

    async def execute_command(self, command: str, params: tuple | dict | None = None) -> int:
        """Execute an INSERT/UPDATE/DELETE and return the affected row count."""
        async with self.get_connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute(command, params)
                rowcount = cur.rowcount
            await conn.commit()
            return rowcount

    async def __aenter__(self):
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
        return False
