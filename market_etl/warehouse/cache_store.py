"""
PostgreSQL cache store on the ``api_response_cache`` table.

Writes use INSERT ... ON CONFLICT UPDATE keyed on (cache_key, api_source)
so repeated puts for one request simply replace the stored response.
"""

from datetime import datetime

import psycopg
from psycopg.types.json import Jsonb

from market_etl.cache.codec import decode_payload, encode_payload
from market_etl.core.models import CacheEntry
from market_etl.observability.logger import get_logger
from market_etl.warehouse.base import CacheStore
from market_etl.warehouse.connection import DatabaseConnectionPool

logger = get_logger(__name__)


class PostgresCacheStore(CacheStore):
    def __init__(self, pool: DatabaseConnectionPool):
        self.pool = pool

    async def get_entry(self, source: str, cache_key: str) -> CacheEntry | None:
        query = """
            SELECT api_source, cache_key, endpoint_url, response_data, status_code,
                   headers, etag, last_modified, cached_at, expires_at, hit_count
            FROM api_response_cache
            WHERE cache_key = %s AND api_source = %s
        """
        rows = await self.pool.execute_query(query, (cache_key, source))
        if not rows:
            return None

        row = rows[0]
        payload = decode_payload(row["response_data"], source, cache_key)
        return CacheEntry(
            source=row["api_source"],
            cache_key=row["cache_key"],
            endpoint_url=row["endpoint_url"],
            payload=payload,
            status_code=row["status_code"],
            headers=row["headers"],
            etag=row["etag"],
            last_modified=row["last_modified"],
            cached_at=row["cached_at"],
            expires_at=row["expires_at"],
            hit_count=row["hit_count"],
        )

    async def upsert_entry(self, entry: CacheEntry) -> None:
        command = """
            INSERT INTO api_response_cache (
                api_source, cache_key, endpoint_url, response_data, status_code,
                headers, etag, last_modified, cached_at, expires_at, hit_count
            )
            VALUES (
                %(source)s, %(cache_key)s, %(endpoint_url)s, %(response_data)s, %(status_code)s,
                %(headers)s, %(etag)s, %(last_modified)s, %(cached_at)s, %(expires_at)s, 0
            )
            ON CONFLICT (cache_key, api_source) DO UPDATE SET
                endpoint_url = EXCLUDED.endpoint_url,
                response_data = EXCLUDED.response_data,
                status_code = EXCLUDED.status_code,
                headers = EXCLUDED.headers,
                etag = EXCLUDED.etag,
                last_modified = EXCLUDED.last_modified,
                cached_at = EXCLUDED.cached_at,
                expires_at = EXCLUDED.expires_at,
                hit_count = 0
        """
        try:
            await self.pool.execute_command(
                command,
                {
                    "source": entry.source,
                    "cache_key": entry.cache_key,
                    "endpoint_url": entry.endpoint_url,
                    "response_data": Jsonb(encode_payload(entry.payload)),
                    "status_code": entry.status_code,
                    "headers": Jsonb(entry.headers) if entry.headers is not None else None,
                    "etag": entry.etag,
                    "last_modified": entry.last_modified,
                    "cached_at": entry.cached_at,
                    "expires_at": entry.expires_at,
                },
            )
        except psycopg.DatabaseError as e:
            logger.error(
                f"Failed to store cache entry: {e}",
                extra={"source": entry.source, "cache_key": entry.cache_key},
            )
            raise

    async def record_hit(self, source: str, cache_key: str) -> None:
        await self.pool.execute_command(
            """
            UPDATE api_response_cache SET hit_count = hit_count + 1
            WHERE cache_key = %s AND api_source = %s
            """,
            (cache_key, source),
        )

    async def delete_entry(self, source: str, cache_key: str) -> bool:
        deleted = await self.pool.execute_command(
            "DELETE FROM api_response_cache WHERE cache_key = %s AND api_source = %s",
            (cache_key, source),
        )
        return deleted > 0

    async def delete_expired(self, now: datetime, source: str | None = None) -> int:
        if source is None:
            return await self.pool.execute_command(
                "DELETE FROM api_response_cache WHERE expires_at <= %s", (now,)
            )
        return await self.pool.execute_command(
            "DELETE FROM api_response_cache WHERE expires_at <= %s AND api_source = %s",
            (now, source),
        )
