"""
Upstream request/response types and the HTTP upstream.

The core only ever calls ``Upstream.fetch(source, descriptor)``; how a
provider's API is addressed beyond URL and query parameters is up to the
loader that builds the descriptor.
"""

from typing import Any, Protocol

import httpx
from pydantic import BaseModel, Field

from market_etl.cache.keys import make_key_parts
from market_etl.config import Settings
from market_etl.errors import PermanentUpstreamError, TransientUpstreamError
from market_etl.observability.logger import get_logger

logger = get_logger(__name__)

# Never part of a cache key.
CREDENTIAL_PARAMS = frozenset({"apikey", "api_key", "x_cg_demo_api_key", "x_cg_pro_api_key"})


class RequestDescriptor(BaseModel):
    """
    One unit of upstream work.

    Attributes:
        endpoint: Logical endpoint, e.g. "OVERVIEW" or "coins/markets"
        params: Query parameters
        url: Absolute URL; defaults to the provider's base_url
    """

    endpoint: str = Field(..., min_length=1)
    params: dict[str, str] = Field(default_factory=dict)
    url: str | None = None

    @property
    def cache_key(self) -> str:
        """Endpoint followed by parameter values in parameter-name order."""
        values = [
            self.params[name]
            for name in sorted(self.params)
            if name.lower() not in CREDENTIAL_PARAMS
        ]
        return make_key_parts([self.endpoint, *values])


class UpstreamResponse(BaseModel):
    status_code: int
    payload: Any = None
    headers: dict[str, str] = Field(default_factory=dict)

    @property
    def retry_after(self) -> float | None:
        for name, value in self.headers.items():
            if name.lower() == "retry-after":
                try:
                    return float(value)
                except ValueError:
                    return None
        return None


class Upstream(Protocol):
    async def fetch(self, source: str, descriptor: RequestDescriptor) -> UpstreamResponse:
        """
        Issue the request once. Non-2xx statuses are returned, not raised.

        Raises:
            TransientUpstreamError: On network failure
            PermanentUpstreamError: On a malformed payload
        """
        ...


_KEPT_HEADERS = ("content-type", "etag", "last-modified", "retry-after", "cache-control")


class HttpUpstream:
    """
    ``Upstream`` over an ``httpx.AsyncClient``.

    GETs ``descriptor.url`` (or the provider's base_url) with the
    descriptor's params plus the provider API key when one is configured.
    JSON bodies are decoded, text bodies kept as str, anything else as bytes.
    """

    def __init__(
        self,
        settings: Settings,
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ):
        self.settings = settings
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    async def fetch(self, source: str, descriptor: RequestDescriptor) -> UpstreamResponse:
        provider = self.settings.provider(source)
        url = descriptor.url or provider.base_url
        if not url:
            raise PermanentUpstreamError(source, f"no URL for endpoint {descriptor.endpoint}")

        params = dict(descriptor.params)
        api_key = provider.api_key
        if api_key and provider.api_key_param:
            params.setdefault(provider.api_key_param, api_key)

        try:
            resp = await self._client.get(url, params=params)
        except httpx.TransportError as e:
            raise TransientUpstreamError(source, f"network error: {e}") from e

        headers = {
            name: resp.headers[name] for name in _KEPT_HEADERS if name in resp.headers
        }
        return UpstreamResponse(
            status_code=resp.status_code,
            payload=self._decode_body(source, resp),
            headers=headers,
        )

    @staticmethod
    def _decode_body(source: str, resp: httpx.Response) -> Any:
        content_type = resp.headers.get("content-type", "")
        if "json" in content_type:
            try:
                return resp.json()
            except ValueError as e:
                if resp.is_success:
                    raise PermanentUpstreamError(
                        source, f"malformed JSON payload: {e}", status_code=resp.status_code
                    ) from e
                return resp.text
        if content_type.startswith("text/") or not content_type:
            return resp.text
        return resp.content

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()
        return False
