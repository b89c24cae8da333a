"""
Error taxonomy for the ingestion core.

Upstream failures are split into transient (retried by the loader with
backoff) and permanent (surfaced as a failed run). Cache corruption never
escapes the cache repository. Invalid process transitions always surface.
"""


class MarketEtlError(Exception):
    """Base class for all market-etl errors."""


class UpstreamError(MarketEtlError):
    """An upstream provider call did not produce a usable payload."""

    def __init__(self, source: str, message: str, status_code: int | None = None):
        self.source = source
        self.status_code = status_code
        self.message = message
        super().__init__(f"[{source}] {message}")


class TransientUpstreamError(UpstreamError):
    """Network failure, 5xx or 429. Safe to retry after backing off."""

    def __init__(
        self,
        source: str,
        message: str,
        status_code: int | None = None,
        retry_after: float | None = None,
    ):
        super().__init__(source, message, status_code)
        self.retry_after = retry_after


class PermanentUpstreamError(UpstreamError):
    """Any other 4xx or a malformed payload. Never retried."""


class CacheCorruptionError(MarketEtlError):
    """A persisted cache payload could not be decoded."""

    def __init__(self, source: str, cache_key: str, reason: str):
        self.source = source
        self.cache_key = cache_key
        self.reason = reason
        super().__init__(f"Corrupt cache entry {source}/{cache_key}: {reason}")


class InvalidTransition(MarketEtlError):
    """A process run transition was attempted from a state that forbids it."""

    def __init__(self, run_id: int, from_state: str, to_state: str):
        self.run_id = run_id
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"Process run {run_id} cannot transition from '{from_state}' to '{to_state}'"
        )


class RunNotFound(MarketEtlError):
    def __init__(self, run_id: int):
        self.run_id = run_id
        super().__init__(f"Process run {run_id} does not exist")


def classify_status(
    source: str,
    status_code: int,
    retry_after: float | None = None,
) -> UpstreamError | None:
    """
    Map an upstream HTTP status to an error, or None for success.

    429 and 5xx are transient; every other non-2xx status is permanent.
    """
    if 200 <= status_code < 300:
        return None
    if status_code == 429:
        return TransientUpstreamError(
            source, "rate limit exceeded", status_code=status_code, retry_after=retry_after
        )
    if status_code >= 500:
        return TransientUpstreamError(
            source, f"server error HTTP {status_code}", status_code=status_code, retry_after=retry_after
        )
    return PermanentUpstreamError(source, f"request rejected HTTP {status_code}", status_code=status_code)


class BatchProcessingError(MarketEtlError):
    """An item failed and the batch was configured to stop on errors."""

    def __init__(self, index: int, cause: Exception):
        self.index = index
        self.cause = cause
        super().__init__(f"Batch processing failed at item {index}: {cause}")
