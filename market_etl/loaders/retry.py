"""
Retry with exponential backoff for transient upstream failures.

Only ``TransientUpstreamError`` is retried. Each retry calls the operation
again from the top, so it passes through the cache and the rate gate
again. When a run is being tracked it is marked retrying while backing
off and resumed before the next attempt.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

from pydantic import BaseModel, Field

from market_etl.errors import TransientUpstreamError
from market_etl.observability.logger import get_logger
from market_etl.observability.metrics import increment_counter, retries_total
from market_etl.tracking.process_tracker import ProcessTracker

logger = get_logger(__name__)

T = TypeVar("T")


class RetryPolicy(BaseModel):
    max_attempts: int = Field(default=3, ge=1)
    base_delay: float = Field(default=1.0, ge=0)
    multiplier: float = Field(default=2.0, ge=1)
    max_delay: float = Field(default=60.0, ge=0)

    def delay_for(self, attempt: int, error: TransientUpstreamError | None = None) -> float:
        """
        Backoff before the attempt after ``attempt`` (1-based). A provider's
        Retry-After is honoured when it asks for longer.
        """
        delay = min(self.base_delay * self.multiplier ** (attempt - 1), self.max_delay)
        if error is not None and error.retry_after is not None:
            delay = max(delay, error.retry_after)
        return delay

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        source: str = "",
        proc_type: str = "",
        tracker: ProcessTracker | None = None,
        run_id: int | None = None,
    ) -> T:
        """
        Await ``operation`` until it succeeds or retries are exhausted.

        Raises:
            TransientUpstreamError: When the last attempt still failed
            Any other exception from the operation, immediately
        """
        attempt = 1
        while True:
            try:
                return await operation()
            except TransientUpstreamError as e:
                if attempt >= self.max_attempts:
                    logger.error(
                        f"Giving up after {attempt} attempts: {e}",
                        extra={"source": source, "proc_type": proc_type, "run_id": run_id},
                    )
                    raise

                delay = self.delay_for(attempt, e)
                increment_counter(retries_total, source=source or e.source, proc_type=proc_type)
                logger.warning(
                    f"Transient failure, retrying in {delay:.2f}s: {e}",
                    extra={
                        "source": source or e.source,
                        "proc_type": proc_type,
                        "run_id": run_id,
                        "attempt": attempt,
                    },
                )

                if tracker is not None and run_id is not None:
                    await tracker.mark_retrying(run_id, str(e))
                await asyncio.sleep(delay)
                if tracker is not None and run_id is not None:
                    await tracker.resume(run_id)
                attempt += 1
