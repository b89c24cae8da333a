"""
Bounded-concurrency batch processing for loaders.

Items are processed batch by batch; inside a batch at most
``max_concurrency`` items run at once. This limit sits on top of the
per-source rate gate, it does not replace it.
"""

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from market_etl.errors import BatchProcessingError
from market_etl.observability.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")
O = TypeVar("O")


class BatchConfig(BaseModel):
    batch_size: int = Field(default=50, ge=1)
    max_concurrency: int = Field(default=5, ge=1)
    continue_on_error: bool = True
    batch_delay_seconds: float | None = Field(default=None, ge=0)


class BatchResult(BaseModel, Generic[O]):
    """
    Attributes:
        success: Outputs of items that succeeded, in input order
        failures: (item index, exception) for items that failed
        total_processed: Items attempted
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    success: list[Any] = Field(default_factory=list)
    failures: list[tuple[int, Exception]] = Field(default_factory=list)
    total_processed: int = 0

    @property
    def success_count(self) -> int:
        return len(self.success)

    @property
    def failure_count(self) -> int:
        return len(self.failures)

    @property
    def success_rate(self) -> float:
        if self.total_processed == 0:
            return 0.0
        return self.success_count / self.total_processed


def create_batches(items: Iterable[T], batch_size: int) -> list[list[T]]:
    """
    Examples:
        >>> create_batches(range(5), 2)
        [[0, 1], [2, 3], [4]]
    """
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1")

    batches: list[list[T]] = []
    current: list[T] = []
    for item in items:
        current.append(item)
        if len(current) >= batch_size:
            batches.append(current)
            current = []
    if current:
        batches.append(current)
    return batches


class BatchProcessor:
    def __init__(self, config: BatchConfig | None = None):
        self.config = config or BatchConfig()
        self._semaphore = asyncio.Semaphore(self.config.max_concurrency)

    async def process(
        self,
        items: Iterable[T],
        processor: Callable[[T], Awaitable[O]],
    ) -> BatchResult[O]:
        """
        Run ``processor`` over every item.

        Raises:
            BatchProcessingError: On the first failure when
                continue_on_error is off
        """
        batches = create_batches(items, self.config.batch_size)
        result: BatchResult[O] = BatchResult()

        for batch_idx, batch in enumerate(batches):
            logger.debug(
                f"Processing batch {batch_idx + 1} of {len(batches)}",
                extra={"batch_size": len(batch)},
            )
            outcomes = await asyncio.gather(
                *(self._run(processor, item) for item in batch),
                return_exceptions=True,
            )

            for offset, outcome in enumerate(outcomes):
                index = batch_idx * self.config.batch_size + offset
                result.total_processed += 1
                if isinstance(outcome, Exception):
                    logger.warning(
                        f"Failed to process item {index}: {outcome}",
                        extra={"index": index, "error_type": type(outcome).__name__},
                    )
                    result.failures.append((index, outcome))
                    if not self.config.continue_on_error:
                        raise BatchProcessingError(index, outcome) from outcome
                elif isinstance(outcome, BaseException):
                    raise outcome
                else:
                    result.success.append(outcome)

            if self.config.batch_delay_seconds and batch_idx < len(batches) - 1:
                await asyncio.sleep(self.config.batch_delay_seconds)

        logger.debug(
            "Batch processing complete",
            extra={"successes": result.success_count, "failures": result.failure_count},
        )
        return result

    async def _run(self, processor: Callable[[T], Awaitable[O]], item: T) -> O:
        async with self._semaphore:
            return await processor(item)
