"""
Loader framework: context wiring, batching and retries.
"""

from .base import BaseLoader, LoaderContext
from .batch_processor import BatchConfig, BatchProcessor, BatchResult, create_batches
from .retry import RetryPolicy

__all__ = [
    "BaseLoader",
    "LoaderContext",
    "BatchConfig",
    "BatchProcessor",
    "BatchResult",
    "create_batches",
    "RetryPolicy",
]
