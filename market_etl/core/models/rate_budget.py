"""
RateBudget model: a read-only snapshot of one source's request budget.
"""

from pydantic import BaseModel, Field


class RateBudget(BaseModel):
    """
    Snapshot of a per-source token budget.

    The live budget is owned by a single RateGate; callers only ever see
    copies of it.

    Attributes:
        source: Provider name
        capacity: Maximum grants in any rolling window
        window_seconds: Length of the rolling window
        tokens_available: Tokens that could be granted right now
        waiting: Callers currently suspended on this source
    """

    source: str
    capacity: int = Field(..., ge=1)
    window_seconds: float = Field(..., gt=0)
    tokens_available: int = Field(default=0, ge=0)
    waiting: int = Field(default=0, ge=0)

    @property
    def refill_rate(self) -> float:
        """Tokens returned to the bucket per second in steady state."""
        return self.capacity / self.window_seconds
