"""
ProcessRun model representing one ingestion run and its lifecycle state.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from market_etl.core.clock import utc_now


class ProcessState(str, Enum):
    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    RETRYING = "retrying"


TERMINAL_STATES = frozenset({ProcessState.COMPLETED, ProcessState.CANCELLED})

# from-state -> states it may move to
ALLOWED_TRANSITIONS: dict[ProcessState, frozenset[ProcessState]] = {
    ProcessState.STARTED: frozenset(
        {ProcessState.COMPLETED, ProcessState.FAILED, ProcessState.RETRYING, ProcessState.CANCELLED}
    ),
    ProcessState.RETRYING: frozenset({ProcessState.STARTED, ProcessState.CANCELLED}),
    ProcessState.FAILED: frozenset({ProcessState.RETRYING}),
    ProcessState.COMPLETED: frozenset(),
    ProcessState.CANCELLED: frozenset(),
}


def allowed_sources(target: ProcessState) -> list[ProcessState]:
    """States from which ``target`` can be reached."""
    return [state for state, targets in ALLOWED_TRANSITIONS.items() if target in targets]


class ProcessRun(BaseModel):
    """
    One execution of a loader.

    Attributes:
        id: Auto-increment primary key (``spid``)
        proc_type: Loader kind, e.g. "load_overviews"
        start_time: When the run began
        end_state: Current lifecycle state
        end_time: When the run last reached completed/failed/cancelled
        error_msg: Failure or cancellation reason
        records_processed: Durably committed records, never decreases
        attempts: Number of times the run has (re)started
    """

    id: int
    proc_type: str = Field(..., min_length=1)
    start_time: datetime = Field(default_factory=utc_now)
    end_state: ProcessState = ProcessState.STARTED
    end_time: datetime | None = None
    error_msg: str | None = None
    records_processed: int = Field(default=0, ge=0)
    attempts: int = Field(default=1, ge=1)

    @property
    def is_terminal(self) -> bool:
        return self.end_state in TERMINAL_STATES

    def can_transition_to(self, target: ProcessState) -> bool:
        return target in ALLOWED_TRANSITIONS[self.end_state]
