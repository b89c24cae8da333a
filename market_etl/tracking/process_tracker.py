"""
Process tracker: lifecycle of ETL runs as an explicit state machine.

    started  -> completed | failed | retrying | cancelled
    retrying -> started | cancelled
    failed   -> retrying

completed and cancelled are terminal. Every transition goes through
``ProcessStore.transition``, which applies it atomically or raises
``InvalidTransition`` without touching the row.
"""

import asyncio
from contextlib import asynccontextmanager

from market_etl.core.clock import Clock, utc_now
from market_etl.core.models import ProcessRun, ProcessState
from market_etl.errors import InvalidTransition, RunNotFound
from market_etl.observability.logger import get_logger
from market_etl.observability.metrics import (
    increment_counter,
    process_transitions_total,
    records_processed_total,
)
from market_etl.utils.validation import validate_limit
from market_etl.warehouse.base import ProcessStore

logger = get_logger(__name__)


class TrackedRun:
    """
    Handle yielded by ``ProcessTracker.track``.

    Records are tallied per attempt and written when the block exits. A
    retried attempt starts with ``start_attempt``, which drops the failed
    attempt's tally, so units committed again are not counted twice.
    """

    def __init__(self, tracker: "ProcessTracker", run_id: int, proc_type: str):
        self.tracker = tracker
        self.run_id = run_id
        self.proc_type = proc_type
        self.attempt_records = 0

    async def add_records(self, count: int) -> int:
        if count < 0:
            raise ValueError("records_processed never decreases")
        self.attempt_records += count
        return self.attempt_records

    def start_attempt(self) -> None:
        if self.attempt_records:
            logger.info(
                "Discarding record tally of a failed attempt",
                extra={"run_id": self.run_id, "records": self.attempt_records},
            )
        self.attempt_records = 0

    async def flush(self) -> None:
        count, self.attempt_records = self.attempt_records, 0
        if count:
            await self.tracker.record_progress(self.run_id, count)


class ProcessTracker:
    """
    Records begin/complete/fail/cancel/retry for each loader run.

    Usage:
        async with tracker.track("load_overviews") as run:
            ...
            await run.add_records(len(batch))
    """

    def __init__(self, store: ProcessStore, clock: Clock = utc_now):
        self.store = store
        self._clock = clock

    async def begin(self, proc_type: str) -> int:
        if not proc_type or not proc_type.strip():
            raise ValueError("proc_type must be a non-empty string")

        run = await self.store.create_run(proc_type.strip(), self._clock())
        increment_counter(process_transitions_total, proc_type=run.proc_type, state=run.end_state.value)
        logger.info("Process run started", extra={"run_id": run.id, "proc_type": run.proc_type})
        return run.id

    async def complete(self, run_id: int, records_processed: int | None = None) -> ProcessRun:
        """
        Mark the run completed.

        Raises:
            InvalidTransition: If the run is not in started state
            ValueError: If records_processed is lower than already recorded
        """
        if records_processed is not None and records_processed < 0:
            raise ValueError("records_processed must be non-negative")
        return await self._transition(
            run_id, ProcessState.COMPLETED, records_processed=records_processed
        )

    async def fail(self, run_id: int, error_msg: str) -> ProcessRun:
        return await self._transition(run_id, ProcessState.FAILED, error_msg=error_msg)

    async def cancel(self, run_id: int, reason: str | None = None) -> ProcessRun:
        return await self._transition(run_id, ProcessState.CANCELLED, error_msg=reason)

    async def mark_retrying(self, run_id: int, reason: str | None = None) -> ProcessRun:
        return await self._transition(run_id, ProcessState.RETRYING, error_msg=reason)

    async def resume(self, run_id: int) -> ProcessRun:
        """Move a retrying run back to started and count the new attempt."""
        return await self._transition(run_id, ProcessState.STARTED, increment_attempts=True)

    async def record_progress(self, run_id: int, delta: int) -> ProcessRun:
        """Add records that have been durably committed."""
        if delta < 0:
            raise ValueError("records_processed never decreases")
        run = await self.store.add_progress(run_id, delta)
        increment_counter(records_processed_total, value=delta, proc_type=run.proc_type)
        return run

    async def get(self, run_id: int) -> ProcessRun:
        run = await self.store.get_run(run_id)
        if run is None:
            raise RunNotFound(run_id)
        return run

    async def recent(self, proc_type: str | None = None, limit: int = 20) -> list[ProcessRun]:
        return await self.store.list_runs(proc_type, validate_limit(limit, max_limit=1000))

    @asynccontextmanager
    async def track(self, proc_type: str):
        """
        Run a block as a tracked process.

        Completes the run when the block exits normally, cancels it on
        ``asyncio.CancelledError`` and fails it on any other exception,
        which is re-raised. A run the block already finalized is left alone.
        """
        run_id = await self.begin(proc_type)
        handle = TrackedRun(self, run_id, proc_type)
        try:
            yield handle
        except asyncio.CancelledError:
            if await self._can_reach(run_id, ProcessState.CANCELLED):
                await handle.flush()
                await self.cancel(run_id, "cancelled")
            raise
        except Exception as e:
            if await self._can_reach(run_id, ProcessState.FAILED):
                await handle.flush()
                await self.fail(run_id, f"{type(e).__name__}: {e}")
            raise
        else:
            if await self._can_reach(run_id, ProcessState.COMPLETED):
                await handle.flush()
                await self.complete(run_id)

    async def _can_reach(self, run_id: int, target: ProcessState) -> bool:
        run = await self.get(run_id)
        return run.can_transition_to(target)

    async def _transition(
        self,
        run_id: int,
        target: ProcessState,
        error_msg: str | None = None,
        records_processed: int | None = None,
        increment_attempts: bool = False,
    ) -> ProcessRun:
        try:
            run = await self.store.transition(
                run_id,
                target,
                self._clock(),
                error_msg=error_msg,
                records_processed=records_processed,
                increment_attempts=increment_attempts,
            )
        except (InvalidTransition, RunNotFound, ValueError) as e:
            logger.error(
                f"Rejected process transition: {e}",
                extra={"run_id": run_id, "target": target.value},
            )
            raise

        increment_counter(process_transitions_total, proc_type=run.proc_type, state=target.value)
        log = logger.warning if target in (ProcessState.FAILED, ProcessState.RETRYING) else logger.info
        log(
            f"Process run {target.value}",
            extra={
                "run_id": run.id,
                "proc_type": run.proc_type,
                "records_processed": run.records_processed,
                "attempts": run.attempts,
                "error_msg": run.error_msg,
            },
        )
        return run
