"""
PostgreSQL process store on the ``proctypes``/``procstates`` tables.

Transitions are a single conditional UPDATE that only matches rows whose
current state may reach the target. The ``trg_procstates_terminal``
trigger additionally rejects any write to a completed or cancelled row.
"""

from datetime import datetime

import psycopg

from market_etl.core.models import ProcessRun, ProcessState, allowed_sources
from market_etl.errors import InvalidTransition, RunNotFound
from market_etl.observability.logger import get_logger
from market_etl.warehouse.base import ProcessStore
from market_etl.warehouse.connection import DatabaseConnectionPool

logger = get_logger(__name__)

_SELECT_RUN = """
    SELECT s.spid, t.name AS proc_type, s.start_time, s.end_state, s.end_time,
           s.error_msg, s.records_processed, s.attempts
    FROM procstates s
    JOIN proctypes t ON t.proc_id = s.proc_id
"""

_END_TIME_STATES = (ProcessState.COMPLETED, ProcessState.FAILED, ProcessState.CANCELLED)


def _row_to_run(row: dict) -> ProcessRun:
    return ProcessRun(
        id=row["spid"],
        proc_type=row["proc_type"],
        start_time=row["start_time"],
        end_state=ProcessState(row["end_state"]),
        end_time=row["end_time"],
        error_msg=row["error_msg"],
        records_processed=row["records_processed"],
        attempts=row["attempts"],
    )


class PostgresProcessStore(ProcessStore):
    def __init__(self, pool: DatabaseConnectionPool):
        self.pool = pool

    async def create_run(self, proc_type: str, now: datetime) -> ProcessRun:
        async with self.pool.get_cursor() as cur:
            await cur.execute(
                "INSERT INTO proctypes (name) VALUES (%s) ON CONFLICT (name) DO NOTHING",
                (proc_type,),
            )
            await cur.execute(
                """
                INSERT INTO procstates (proc_id, start_time, end_state)
                SELECT proc_id, %s, 'started' FROM proctypes WHERE name = %s
                RETURNING spid
                """,
                (now, proc_type),
            )
            row = await cur.fetchone()

        run = await self.get_run(row["spid"])
        if run is None:
            raise RunNotFound(row["spid"])
        return run

    async def get_run(self, run_id: int) -> ProcessRun | None:
        rows = await self.pool.execute_query(_SELECT_RUN + " WHERE s.spid = %s", (run_id,))
        return _row_to_run(rows[0]) if rows else None

    async def transition(
        self,
        run_id: int,
        target: ProcessState,
        now: datetime,
        error_msg: str | None = None,
        records_processed: int | None = None,
        increment_attempts: bool = False,
    ) -> ProcessRun:
        command = """
            UPDATE procstates SET
                end_state = %(target)s,
                end_time = %(end_time)s::timestamptz,
                error_msg = COALESCE(%(error_msg)s::text, error_msg),
                records_processed = COALESCE(%(records)s::integer, records_processed),
                attempts = attempts + %(attempt_inc)s
            WHERE spid = %(run_id)s
              AND end_state = ANY(%(allowed)s::text[])
              AND (%(records)s::integer IS NULL OR %(records)s::integer >= records_processed)
            RETURNING spid
        """
        params = {
            "target": target.value,
            "end_time": now if target in _END_TIME_STATES else None,
            "error_msg": error_msg,
            "records": records_processed,
            "attempt_inc": 1 if increment_attempts else 0,
            "run_id": run_id,
            "allowed": [state.value for state in allowed_sources(target)],
        }

        try:
            rows = await self.pool.execute_query(command, params)
        except psycopg.errors.CheckViolation as e:
            current = await self.get_run(run_id)
            from_state = current.end_state.value if current else "unknown"
            logger.warning(
                f"Database rejected transition: {e}",
                extra={"run_id": run_id, "target": target.value},
            )
            raise InvalidTransition(run_id, from_state, target.value) from e

        if rows:
            run = await self.get_run(run_id)
            if run is None:
                raise RunNotFound(run_id)
            return run

        current = await self.get_run(run_id)
        if current is None:
            raise RunNotFound(run_id)
        if not current.can_transition_to(target):
            raise InvalidTransition(run_id, current.end_state.value, target.value)
        raise ValueError(
            f"records_processed cannot decrease for run {run_id}: "
            f"{current.records_processed} -> {records_processed}"
        )

    async def add_progress(self, run_id: int, delta: int) -> ProcessRun:
        rows = await self.pool.execute_query(
            """
            UPDATE procstates SET records_processed = records_processed + %s
            WHERE spid = %s AND end_state NOT IN ('completed', 'cancelled')
            RETURNING spid
            """,
            (delta, run_id),
        )
        current = await self.get_run(run_id)
        if current is None:
            raise RunNotFound(run_id)
        if not rows:
            raise InvalidTransition(run_id, current.end_state.value, current.end_state.value)
        return current

    async def list_runs(self, proc_type: str | None = None, limit: int = 50) -> list[ProcessRun]:
        if proc_type is None:
            rows = await self.pool.execute_query(
                _SELECT_RUN + " ORDER BY s.start_time DESC, s.spid DESC LIMIT %s", (limit,)
            )
        else:
            rows = await self.pool.execute_query(
                _SELECT_RUN + " WHERE t.name = %s ORDER BY s.start_time DESC, s.spid DESC LIMIT %s",
                (proc_type, limit),
            )
        return [_row_to_run(row) for row in rows]
