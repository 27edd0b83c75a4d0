"""Pipeline registry: SQLite persistence for runs, job runs, and transitions.

Key exports:
    PipelineRegistry: CRUD for pipeline_runs, job_runs and job_transitions.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime

import aiosqlite

from gantry.pipeline.models import (
    JobRun,
    PipelineRun,
    RunState,
    RunStatus,
    TransitionRecord,
)

logger = logging.getLogger("gantry.pipeline.registry")


class PipelineRegistry:
    """SQLite-backed persistence for pipeline run history.

    Takes an already-open aiosqlite connection. Call `initialize()` to create
    tables.
    """

    def __init__(self, db: aiosqlite.Connection):
        self._db = db
        self._db.row_factory = aiosqlite.Row

    async def initialize(self) -> None:
        """Create all pipeline tables if they don't exist."""
        await self._db.executescript(_SCHEMA_SQL)
        await self._db.commit()
        logger.info("Pipeline registry tables initialized")

    # ── Pipeline Run CRUD ────────────────────────────────────────────────────

    async def create_pipeline_run(self, run: PipelineRun) -> None:
        """Insert a new pipeline run."""
        await self._db.execute(
            """
            INSERT INTO pipeline_runs (
                run_id, pipeline_name, event_name, delivery_id,
                status, concurrency_group,
                parent_run_id, parent_job_id, nesting_depth,
                inputs, outputs,
                created_at, started_at, completed_at,
                error_message
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                run.run_id,
                run.pipeline_name,
                run.event_name,
                run.delivery_id,
                run.status.value,
                run.concurrency_group,
                run.parent_run_id,
                run.parent_job_id,
                run.nesting_depth,
                json.dumps(run.inputs, default=str),
                json.dumps(run.outputs, default=str),
                _dt_to_str(run.created_at),
                _dt_to_str(run.started_at),
                _dt_to_str(run.completed_at),
                run.error_message,
            ),
        )
        await self._db.commit()

    async def update_pipeline_run(self, run: PipelineRun) -> None:
        """Update a pipeline run's mutable fields."""
        await self._db.execute(
            """
            UPDATE pipeline_runs SET
                status = ?, concurrency_group = ?, outputs = ?,
                started_at = ?, completed_at = ?,
                error_message = ?
            WHERE run_id = ?
            """,
            (
                run.status.value,
                run.concurrency_group,
                json.dumps(run.outputs, default=str),
                _dt_to_str(run.started_at),
                _dt_to_str(run.completed_at),
                run.error_message,
                run.run_id,
            ),
        )
        await self._db.commit()

    async def get_pipeline_run(self, run_id: str, *, include_jobs: bool = True) -> PipelineRun | None:
        """Fetch a pipeline run by ID, with its job runs and transition log."""
        cursor = await self._db.execute("SELECT * FROM pipeline_runs WHERE run_id = ?", (run_id,))
        row = await cursor.fetchone()
        if not row:
            return None
        run = _row_to_pipeline_run(row)
        if include_jobs:
            run.jobs = await self.get_job_runs(run_id)
            run.transitions = await self.get_transitions(run_id)
        return run

    async def get_runs_for_pipeline(
        self, pipeline_name: str, *, status: RunStatus | None = None
    ) -> list[PipelineRun]:
        """Get all runs of a pipeline, newest first, optionally filtered by status."""
        if status:
            cursor = await self._db.execute(
                "SELECT * FROM pipeline_runs WHERE pipeline_name = ? AND status = ? "
                "ORDER BY created_at DESC",
                (pipeline_name, status.value),
            )
        else:
            cursor = await self._db.execute(
                "SELECT * FROM pipeline_runs WHERE pipeline_name = ? ORDER BY created_at DESC",
                (pipeline_name,),
            )
        rows = await cursor.fetchall()
        return [_row_to_pipeline_run(r) for r in rows]

    async def get_active_pipeline_runs(self) -> list[PipelineRun]:
        """Get all pipeline runs with status queued or running."""
        cursor = await self._db.execute(
            "SELECT * FROM pipeline_runs WHERE status IN (?, ?) ORDER BY created_at",
            (RunStatus.QUEUED.value, RunStatus.RUNNING.value),
        )
        rows = await cursor.fetchall()
        return [_row_to_pipeline_run(r) for r in rows]

    async def get_child_pipelines(self, parent_run_id: str) -> list[PipelineRun]:
        """Get nested runs started by a parent run."""
        cursor = await self._db.execute(
            "SELECT * FROM pipeline_runs WHERE parent_run_id = ? ORDER BY created_at",
            (parent_run_id,),
        )
        rows = await cursor.fetchall()
        return [_row_to_pipeline_run(r) for r in rows]

    async def delete_pipeline_run(self, run_id: str) -> None:
        """Delete a pipeline run and its job runs and transitions."""
        await self._db.execute("DELETE FROM job_transitions WHERE run_id = ?", (run_id,))
        await self._db.execute("DELETE FROM job_runs WHERE run_id = ?", (run_id,))
        await self._db.execute("DELETE FROM pipeline_runs WHERE run_id = ?", (run_id,))
        await self._db.commit()

    # ── Job Run CRUD ─────────────────────────────────────────────────────────

    async def save_job_run(self, job_run: JobRun) -> None:
        """Insert or update a job instance record."""
        await self._db.execute(
            """
            INSERT INTO job_runs (
                run_id, instance_id, job_id, matrix,
                state, outcome, outputs, reason, child_run_id,
                started_at, completed_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(run_id, instance_id) DO UPDATE SET
                state = excluded.state,
                outcome = excluded.outcome,
                outputs = excluded.outputs,
                reason = excluded.reason,
                child_run_id = excluded.child_run_id,
                started_at = excluded.started_at,
                completed_at = excluded.completed_at
            """,
            (
                job_run.run_id,
                job_run.instance_id,
                job_run.job_id,
                json.dumps(job_run.matrix, default=str) if job_run.matrix is not None else None,
                job_run.state.value,
                job_run.outcome.value if job_run.outcome else None,
                json.dumps(job_run.outputs, default=str),
                job_run.reason,
                job_run.child_run_id,
                _dt_to_str(job_run.started_at),
                _dt_to_str(job_run.completed_at),
            ),
        )
        await self._db.commit()

    async def get_job_runs(self, run_id: str) -> list[JobRun]:
        """Get all job instance records for a run, in creation order."""
        cursor = await self._db.execute(
            "SELECT * FROM job_runs WHERE run_id = ? ORDER BY id", (run_id,)
        )
        rows = await cursor.fetchall()
        return [_row_to_job_run(r) for r in rows]

    # ── Transition Log ───────────────────────────────────────────────────────

    async def record_transition(self, run_id: str, record: TransitionRecord) -> None:
        await self._db.execute(
            """
            INSERT INTO job_transitions (
                run_id, instance_id, job_id, from_state, to_state, at, reason
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                run_id,
                record.instance_id,
                record.job_id,
                record.from_state.value,
                record.to_state.value,
                _dt_to_str(record.at),
                record.reason,
            ),
        )
        await self._db.commit()

    async def get_transitions(self, run_id: str) -> list[TransitionRecord]:
        cursor = await self._db.execute(
            "SELECT * FROM job_transitions WHERE run_id = ? ORDER BY id", (run_id,)
        )
        rows = await cursor.fetchall()
        return [_row_to_transition(r) for r in rows]


_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS pipeline_runs (
    run_id TEXT PRIMARY KEY,
    pipeline_name TEXT NOT NULL,

    event_name TEXT,
    delivery_id TEXT,

    status TEXT DEFAULT 'queued',
    concurrency_group TEXT,

    parent_run_id TEXT REFERENCES pipeline_runs(run_id),
    parent_job_id TEXT,
    nesting_depth INTEGER DEFAULT 0,

    inputs TEXT DEFAULT '{}',
    outputs TEXT DEFAULT '{}',

    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    started_at TEXT,
    completed_at TEXT,

    error_message TEXT
);

CREATE INDEX IF NOT EXISTS idx_pipeline_runs_name
    ON pipeline_runs(pipeline_name, status);
CREATE INDEX IF NOT EXISTS idx_pipeline_runs_parent
    ON pipeline_runs(parent_run_id);
CREATE INDEX IF NOT EXISTS idx_pipeline_runs_status
    ON pipeline_runs(status);

CREATE TABLE IF NOT EXISTS job_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id TEXT NOT NULL REFERENCES pipeline_runs(run_id) ON DELETE CASCADE,
    instance_id TEXT NOT NULL,
    job_id TEXT NOT NULL,
    matrix TEXT,

    state TEXT DEFAULT 'pending',
    outcome TEXT,
    outputs TEXT DEFAULT '{}',
    reason TEXT DEFAULT '',
    child_run_id TEXT,

    started_at TEXT,
    completed_at TEXT,

    UNIQUE(run_id, instance_id)
);

CREATE INDEX IF NOT EXISTS idx_job_runs_run
    ON job_runs(run_id);

CREATE TABLE IF NOT EXISTS job_transitions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id TEXT NOT NULL REFERENCES pipeline_runs(run_id) ON DELETE CASCADE,
    instance_id TEXT NOT NULL,
    job_id TEXT NOT NULL,
    from_state TEXT NOT NULL,
    to_state TEXT NOT NULL,
    at TEXT NOT NULL,
    reason TEXT DEFAULT ''
);

CREATE INDEX IF NOT EXISTS idx_job_transitions_run
    ON job_transitions(run_id);
"""


# ── Row-to-Model Converters ─────────────────────────────────────────────────


def _dt_to_str(dt: datetime | None) -> str | None:
    """Convert datetime to ISO string for SQLite storage."""
    if dt is None:
        return None
    return dt.isoformat()


def _str_to_dt(s: str | None) -> datetime | None:
    """Parse ISO string from SQLite back to datetime."""
    if not s:
        return None
    try:
        return datetime.fromisoformat(s)
    except (ValueError, TypeError):
        return None


def _json(value: str | None, default: object) -> object:
    if value is None:
        return default
    if isinstance(value, str):
        return json.loads(value)
    return value


def _row_to_pipeline_run(row: aiosqlite.Row) -> PipelineRun:
    """Convert a database row to a PipelineRun model."""
    return PipelineRun(
        run_id=row["run_id"],
        pipeline_name=row["pipeline_name"],
        event_name=row["event_name"],
        delivery_id=row["delivery_id"],
        status=RunStatus(row["status"]),
        concurrency_group=row["concurrency_group"],
        parent_run_id=row["parent_run_id"],
        parent_job_id=row["parent_job_id"],
        nesting_depth=row["nesting_depth"] or 0,
        inputs=_json(row["inputs"], {}),
        outputs=_json(row["outputs"], {}),
        created_at=_str_to_dt(row["created_at"]),
        started_at=_str_to_dt(row["started_at"]),
        completed_at=_str_to_dt(row["completed_at"]),
        error_message=row["error_message"],
    )


def _row_to_job_run(row: aiosqlite.Row) -> JobRun:
    """Convert a database row to a JobRun model."""
    return JobRun(
        run_id=row["run_id"],
        instance_id=row["instance_id"],
        job_id=row["job_id"],
        matrix=_json(row["matrix"], None),
        state=RunState(row["state"]),
        outcome=RunState(row["outcome"]) if row["outcome"] else None,
        outputs=_json(row["outputs"], {}),
        reason=row["reason"] or "",
        child_run_id=row["child_run_id"],
        started_at=_str_to_dt(row["started_at"]),
        completed_at=_str_to_dt(row["completed_at"]),
    )


def _row_to_transition(row: aiosqlite.Row) -> TransitionRecord:
    return TransitionRecord(
        instance_id=row["instance_id"],
        job_id=row["job_id"],
        from_state=RunState(row["from_state"]),
        to_state=RunState(row["to_state"]),
        at=_str_to_dt(row["at"]),
        reason=row["reason"] or "",
    )
