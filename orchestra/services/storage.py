"""SQLite storage helpers for Orchestra job history."""

from datetime import UTC, datetime
from pathlib import Path

import aiosqlite

from orchestra.constants import (
    JOB_STATUS_COMPLETE,
    JOB_STATUS_CONFIGURING,
    JOB_STATUS_ERROR,
    JOB_STATUS_RUNNING,
    MAX_PERSISTED_JOBS,
)
from orchestra.models.jobs import PersistedJob
from orchestra.models.orchestrator import OrchestratorState

_JOB_COLUMNS = "id, query, status, created_at, completed_at, total, completed, failed, state_json"

_REQUEST_TO_JOB_STATUS = {
    "idle": JOB_STATUS_CONFIGURING,
    "parsing": JOB_STATUS_CONFIGURING,
    "configuring": JOB_STATUS_CONFIGURING,
    "running": JOB_STATUS_RUNNING,
    "completing": JOB_STATUS_RUNNING,
    "complete": JOB_STATUS_COMPLETE,
    "error": JOB_STATUS_ERROR,
}


async def init_db(db_path: Path) -> None:
    """Initialize SQLite schema.

    Args:
        db_path: Path to SQLite database.
    """

    db_path.parent.mkdir(parents=True, exist_ok=True)
    async with aiosqlite.connect(db_path) as conn:
        await conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS jobs (
                id TEXT PRIMARY KEY,
                query TEXT NOT NULL,
                status TEXT NOT NULL,
                created_at TEXT NOT NULL,
                completed_at TEXT,
                total INTEGER NOT NULL DEFAULT 0,
                completed INTEGER NOT NULL DEFAULT 0,
                failed INTEGER NOT NULL DEFAULT 0,
                state_json TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_jobs_created_at ON jobs (created_at);
            """
        )
        await conn.commit()


def job_record_from_state(state: OrchestratorState, now: datetime | None = None) -> PersistedJob:
    """Build a job history record from request state.

    Args:
        state: Request state to persist.
        now: Timestamp used when the state carries none.

    Returns:
        PersistedJob with the serialized state attached.
    """

    now = now or datetime.now(UTC)
    status = _REQUEST_TO_JOB_STATUS[state.status]
    completed_at = None
    if status in (JOB_STATUS_COMPLETE, JOB_STATUS_ERROR):
        aggregated = state.aggregated_results
        completed_at = aggregated.end_time if aggregated else now

    return PersistedJob(
        id=state.query_id,
        query=state.original_query,
        status=status,
        created_at=state.start_time or now,
        completed_at=completed_at,
        total=state.progress.total,
        completed=state.progress.completed,
        failed=state.progress.failed,
        state_json=state.model_dump_json(),
    )


async def persist_job(
    db_path: Path, job: PersistedJob, max_jobs: int = MAX_PERSISTED_JOBS
) -> None:
    """Insert or update a job, then keep only the newest ``max_jobs`` rows.

    The original ``created_at`` is kept when a job is updated.

    Args:
        db_path: SQLite path.
        job: Job record.
        max_jobs: Number of jobs to retain.
    """

    async with aiosqlite.connect(db_path) as conn:
        await conn.execute(
            f"""
            INSERT INTO jobs ({_JOB_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                query = excluded.query,
                status = excluded.status,
                completed_at = excluded.completed_at,
                total = excluded.total,
                completed = excluded.completed,
                failed = excluded.failed,
                state_json = excluded.state_json
            """,
            (
                job.id,
                job.query,
                job.status,
                job.created_at.isoformat(),
                job.completed_at.isoformat() if job.completed_at else None,
                job.total,
                job.completed,
                job.failed,
                job.state_json,
            ),
        )
        await conn.execute(
            """
            DELETE FROM jobs
            WHERE id NOT IN (
                SELECT id FROM jobs ORDER BY created_at DESC, rowid DESC LIMIT ?
            )
            """,
            (max_jobs,),
        )
        await conn.commit()


async def fetch_job(db_path: Path, job_id: str) -> PersistedJob | None:
    """Fetch a job by ID.

    Args:
        db_path: SQLite path.
        job_id: Job identifier (the request's query id).

    Returns:
        PersistedJob if found, otherwise None.
    """

    async with aiosqlite.connect(db_path) as conn:
        cursor = await conn.execute(
            f"SELECT {_JOB_COLUMNS} FROM jobs WHERE id = ?",
            (job_id,),
        )
        row = await cursor.fetchone()

    if row is None:
        return None
    return _row_to_job(row)


async def list_jobs(db_path: Path, limit: int = MAX_PERSISTED_JOBS) -> list[PersistedJob]:
    """List recent jobs, newest first.

    Args:
        db_path: SQLite path.
        limit: Max number of jobs to return.

    Returns:
        List of PersistedJob entries.
    """

    async with aiosqlite.connect(db_path) as conn:
        cursor = await conn.execute(
            f"""
            SELECT {_JOB_COLUMNS}
            FROM jobs
            ORDER BY created_at DESC, rowid DESC
            LIMIT ?
            """,
            (limit,),
        )
        rows = await cursor.fetchall()

    return [_row_to_job(row) for row in rows]


async def remove_job(db_path: Path, job_id: str) -> bool:
    """Delete a job.

    Returns:
        True if a row was deleted.
    """

    async with aiosqlite.connect(db_path) as conn:
        cursor = await conn.execute("DELETE FROM jobs WHERE id = ?", (job_id,))
        await conn.commit()
        return cursor.rowcount > 0


def load_job_state(job: PersistedJob) -> OrchestratorState | None:
    """Deserialize the request state stored with a job, if any."""

    if not job.state_json:
        return None
    return OrchestratorState.model_validate_json(job.state_json)


def _row_to_job(row: tuple) -> PersistedJob:
    return PersistedJob(
        id=row[0],
        query=row[1],
        status=row[2],
        created_at=datetime.fromisoformat(row[3]),
        completed_at=datetime.fromisoformat(row[4]) if row[4] else None,
        total=int(row[5]),
        completed=int(row[6]),
        failed=int(row[7]),
        state_json=row[8],
    )
