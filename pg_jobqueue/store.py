import asyncio
import json
import logging
from typing import Any, Dict, Iterable, List, Optional, Protocol

import asyncpg

from .job import Job, JobStatus, UPDATABLE_FIELDS

logger = logging.getLogger(__name__)


class JobRepository(Protocol):
    """Operations the scheduler and the management surface need from a store."""

    async def create(self, job_type: str, payload: Optional[Dict[str, Any]] = None,
                     total_items: int = 0) -> Job: ...

    async def get(self, job_id: str) -> Optional[Job]: ...

    async def list(self, status: Optional[JobStatus] = None, job_type: Optional[str] = None,
                   limit: Optional[int] = None) -> List[Job]: ...

    async def update(self, job_id: str, **fields) -> Optional[Job]: ...

    async def transition(self, job_id: str, from_statuses: Iterable[JobStatus],
                         **fields) -> Optional[Job]: ...

    async def next_pending(self) -> Optional[Job]: ...

    async def fail_interrupted(self, message: str) -> List[str]: ...

    async def count_by_status(self) -> Dict[str, int]: ...


def validate_update(fields: Dict[str, Any]) -> Dict[str, Any]:
    """
    Check the field names passed to ``update`` and normalise their values.

    Raises:
        ValueError: If a field is not updatable (id, type, payload and the
                    timestamps are fixed at creation).
    """
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Cannot update job field(s): {', '.join(sorted(unknown))}")

    changes = dict(fields)
    if 'status' in changes:
        changes['status'] = JobStatus(changes['status'])
    if 'progress' in changes:
        changes['progress'] = float(changes['progress'])
    for key in ('total_items', 'completed_items'):
        if key in changes:
            changes[key] = int(changes[key])
    return changes


class PostgresJobStore:
    """Durable job store backed by a PostgreSQL ``jobs`` table."""

    def __init__(self, db_pool: asyncpg.Pool, query_retries: int = 1):
        """
        Args:
            db_pool: Connection pool to the PostgreSQL database.
            query_retries: Attempts per query before a database fault is
                           propagated to the caller. The default of 1 never
                           retries; inserts are never retried regardless.
        """
        self.db_pool = db_pool
        self.query_retries = query_retries

    async def initialize_db(self):
        """Create the jobs table and its indexes if they don't exist"""
        await self._execute_with_retry("""
            CREATE TABLE IF NOT EXISTS jobs (
                id TEXT PRIMARY KEY DEFAULT gen_random_uuid()::text,
                type TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending',
                payload JSONB NOT NULL DEFAULT '{}'::jsonb,
                result JSONB,
                error TEXT,
                progress DOUBLE PRECISION NOT NULL DEFAULT 0,
                total_items INTEGER NOT NULL DEFAULT 0,
                completed_items INTEGER NOT NULL DEFAULT 0,
                created_at TIMESTAMPTZ NOT NULL DEFAULT clock_timestamp(),
                updated_at TIMESTAMPTZ NOT NULL DEFAULT clock_timestamp()
            );
        """)

        # FIFO scan for the scheduler
        await self._execute_with_retry("""
            CREATE INDEX IF NOT EXISTS idx_jobs_pending_fifo
            ON jobs(created_at ASC, id ASC)
            WHERE status = 'pending';
        """)

        await self._execute_with_retry("""
            CREATE INDEX IF NOT EXISTS idx_jobs_status_created
            ON jobs(status, created_at DESC);
        """)

        await self._execute_with_retry("""
            CREATE INDEX IF NOT EXISTS idx_jobs_type_created
            ON jobs(type, created_at DESC);
        """)

        logger.debug("Job store initialized")

    async def _execute_with_retry(self, query: str, *args, retry: bool = True):
        """Execute database query with retry logic for transient failures"""
        attempts = self.query_retries if retry else 1
        last_exception = None

        for attempt in range(attempts):
            try:
                return await self.db_pool.fetch(query, *args)

            except Exception as e:
                last_exception = e
                if attempt < attempts - 1:
                    delay = (2 ** attempt) * 0.1  # 0.1s, 0.2s, 0.4s
                    logger.warning(f"Database operation failed (attempt {attempt + 1}/{attempts}), "
                                   f"retrying in {delay}s: {e}")
                    await asyncio.sleep(delay)
                else:
                    logger.error(f"Database operation failed permanently after {attempts} attempts: {e}")

        raise last_exception

    async def create(self, job_type: str, payload: Optional[Dict[str, Any]] = None,
                     total_items: int = 0) -> Job:
        """Insert a new pending job and return the stored record"""
        rows = await self._execute_with_retry("""
            INSERT INTO jobs (type, status, payload, progress, total_items, completed_items,
                              created_at, updated_at)
            SELECT $1, 'pending', $2::jsonb, 0, $3, 0, ts, ts
            FROM (SELECT clock_timestamp() AS ts) AS creation
            RETURNING *;
        """, job_type, json.dumps(payload or {}), int(total_items), retry=False)

        job = Job.from_record(rows[0])
        logger.debug(f"Job created: {job.type} (job_id={job.id})")
        return job

    async def get(self, job_id: str) -> Optional[Job]:
        rows = await self._execute_with_retry("""
            SELECT * FROM jobs WHERE id = $1;
        """, job_id)
        return Job.from_record(rows[0]) if rows else None

    async def list(self, status: Optional[JobStatus] = None, job_type: Optional[str] = None,
                   limit: Optional[int] = None) -> List[Job]:
        """List jobs newest first; every supplied filter must match"""
        conditions = []
        args = []
        if status is not None:
            args.append(JobStatus(status).value)
            conditions.append(f"status = ${len(args)}")
        if job_type is not None:
            args.append(job_type)
            conditions.append(f"type = ${len(args)}")

        query = "SELECT * FROM jobs"
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY created_at DESC, id DESC"
        if limit is not None:
            args.append(int(limit))
            query += f" LIMIT ${len(args)}"

        rows = await self._execute_with_retry(query + ";", *args)
        return [Job.from_record(row) for row in rows]

    async def update(self, job_id: str, **fields) -> Optional[Job]:
        """
        Merge the given fields into a job and refresh ``updated_at``.

        Status transitions are not checked here; see :meth:`transition`.

        Returns:
            The full updated job, or None if no job has this id.
        """
        return await self._update(job_id, validate_update(fields))

    async def transition(self, job_id: str, from_statuses: Iterable[JobStatus], **fields) -> Optional[Job]:
        """
        Like :meth:`update`, but only if the job's current status is one of
        ``from_statuses``. The check and the write are a single statement.

        Returns:
            The updated job, or None if no job has this id or its status
            did not match.
        """
        expected = [JobStatus(s).value for s in from_statuses]
        return await self._update(job_id, validate_update(fields), expected)

    async def _update(self, job_id: str, changes: Dict[str, Any],
                      expected: Optional[List[str]] = None) -> Optional[Job]:
        assignments = []
        args = []
        for column, value in changes.items():
            if column == 'status':
                value = value.value
            if column == 'result':
                args.append(None if value is None else json.dumps(value))
                assignments.append(f"result = ${len(args)}::jsonb")
            else:
                args.append(value)
                assignments.append(f"{column} = ${len(args)}")
        assignments.append("updated_at = clock_timestamp()")

        args.append(job_id)
        where = f"id = ${len(args)}"
        if expected is not None:
            args.append(expected)
            where += f" AND status = ANY(${len(args)}::text[])"

        rows = await self._execute_with_retry(f"""
            UPDATE jobs
            SET {', '.join(assignments)}
            WHERE {where}
            RETURNING *;
        """, *args)
        return Job.from_record(rows[0]) if rows else None

    async def next_pending(self) -> Optional[Job]:
        """Oldest pending job by creation time, or None"""
        rows = await self._execute_with_retry("""
            SELECT * FROM jobs
            WHERE status = 'pending'
            ORDER BY created_at ASC, id ASC
            LIMIT 1;
        """)
        return Job.from_record(rows[0]) if rows else None

    async def fail_interrupted(self, message: str) -> List[str]:
        """Mark jobs left running by a previous process as failed"""
        rows = await self._execute_with_retry("""
            UPDATE jobs
            SET status = 'failed',
                error = $1,
                result = NULL,
                updated_at = clock_timestamp()
            WHERE status = 'running'
            RETURNING id;
        """, message)
        return [row['id'] for row in rows]

    async def count_by_status(self) -> Dict[str, int]:
        rows = await self._execute_with_retry("""
            SELECT status, COUNT(*) AS total FROM jobs GROUP BY status;
        """)
        return {row['status']: row['total'] for row in rows}
