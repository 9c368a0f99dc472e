"""
In-process job store.

Keeps jobs in a dict for the lifetime of the process. Useful for tests and
for embedding the queue where durability is not needed; it honours the same
ordering and update semantics as the PostgreSQL store.
"""

import copy
import itertools
import uuid
from typing import Any, Dict, Iterable, List, Optional, Set

from .job import Job, JobStatus, utc_now
from .store import validate_update


class MemoryJobStore:
    """Dict-backed implementation of the job store operations"""

    def __init__(self):
        self._jobs: Dict[str, Job] = {}
        self._sequence: Dict[str, int] = {}
        self._counter = itertools.count()

    async def initialize_db(self):
        pass

    def _snapshot(self, job: Job) -> Job:
        # Callers get copies so they cannot mutate stored state in place
        return copy.deepcopy(job)

    def _fifo_key(self, job: Job):
        return (job.created_at, self._sequence[job.id])

    async def create(self, job_type: str, payload: Optional[Dict[str, Any]] = None,
                     total_items: int = 0) -> Job:
        now = utc_now()
        job = Job(
            id=str(uuid.uuid4()),
            type=job_type,
            status=JobStatus.PENDING,
            payload=copy.deepcopy(payload) if payload else {},
            total_items=int(total_items),
            created_at=now,
            updated_at=now,
        )
        self._jobs[job.id] = job
        self._sequence[job.id] = next(self._counter)
        return self._snapshot(job)

    async def get(self, job_id: str) -> Optional[Job]:
        job = self._jobs.get(job_id)
        return self._snapshot(job) if job else None

    async def list(self, status: Optional[JobStatus] = None, job_type: Optional[str] = None,
                   limit: Optional[int] = None) -> List[Job]:
        status = JobStatus(status) if status is not None else None
        jobs = [
            job for job in self._jobs.values()
            if (status is None or job.status == status)
            and (job_type is None or job.type == job_type)
        ]
        jobs.sort(key=self._fifo_key, reverse=True)
        if limit is not None:
            jobs = jobs[:int(limit)]
        return [self._snapshot(job) for job in jobs]

    async def update(self, job_id: str, **fields) -> Optional[Job]:
        return self._apply(job_id, validate_update(fields))

    async def transition(self, job_id: str, from_statuses: Iterable[JobStatus], **fields) -> Optional[Job]:
        expected = {JobStatus(s) for s in from_statuses}
        return self._apply(job_id, validate_update(fields), expected)

    def _apply(self, job_id: str, changes: Dict[str, Any],
               expected: Optional[Set[JobStatus]] = None) -> Optional[Job]:
        # No await between the status check and the write
        job = self._jobs.get(job_id)
        if job is None or (expected is not None and job.status not in expected):
            return None

        for name, value in changes.items():
            setattr(job, name, copy.deepcopy(value))
        job.updated_at = max(utc_now(), job.created_at)
        return self._snapshot(job)

    async def next_pending(self) -> Optional[Job]:
        pending = [job for job in self._jobs.values() if job.status == JobStatus.PENDING]
        if not pending:
            return None
        return self._snapshot(min(pending, key=self._fifo_key))

    async def fail_interrupted(self, message: str) -> List[str]:
        recovered = []
        for job in self._jobs.values():
            if job.status == JobStatus.RUNNING:
                job.status = JobStatus.FAILED
                job.error = message
                job.result = None
                job.updated_at = utc_now()
                recovered.append(job.id)
        return recovered

    async def count_by_status(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for job in self._jobs.values():
            counts[job.status.value] = counts.get(job.status.value, 0) + 1
        return counts
