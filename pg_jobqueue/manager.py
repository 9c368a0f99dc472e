import logging
from typing import Any, Dict, List, Optional

from .errors import InvalidJobStateError, JobNotFoundError, JobValidationError
from .job import Job, JobStatus
from .store import JobRepository

logger = logging.getLogger(__name__)


class JobManager:
    """
    Create, list, inspect and cancel jobs on behalf of API callers.

    Requests are validated here, before any store mutation. Lifecycle writes
    other than cancellation belong to the scheduler.
    """

    def __init__(self, store: JobRepository):
        self.store = store

    async def create_job(self, job_type: Optional[str], payload: Optional[Dict[str, Any]] = None) -> Job:
        """
        Queue a new job.

        Raises:
            JobValidationError: If ``job_type`` is missing or blank, or the
                                payload is not a JSON object.
        """
        if not isinstance(job_type, str) or not job_type.strip():
            raise JobValidationError("Missing required field: type")
        if payload is None:
            payload = {}
        if not isinstance(payload, dict):
            raise JobValidationError("Field 'payload' must be an object")

        job = await self.store.create(job_type, payload)
        logger.info(f"Job created: {job.type} (job_id={job.id})")
        return job

    async def list_jobs(self, status: Optional[str] = None, job_type: Optional[str] = None,
                        limit: Optional[int] = None) -> List[Job]:
        """List jobs newest first, optionally filtered by status and/or type"""
        job_status = None
        if status is not None:
            try:
                job_status = JobStatus(status)
            except ValueError:
                valid = ', '.join(s.value for s in JobStatus)
                raise JobValidationError(f"Invalid status '{status}'. Expected one of: {valid}")

        if limit is not None and limit < 1:
            raise JobValidationError("Field 'limit' must be a positive integer")

        return await self.store.list(status=job_status, job_type=job_type, limit=limit)

    async def count_by_status(self) -> Dict[str, int]:
        return await self.store.count_by_status()

    async def get_job(self, job_id: str) -> Job:
        job = await self.store.get(job_id)
        if job is None:
            raise JobNotFoundError("Job not found")
        return job

    async def cancel_job(self, job_id: str) -> Job:
        """
        Label a job ``cancelled``.

        A running handler is not interrupted and may still finish the job as
        completed or failed.

        Raises:
            JobNotFoundError: If no job has this id.
            InvalidJobStateError: If the job is already completed or failed.
        """
        job = await self.get_job(job_id)

        while True:
            if job.status.is_terminal:
                raise InvalidJobStateError(f"Cannot cancel a {job.status.value} job", status=job.status)
            if job.status == JobStatus.CANCELLED:
                return job

            # Only write if the status is still the one just checked
            updated = await self.store.transition(job_id, [job.status], status=JobStatus.CANCELLED)
            if updated is not None:
                break
            job = await self.get_job(job_id)

        if job.status == JobStatus.RUNNING:
            logger.warning(f"Job {job_id} cancelled while running; its handler will not be interrupted")
        else:
            logger.info(f"Job cancelled: {job.type} (job_id={job_id})")
        return updated
