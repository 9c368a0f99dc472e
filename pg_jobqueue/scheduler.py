import asyncio
import json
import logging
import math
from typing import Any, List, Optional, Set

from .errors import JobTimeoutError
from .events import EventBroadcaster
from .job import Job, JobStatus
from .registry import HandlerRegistry, JobHandler
from .store import JobRepository

logger = logging.getLogger(__name__)

INTERRUPTED_ERROR = "Job interrupted before completion (process restarted)"


class ProgressReporter:
    """
    Progress callback handed to a handler as its second argument.

    ``await report_progress(progress, completed_items)`` stores the new values
    and then broadcasts ``job:progress``; it returns only after both, so
    observers never see progress that was not persisted.
    """

    def __init__(self, store: JobRepository, broadcaster: EventBroadcaster, job: Job):
        self.store = store
        self.broadcaster = broadcaster
        self.job_id = job.id
        self.progress = job.progress

    async def __call__(self, progress: float, completed_items: int):
        progress = float(progress)
        if not math.isfinite(progress):
            raise ValueError(f"Progress must be a finite number, got {progress}")
        # Percentages stay within 0..100 and never go backwards
        progress = max(min(progress, 100.0), 0.0, self.progress)
        completed_items = int(completed_items)

        await self.store.update(self.job_id, progress=progress, completed_items=completed_items)
        self.progress = progress

        self.broadcaster.broadcast('job:progress', {
            'jobId': self.job_id,
            'progress': progress,
            'completedItems': completed_items,
        })

    async def is_cancelled(self) -> bool:
        """
        Whether the job has been labelled ``cancelled`` since it started.

        Cancellation is advisory: the scheduler never interrupts a handler,
        so a handler that wants to stop early must poll this itself.
        """
        job = await self.store.get(self.job_id)
        return job is None or job.status == JobStatus.CANCELLED


class JobScheduler:
    """Runs pending jobs one at a time, oldest first, on a recurring timer"""

    def __init__(self,
                 store: JobRepository,
                 broadcaster: EventBroadcaster,
                 registry: Optional[HandlerRegistry] = None,
                 handler_timeout: Optional[float] = None):
        """
        Args:
            store: Job store holding the queue.
            broadcaster: Receives job lifecycle and progress events.
            registry: Handlers by job type (an empty registry if None).
            handler_timeout: Seconds a handler may run before its job fails.
                             None (default) means handlers are never timed out.
        """
        self.store = store
        self.broadcaster = broadcaster
        self.registry = registry if registry is not None else HandlerRegistry()
        self.handler_timeout = handler_timeout

        # Single-flight guard: set while a job step is in progress
        self.is_processing = False

        self.timer_task: Optional[asyncio.Task] = None
        self.active_tasks: Set[asyncio.Task] = set()

        logger.info(f"Job scheduler initialized: handler_timeout={handler_timeout}")

    def register_handler(self, job_type: str, handler: JobHandler):
        self.registry.register(job_type, handler)

    @property
    def is_running(self) -> bool:
        return self.timer_task is not None and not self.timer_task.done()

    def start(self, interval: float = 5.0):
        """Run a scheduler step every ``interval`` seconds (replaces any running timer)"""
        self.stop()
        self.timer_task = asyncio.create_task(self._timer_loop(interval))
        logger.info(f"Job scheduler started: polling every {interval}s")

    def stop(self):
        """Stop the timer. A job already being processed runs to completion."""
        if self.timer_task and not self.timer_task.done():
            self.timer_task.cancel()
            logger.info("Job scheduler stopped")
        self.timer_task = None

    async def shutdown(self, timeout: float = 30):
        """Stop the timer and wait for the in-flight step, cancelling it after ``timeout``"""
        self.stop()

        if self.active_tasks:
            logger.debug(f"Waiting for {len(self.active_tasks)} active step(s) to complete...")
            _, pending = await asyncio.wait(set(self.active_tasks), timeout=timeout)

            if pending:
                logger.warning(f"Cancelling {len(pending)} step(s) still running after {timeout}s")
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)

    async def recover_interrupted_jobs(self) -> List[str]:
        """Fail jobs that a previous process left in ``running``"""
        recovered = await self.store.fail_interrupted(INTERRUPTED_ERROR)
        if recovered:
            logger.warning(f"Marked {len(recovered)} interrupted jobs as failed")
            for job_id in recovered:
                logger.debug(f"Recovered interrupted job {job_id}")
        else:
            logger.debug("No interrupted jobs found during startup")
        return recovered

    async def _timer_loop(self, interval: float):
        while True:
            await asyncio.sleep(interval)
            # Each tick is its own task so ticks can overlap; the guard drops extras
            task = asyncio.create_task(self._tick())
            self.active_tasks.add(task)
            task.add_done_callback(self.active_tasks.discard)

    async def _tick(self):
        try:
            await self.run_once()
        except Exception as e:
            logger.error(f"Error processing job queue: {e}")

    async def run_once(self) -> Optional[Job]:
        """
        Process the oldest pending job, if any.

        Returns immediately when another step is still in progress. Handler
        errors are recorded on the job; store errors propagate after the
        guard is released.

        Returns:
            The job as stored after processing, or None if nothing ran.
        """
        if self.is_processing:
            return None
        self.is_processing = True

        try:
            job = await self.store.next_pending()
            if job is None:
                return None
            return await self._process(job)
        finally:
            self.is_processing = False

    async def _process(self, job: Job) -> Optional[Job]:
        handler = self.registry.get(job.type)

        if handler is None:
            error = f"No handler registered for job type: {job.type}"
            failed = await self.store.transition(job.id, [JobStatus.PENDING], status=JobStatus.FAILED, error=error)
            if failed is None:
                logger.debug(f"Job {job.id} left pending before dispatch; skipping")
                return None
            logger.warning(f"Job {job.id} failed: {error}")
            self.broadcaster.broadcast('job:failed', {'jobId': job.id, 'error': error})
            return failed

        # Claim: a job cancelled since next_pending() must not run
        running = await self.store.transition(job.id, [JobStatus.PENDING], status=JobStatus.RUNNING)
        if running is None:
            logger.debug(f"Job {job.id} left pending before dispatch; skipping")
            return None
        self.broadcaster.broadcast('job:started', {'jobId': job.id, 'type': job.type})
        logger.debug(f"Executing job {job.id} ({job.type})")

        report_progress = ProgressReporter(self.store, self.broadcaster, running)

        try:
            result = await self._invoke(handler, running, report_progress)
        except Exception as e:
            error = str(e) or e.__class__.__name__
            logger.error(f"Job {job.id} ({job.type}) failed: {error}")
            failed = await self.store.update(job.id, status=JobStatus.FAILED, error=error, result=None)
            self.broadcaster.broadcast('job:failed', {'jobId': job.id, 'error': error})
            return failed

        completed = await self.store.update(
            job.id, status=JobStatus.COMPLETED, result=result, error=None, progress=100
        )
        self.broadcaster.broadcast('job:completed', {'jobId': job.id, 'result': result})
        logger.debug(f"Job {job.id} completed successfully")
        return completed

    async def _invoke(self, handler: JobHandler, job: Job, report_progress: ProgressReporter) -> Any:
        if self.handler_timeout is None:
            result = await handler(job, report_progress)
        else:
            try:
                result = await asyncio.wait_for(handler(job, report_progress), timeout=self.handler_timeout)
            except asyncio.TimeoutError:
                raise JobTimeoutError(f"Job execution timed out after {self.handler_timeout}s")

        if result is None:
            result = {}
        # Results are stored as JSON; reject what the store could not persist
        try:
            json.dumps(result)
        except (TypeError, ValueError) as e:
            raise TypeError(f"Handler result is not JSON serializable: {e}")
        return result
