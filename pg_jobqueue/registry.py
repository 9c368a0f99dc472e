"""
Handler registry for PG Job Queue.

Maps a job's ``type`` string to the async function that performs the work.
A handler is called as ``await handler(job, report_progress)`` and returns
the job's result (or raises to fail it).

Example:
    >>> registry = HandlerRegistry()
    >>>
    >>> @registry.handler("image-batch")
    ... async def process_images(job, report_progress):
    ...     files = job.payload["files"]
    ...     for done, name in enumerate(files, start=1):
    ...         await resize(name)
    ...         await report_progress(done * 100 / len(files), done)
    ...     return {"processed": len(files)}
"""

import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

JobHandler = Callable[..., Awaitable[Any]]


class HandlerRegistry:
    """Registry of job handlers keyed by job type"""

    def __init__(self):
        self._handlers: Dict[str, JobHandler] = {}

    def register(self, job_type: str, handler: JobHandler):
        """
        Install ``handler`` for ``job_type``. The last registration wins.

        Raises:
            TypeError: If the handler is not an async function.
        """
        if not inspect.iscoroutinefunction(handler):
            raise TypeError(f"Expected an async function, got {type(handler)}")

        if job_type in self._handlers:
            logger.debug(f"Replacing handler for job type: {job_type}")
        self._handlers[job_type] = handler
        logger.debug(f"Registered handler {handler.__name__} for job type: {job_type}")

    def handler(self, job_type: str):
        """Decorator form of :meth:`register`."""
        def decorator(func: JobHandler) -> JobHandler:
            self.register(job_type, func)
            return func
        return decorator

    def unregister(self, job_type: str) -> bool:
        """Remove the handler for a job type; returns False if none was registered"""
        return self._handlers.pop(job_type, None) is not None

    def get(self, job_type: str) -> Optional[JobHandler]:
        return self._handlers.get(job_type)

    def types(self) -> List[str]:
        return sorted(self._handlers)

    def __contains__(self, job_type: str) -> bool:
        return job_type in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)
