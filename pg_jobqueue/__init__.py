"""
PG Job Queue: a PostgreSQL-backed, single-flight FIFO job queue with
server-sent-event progress notifications.
"""

from .app import create_app
from .config import Settings
from .errors import (
    ChannelClosedError,
    InvalidJobStateError,
    JobNotFoundError,
    JobQueueError,
    JobTimeoutError,
    JobValidationError,
)
from .events import EventBroadcaster, QueueChannel, format_event, split_event
from .job import Job, JobStatus
from .manager import JobManager
from .memory_store import MemoryJobStore
from .registry import HandlerRegistry
from .scheduler import JobScheduler, ProgressReporter
from .store import JobRepository, PostgresJobStore

__all__ = [
    "ChannelClosedError",
    "EventBroadcaster",
    "HandlerRegistry",
    "InvalidJobStateError",
    "Job",
    "JobManager",
    "JobNotFoundError",
    "JobQueueError",
    "JobRepository",
    "JobScheduler",
    "JobStatus",
    "JobTimeoutError",
    "JobValidationError",
    "MemoryJobStore",
    "PostgresJobStore",
    "ProgressReporter",
    "QueueChannel",
    "Settings",
    "create_app",
    "format_event",
    "split_event",
]

__version__ = "0.1.0"
