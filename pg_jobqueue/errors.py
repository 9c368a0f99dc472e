"""
Exceptions raised by PG Job Queue.

Handler failures never surface as exceptions to callers: they are recorded
on the job itself. The classes below cover the management surface and the
event channels.
"""


class JobQueueError(Exception):
    """Base class for job queue errors"""


class JobNotFoundError(JobQueueError):
    """The requested job id does not exist"""


class JobValidationError(JobQueueError):
    """A request was rejected before touching the store"""


class InvalidJobStateError(JobQueueError):
    """The job's current status does not allow the requested operation"""

    def __init__(self, message: str, status=None):
        super().__init__(message)
        self.status = status


class JobTimeoutError(JobQueueError):
    """A handler ran longer than the scheduler's handler_timeout"""


class ChannelClosedError(JobQueueError):
    """A write was attempted on an observer channel that has been closed"""
