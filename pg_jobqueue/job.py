"""
Job record and lifecycle states for PG Job Queue.

A job is created ``pending``, claimed by the scheduler (``running``) and
finished as ``completed`` or ``failed``. Collaborators may label a
non-terminal job ``cancelled``; a handler that was already running can still
overwrite that label with its own outcome.
"""

import datetime
import json
from dataclasses import dataclass, field
from datetime import UTC
from enum import Enum
from typing import Any, Dict, Mapping, Optional


class JobStatus(Enum):
    """Lifecycle states of a job"""
    PENDING = 'pending'
    RUNNING = 'running'
    COMPLETED = 'completed'
    FAILED = 'failed'
    CANCELLED = 'cancelled'

    @property
    def is_terminal(self) -> bool:
        """Completed and failed jobs accept no further mutation."""
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)

    def can_transition_to(self, target: 'JobStatus') -> bool:
        """
        Check whether moving from this status to ``target`` is allowed.

        The store does not enforce this graph; the scheduler and the
        cancel operation consult it before writing.
        """
        return target in _TRANSITIONS[self]

    def __str__(self) -> str:
        return self.value


# cancelled -> completed/failed: an in-flight handler outlives the cancel label
_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.RUNNING, JobStatus.CANCELLED, JobStatus.FAILED},
    JobStatus.RUNNING: {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED},
    JobStatus.CANCELLED: {JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
}

# Fields a caller may change through JobStore.update()
UPDATABLE_FIELDS = frozenset({
    'status', 'result', 'error', 'progress', 'total_items', 'completed_items'
})


def utc_now() -> datetime.datetime:
    return datetime.datetime.now(UTC)


def _decode_json(value):
    # asyncpg hands JSONB back as text unless a codec is registered
    if isinstance(value, (str, bytes)):
        return json.loads(value)
    return value


def _isoformat(value) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, datetime.datetime):
        return value.isoformat()
    return str(value)


@dataclass
class Job:
    id: str
    type: str
    status: JobStatus = JobStatus.PENDING
    payload: Dict[str, Any] = field(default_factory=dict)
    result: Optional[Any] = None
    error: Optional[str] = None
    progress: float = 0.0
    total_items: int = 0
    completed_items: int = 0
    created_at: datetime.datetime = field(default_factory=utc_now)
    updated_at: datetime.datetime = field(default_factory=utc_now)

    @classmethod
    def from_record(cls, row: Mapping[str, Any]) -> 'Job':
        """Build a Job from an asyncpg Record (or any mapping with column names)."""
        payload = _decode_json(row['payload'])
        return cls(
            id=row['id'],
            type=row['type'],
            status=JobStatus(row['status']),
            payload=payload if payload is not None else {},
            result=_decode_json(row['result']),
            error=row['error'],
            progress=float(row['progress']),
            total_items=int(row['total_items']),
            completed_items=int(row['completed_items']),
            created_at=row['created_at'],
            updated_at=row['updated_at'],
        )

    def to_dict(self) -> Dict[str, Any]:
        """JSON-ready representation using the public field names."""
        return {
            'id': self.id,
            'type': self.type,
            'status': self.status.value,
            'payload': self.payload,
            'result': self.result,
            'error': self.error,
            'progress': self.progress,
            'totalItems': self.total_items,
            'completedItems': self.completed_items,
            'createdAt': _isoformat(self.created_at),
            'updatedAt': _isoformat(self.updated_at),
        }
