"""
HTTP surface for the job queue: job management plus the event stream.

Routes expect ``app.state.job_manager`` and ``app.state.broadcaster`` to be
set (``create_app`` does this).
"""

import json
import logging
import traceback
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sse_starlette.sse import EventSourceResponse

from .errors import InvalidJobStateError, JobNotFoundError, JobValidationError
from .events import EventBroadcaster, QueueChannel, split_event
from .manager import JobManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}


class JobCreate(BaseModel):
    # Checked by JobManager.create_job, which answers 400 rather than 422
    type: Optional[Any] = None
    payload: Optional[Any] = None


def get_job_manager(request: Request) -> JobManager:
    return request.app.state.job_manager


def get_broadcaster(request: Request) -> EventBroadcaster:
    return request.app.state.broadcaster


@router.post("/jobs", status_code=201)
async def create_job(
    body: Optional[JobCreate] = None,
    manager: JobManager = Depends(get_job_manager),
) -> Dict[str, Any]:
    body = body or JobCreate()
    job = await manager.create_job(body.type, body.payload)
    return job.to_dict()


@router.get("/jobs")
async def list_jobs(
    status: Optional[str] = None,
    job_type: Optional[str] = Query(None, alias="type"),
    limit: Optional[int] = None,
    manager: JobManager = Depends(get_job_manager),
) -> List[Dict[str, Any]]:
    jobs = await manager.list_jobs(status=status, job_type=job_type, limit=limit)
    return [job.to_dict() for job in jobs]


@router.get("/jobs/{job_id}")
async def get_job(job_id: str, manager: JobManager = Depends(get_job_manager)) -> Dict[str, Any]:
    job = await manager.get_job(job_id)
    return job.to_dict()


@router.delete("/jobs/{job_id}")
async def cancel_job(job_id: str, manager: JobManager = Depends(get_job_manager)) -> Dict[str, Any]:
    job = await manager.cancel_job(job_id)
    return job.to_dict()


async def observer_stream(broadcaster: EventBroadcaster, channel: QueueChannel):
    """
    Yield events for one connected client until it disconnects.

    The first event is ``connected`` carrying the observer id. The stream
    ends when the client goes away (the response task is cancelled) or when
    the broadcaster drops a channel the client stopped reading.
    """
    observer_id = broadcaster.add_observer(channel)
    try:
        yield {"event": "connected", "data": json.dumps({"clientId": observer_id})}
        while True:
            message = await channel.get()
            if message is None:
                logger.debug(f"Event stream for observer {observer_id} closed")
                break
            event, data = split_event(message)
            yield {"event": event, "data": data}
    finally:
        channel.close()
        broadcaster.remove_observer(observer_id)


@router.get("/events")
async def stream_events(broadcaster: EventBroadcaster = Depends(get_broadcaster)) -> EventSourceResponse:
    return EventSourceResponse(
        observer_stream(broadcaster, QueueChannel()),
        headers=SSE_HEADERS,
        sep="\n",
    )


@router.get("/health")
async def health(
    request: Request,
    broadcaster: EventBroadcaster = Depends(get_broadcaster),
    manager: JobManager = Depends(get_job_manager),
) -> Dict[str, Any]:
    scheduler = getattr(request.app.state, "scheduler", None)
    return {
        "status": "ok",
        "observers": broadcaster.observer_count(),
        "scheduler_running": bool(scheduler and scheduler.is_running),
        "jobs": await manager.count_by_status(),
    }


# Error -> HTTP mapping

_EXCEPTION_STATUS = {
    JobNotFoundError: 404,
    JobValidationError: 400,
    InvalidJobStateError: 400,
}


def _make_handler(status_code: int):
    async def _handler(request: Request, exc: Exception) -> JSONResponse:
        return JSONResponse(status_code=status_code, content={"error": str(exc)})
    return _handler


def register_error_handlers(app: FastAPI):
    """Register exception handlers that render errors as ``{"error": message}``"""
    for exc_cls, status in _EXCEPTION_STATUS.items():
        app.add_exception_handler(exc_cls, _make_handler(status))

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception) -> JSONResponse:
        tb = "".join(traceback.format_exception(exc))
        logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}\n{tb}")
        return JSONResponse(status_code=500, content={"error": "Internal server error"})
