"""
Push notifications for job progress.

The broadcaster keeps a set of live observer channels and writes every event
to each of them. A channel whose write fails is dropped on the spot, so a
listener that vanished without closing its connection is pruned by the next
broadcast (the heartbeat guarantees there is one).

Events are framed as server-sent events::

    event: job:progress
    data: {"jobId": "...", "progress": 50.0, "completedItems": 5}

"""

import asyncio
import datetime
import json
import logging
import uuid
from datetime import UTC
from typing import Any, Dict, Optional, Protocol, Tuple

from .errors import ChannelClosedError

logger = logging.getLogger(__name__)


def format_event(event: str, data: Any) -> str:
    """Frame one event as a server-sent-events message"""
    return f"event: {event}\ndata: {json.dumps(data, default=str)}\n\n"


def split_event(message: str) -> Tuple[str, str]:
    """Split a framed message back into its event name and JSON data"""
    event_line, data_line = message.rstrip("\n").split("\n", 1)
    return event_line[len("event: "):], data_line[len("data: "):]


class EventChannel(Protocol):
    """Write-only handle to one connected listener"""

    def write(self, message: str) -> None: ...


class QueueChannel:
    """
    Channel that buffers messages in an asyncio queue for a streaming response.

    A consumer that stops reading eventually fills the queue; the next write
    closes the channel and raises ``asyncio.QueueFull``, so the broadcaster
    drops the observer and the reader sees the end of the stream.
    """

    def __init__(self, maxsize: int = 1000):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    def write(self, message: str) -> None:
        if self.closed:
            raise ChannelClosedError("Channel is closed")
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            self.close()
            raise

    async def get(self) -> Optional[str]:
        """Next message, or None once the channel has been closed"""
        return await self._queue.get()

    def close(self):
        if self.closed:
            return
        self.closed = True
        # Undelivered messages are dropped; the reader only needs to stop
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(None)


class EventBroadcaster:
    """Fan-out of named events to every connected observer"""

    def __init__(self):
        self._observers: Dict[str, EventChannel] = {}
        self.heartbeat_task: Optional[asyncio.Task] = None

    def add_observer(self, channel: EventChannel) -> str:
        observer_id = str(uuid.uuid4())
        self._observers[observer_id] = channel
        logger.debug(f"Observer connected: {observer_id} ({len(self._observers)} total)")
        return observer_id

    def remove_observer(self, observer_id: str):
        if self._observers.pop(observer_id, None) is not None:
            logger.debug(f"Observer removed: {observer_id} ({len(self._observers)} remaining)")

    def observer_count(self) -> int:
        return len(self._observers)

    def broadcast(self, event: str, data: Any):
        """
        Write one event to all observers.

        A failing channel is removed and delivery continues with the rest;
        nothing raised by a channel reaches the caller.
        """
        message = format_event(event, data)

        # Copy: failed writes remove entries while we iterate
        for observer_id, channel in list(self._observers.items()):
            try:
                channel.write(message)
            except Exception as e:
                logger.debug(f"Dropping observer {observer_id} after failed write: {e!r}")
                self.remove_observer(observer_id)

    def start_heartbeat(self, interval: float = 30.0):
        """Broadcast a ``heartbeat`` event every ``interval`` seconds"""
        self.stop_heartbeat()
        self.heartbeat_task = asyncio.create_task(self._heartbeat_loop(interval))
        logger.debug(f"Heartbeat started: every {interval}s")

    def stop_heartbeat(self):
        if self.heartbeat_task and not self.heartbeat_task.done():
            self.heartbeat_task.cancel()
        self.heartbeat_task = None

    async def _heartbeat_loop(self, interval: float):
        while True:
            await asyncio.sleep(interval)
            self.broadcast('heartbeat', {'time': datetime.datetime.now(UTC).isoformat()})
