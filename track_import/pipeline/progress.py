"""Progress events published by the orchestrator.

Events are immutable values. They are delivered synchronously to
registered callbacks right after every state change, and queued for async
subscribers (e.g. the NDJSON event stream).
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass

from track_import.pipeline.jobs import JobSnapshot

logger = logging.getLogger(__name__)

SUBSCRIBER_QUEUE_SIZE = 1000


@dataclass(frozen=True)
class BatchTally:
    """Aggregate counts emitted after each job of a batch finishes or is skipped."""

    batch_id: uuid.UUID
    completed: int
    failed: int
    total: int
    skipped: int = 0


@dataclass(frozen=True)
class JobSkipped:
    """A job left its batch without running because the batch was cancelled."""

    job_id: uuid.UUID
    batch_id: uuid.UUID
    source_ref: str


@dataclass(frozen=True)
class AuthExpiredNotice:
    """Global, rate-limited signal that the remote account needs re-authentication."""

    message: str


ProgressEvent = JobSnapshot | JobSkipped | BatchTally | AuthExpiredNotice
Listener = Callable[[ProgressEvent], None]


class ProgressChannel:
    def __init__(self, queue_size: int = SUBSCRIBER_QUEUE_SIZE) -> None:
        self._listeners: list[Listener] = []
        self._queues: set[asyncio.Queue[ProgressEvent]] = set()
        self._queue_size = queue_size

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """Register a synchronous callback. Returns a function that removes it."""
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def publish(self, event: ProgressEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Progress listener %r failed", listener)
        for queue in self._queues:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("Progress subscriber queue full, dropping event")

    async def subscribe(self) -> AsyncIterator[ProgressEvent]:
        """Yield every event published after subscription, until the consumer stops."""
        queue: asyncio.Queue[ProgressEvent] = asyncio.Queue(maxsize=self._queue_size)
        self._queues.add(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._queues.discard(queue)

    @property
    def subscriber_count(self) -> int:
        return len(self._queues)


class AuthNotifier:
    """Publishes at most one ``AuthExpiredNotice`` per ``interval_seconds``."""

    def __init__(
        self,
        channel: ProgressChannel,
        interval_seconds: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._channel = channel
        self.interval_seconds = interval_seconds
        self._clock = clock
        self._last: float | None = None

    def notify(self, message: str = "Remote storage session expired. Please reconnect.") -> bool:
        now = self._clock()
        if self._last is not None and now - self._last < self.interval_seconds:
            return False
        self._last = now
        logger.warning("Auth expired notice: %s", message)
        self._channel.publish(AuthExpiredNotice(message=message))
        return True
