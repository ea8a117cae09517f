import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List

from loguru import logger
from pydantic import BaseModel, Field

JOB_COMPLETED = "job.completed"
JOB_FAILED = "job.failed"
JOB_RETRYING = "job.retrying"
JOB_STALLED = "job.stalled"


class QueueEvent(BaseModel):
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    event_type: str
    queue: str
    payload: Dict[str, Any]


class EventBus:
    """A lightweight, synchronous event bus for queue and worker telemetry."""

    def __init__(self):
        self._subscribers: List[Callable[[QueueEvent], None]] = []

    def subscribe(self, callback: Callable[[QueueEvent], None]) -> None:
        """Register a callback to be executed when an event is emitted."""
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Callable[[QueueEvent], None]) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def emit(self, event_type: str, queue: str, payload: Dict[str, Any]) -> QueueEvent:
        """Construct and broadcast a QueueEvent to all subscribers."""
        event = QueueEvent(event_type=event_type, queue=queue, payload=payload)

        for subscriber in list(self._subscribers):
            try:
                subscriber(event)
            except Exception as e:
                # A broken subscriber must not fail the job that emitted the event
                logger.warning(f"[EVENTS] Subscriber {getattr(subscriber, '__name__', subscriber)} failed: {e}")

        return event
