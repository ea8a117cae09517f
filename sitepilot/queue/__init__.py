"""
SitePilot job queues.

A `JobQueue` is one named, delay-capable queue. The queue owns retry
bookkeeping: attempts made, exponential backoff between attempts, and the
terminal failed set. Workers only report outcomes back to it.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Protocol

from pydantic import BaseModel, Field

from sitepilot.models import new_id, utc_now

QUEUE_NAMES: tuple[str, ...] = ("build", "publish", "monitor", "optimize", "agent-tasks")

# Retention caps for finished jobs
KEEP_COMPLETED = 100
KEEP_FAILED = 500


class JobState(str, Enum):
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class Job(BaseModel):
    id: str = Field(default_factory=new_id)
    queue: str
    name: str
    payload: dict[str, Any] = Field(default_factory=dict)
    correlation_id: str
    state: JobState = JobState.WAITING
    attempts_made: int = 0
    max_attempts: int = 3
    backoff_ms: int = 1000
    run_at: float = 0.0
    failed_reason: str | None = None
    result: Any = None
    created_at: str = Field(default_factory=utc_now)
    finished_at: str | None = None

    @property
    def project_id(self) -> str | None:
        return self.payload.get("project_id")

    def retry_delay_ms(self) -> int:
        """Exponential backoff before the next attempt."""
        return self.backoff_ms * 2 ** max(0, self.attempts_made - 1)


class JobCounts(BaseModel):
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0
    paused: bool = False


class JobQueue(Protocol):
    name: str

    def add(
        self,
        name: str,
        payload: dict[str, Any],
        correlation_id: str,
        delay_ms: int = 0,
        attempts: int | None = None,
        backoff_ms: int | None = None,
    ) -> Job: ...

    def reserve(self) -> Job | None:
        """Hand out the next due job as active, or None. Paused queues hand out nothing."""
        ...

    def complete(self, job: Job, result: Any = None) -> None: ...

    def fail(self, job: Job, reason: str, retry: bool) -> JobState:
        """Record a failed attempt; returns DELAYED if another attempt was scheduled."""
        ...

    def counts(self) -> JobCounts: ...
    def pause(self) -> None: ...
    def resume(self) -> None: ...
    def is_paused(self) -> bool: ...

    def drain(self, delayed: bool = True) -> int:
        """Drop waiting (and optionally delayed) jobs. Active jobs are left alone."""
        ...

    def clean(self, state: JobState) -> int: ...
    def failed_jobs(self) -> list[Job]: ...
    def remove(self, job_id: str) -> bool: ...
    def close(self) -> None: ...
