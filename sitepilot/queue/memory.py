"""
In-process JobQueue for tests and single-process runs.
"""

from __future__ import annotations

import threading
import time
from collections import OrderedDict, deque
from typing import Any, Callable

from loguru import logger

from sitepilot.models import utc_now
from sitepilot.queue import KEEP_COMPLETED, KEEP_FAILED, Job, JobCounts, JobState


class InMemoryJobQueue:
    def __init__(
        self,
        name: str,
        default_attempts: int = 3,
        default_backoff_ms: int = 1000,
        clock: Callable[[], float] = time.time,
    ):
        self.name = name
        self.default_attempts = default_attempts
        self.default_backoff_ms = default_backoff_ms
        self._clock = clock
        self._lock = threading.Lock()
        self._waiting: deque[Job] = deque()
        self._delayed: list[Job] = []
        self._active: dict[str, Job] = {}
        self._completed: deque[Job] = deque(maxlen=KEEP_COMPLETED)
        self._failed: OrderedDict[str, Job] = OrderedDict()
        self._paused = False
        self._closed = False

    def add(
        self,
        name: str,
        payload: dict[str, Any],
        correlation_id: str,
        delay_ms: int = 0,
        attempts: int | None = None,
        backoff_ms: int | None = None,
    ) -> Job:
        job = Job(
            queue=self.name,
            name=name,
            payload=payload,
            correlation_id=correlation_id,
            max_attempts=attempts or self.default_attempts,
            backoff_ms=backoff_ms if backoff_ms is not None else self.default_backoff_ms,
        )
        with self._lock:
            if delay_ms > 0:
                job.state = JobState.DELAYED
                job.run_at = self._clock() + delay_ms / 1000
                self._delayed.append(job)
            else:
                self._waiting.append(job)
        return job.model_copy()

    def _promote_due(self) -> None:
        now = self._clock()
        due = sorted((j for j in self._delayed if j.run_at <= now), key=lambda j: j.run_at)
        if not due:
            return
        self._delayed = [j for j in self._delayed if j.run_at > now]
        for job in due:
            job.state = JobState.WAITING
            self._waiting.append(job)

    def reserve(self) -> Job | None:
        with self._lock:
            if self._paused or self._closed:
                return None
            self._promote_due()
            if not self._waiting:
                return None
            job = self._waiting.popleft()
            job.state = JobState.ACTIVE
            job.attempts_made += 1
            self._active[job.id] = job
            return job.model_copy()

    def complete(self, job: Job, result: Any = None) -> None:
        with self._lock:
            stored = self._active.pop(job.id, job)
            stored.state = JobState.COMPLETED
            stored.result = result
            stored.finished_at = utc_now()
            self._completed.append(stored)

    def fail(self, job: Job, reason: str, retry: bool) -> JobState:
        with self._lock:
            stored = self._active.pop(job.id, job)
            stored.failed_reason = reason
            if retry and stored.attempts_made < stored.max_attempts:
                delay_ms = stored.retry_delay_ms()
                stored.state = JobState.DELAYED
                stored.run_at = self._clock() + delay_ms / 1000
                self._delayed.append(stored)
                logger.debug(f"[QUEUES] {self.name}/{stored.id} retry in {delay_ms}ms")
                return JobState.DELAYED

            stored.state = JobState.FAILED
            stored.finished_at = utc_now()
            self._failed[stored.id] = stored
            while len(self._failed) > KEEP_FAILED:
                self._failed.popitem(last=False)
            return JobState.FAILED

    def counts(self) -> JobCounts:
        with self._lock:
            return JobCounts(
                waiting=len(self._waiting),
                active=len(self._active),
                completed=len(self._completed),
                failed=len(self._failed),
                delayed=len(self._delayed),
                paused=self._paused,
            )

    def pause(self) -> None:
        with self._lock:
            self._paused = True

    def resume(self) -> None:
        with self._lock:
            self._paused = False

    def is_paused(self) -> bool:
        return self._paused

    def drain(self, delayed: bool = True) -> int:
        with self._lock:
            removed = len(self._waiting)
            self._waiting.clear()
            if delayed:
                removed += len(self._delayed)
                self._delayed.clear()
            return removed

    def clean(self, state: JobState) -> int:
        with self._lock:
            if state == JobState.COMPLETED:
                removed = len(self._completed)
                self._completed.clear()
            elif state == JobState.FAILED:
                removed = len(self._failed)
                self._failed.clear()
            elif state == JobState.DELAYED:
                removed = len(self._delayed)
                self._delayed.clear()
            elif state == JobState.WAITING:
                removed = len(self._waiting)
                self._waiting.clear()
            else:
                raise ValueError(f"Cannot clean {state.value} jobs")
            return removed

    def failed_jobs(self) -> list[Job]:
        with self._lock:
            return [j.model_copy() for j in self._failed.values()]

    def remove(self, job_id: str) -> bool:
        with self._lock:
            if self._failed.pop(job_id, None) is not None:
                return True
            before = len(self._waiting) + len(self._delayed)
            self._waiting = deque(j for j in self._waiting if j.id != job_id)
            self._delayed = [j for j in self._delayed if j.id != job_id]
            return len(self._waiting) + len(self._delayed) < before

    def close(self) -> None:
        with self._lock:
            self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed
