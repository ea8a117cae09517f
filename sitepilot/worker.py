"""
SitePilot Worker

One worker owns one named queue. A dispatcher thread reserves jobs while
there is spare capacity and hands them to a thread pool sized by the
queue's concurrency. Each job runs the phase handler and reports back:

  - success              → queue.complete
  - non-retryable error  → queue.fail(retry=False), terminal at once
  - retryable error      → queue.fail(retry=True); the queue applies backoff
  - last attempt spent   → terminal, reason recorded as RetriesExhausted
"""

from __future__ import annotations

import concurrent.futures
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable

from loguru import logger

from sitepilot.errors import RetriesExhausted, is_retryable
from sitepilot.event_bus import JOB_COMPLETED, JOB_FAILED, JOB_RETRYING, JOB_STALLED, EventBus
from sitepilot.queue import Job, JobQueue, JobState

JobHandler = Callable[[Job], Any]


class Worker:
    def __init__(
        self,
        queue: JobQueue,
        handler: JobHandler,
        concurrency: int = 1,
        bus: EventBus | None = None,
        poll_interval_s: float = 0.5,
        stall_timeout_s: float = 30.0,
    ):
        self.queue = queue
        self.handler = handler
        self.concurrency = max(1, concurrency)
        self.bus = bus
        self.poll_interval_s = poll_interval_s
        self.stall_timeout_s = stall_timeout_s

        self.processed = 0
        self.failed = 0
        self.last_job_at: str | None = None

        self._lock = threading.Lock()
        self._active: dict[str, tuple[Job, float]] = {}
        self._stalled: set[str] = set()
        self._running = False
        self._stop = threading.Event()
        self._dispatcher: threading.Thread | None = None
        self._executor: concurrent.futures.ThreadPoolExecutor | None = None

    @property
    def name(self) -> str:
        return self.queue.name

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def active_count(self) -> int:
        with self._lock:
            return len(self._active)

    # -----------------------------------------------------------------------
    # Execution
    # -----------------------------------------------------------------------

    def process_next(self) -> Job | None:
        """Reserve and run one job on the calling thread. None if nothing was due."""
        job = self.queue.reserve()
        if job is None:
            return None
        return self._execute(job)

    def _execute(self, job: Job) -> Job:
        with self._lock:
            self._active[job.id] = (job, time.monotonic())
        log = logger.bind(correlation_id=job.correlation_id, project_id=job.project_id)

        try:
            try:
                result = self.handler(job)
            except Exception as e:
                return self._handle_failure(job, e)

            self.queue.complete(job, _jsonable(result))
            with self._lock:
                self.processed += 1
            log.debug(f"[WORKER] {self.name}/{job.name} {job.id} completed")
            self._emit(JOB_COMPLETED, job, {})
            return job.model_copy(update={"state": JobState.COMPLETED})
        finally:
            with self._lock:
                self._active.pop(job.id, None)
                self._stalled.discard(job.id)
                self.last_job_at = datetime.now(timezone.utc).isoformat()

    def _handle_failure(self, job: Job, error: Exception) -> Job:
        log = logger.bind(correlation_id=job.correlation_id, project_id=job.project_id)
        retry = is_retryable(error)
        reason = f"{type(error).__name__}: {error}"

        if retry and job.attempts_made >= job.max_attempts:
            exhausted = RetriesExhausted(
                f"{job.name} failed after {job.attempts_made} attempts; last error {reason}",
                job.attempts_made,
            )
            reason = f"{type(exhausted).__name__}: {exhausted}"
            retry = False

        state = self.queue.fail(job, reason, retry)
        if state == JobState.DELAYED:
            log.warning(
                f"[WORKER] {self.name}/{job.name} attempt {job.attempts_made}/{job.max_attempts} failed, retrying: {reason}"
            )
            self._emit(JOB_RETRYING, job, {"reason": reason, "attempt": job.attempts_made})
        else:
            with self._lock:
                self.failed += 1
            log.error(f"[WORKER] {self.name}/{job.name} {job.id} failed: {reason}")
            self._emit(JOB_FAILED, job, {"reason": reason, "attempts": job.attempts_made})
        return job.model_copy(update={"state": state, "failed_reason": reason})

    def _emit(self, event_type: str, job: Job, extra: dict[str, Any]) -> None:
        if self.bus is None:
            return
        self.bus.emit(event_type, self.name, {
            "job_id": job.id,
            "job_name": job.name,
            "correlation_id": job.correlation_id,
            "project_id": job.project_id,
            **extra,
        })

    # -----------------------------------------------------------------------
    # Background loop
    # -----------------------------------------------------------------------

    def start(self) -> None:
        if self._running:
            return
        self._stop.clear()
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=self.concurrency, thread_name_prefix=f"worker-{self.name}",
        )
        self._dispatcher = threading.Thread(
            target=self._loop, name=f"dispatch-{self.name}", daemon=True,
        )
        self._running = True
        self._dispatcher.start()
        logger.info(f"[WORKER] {self.name} started (concurrency {self.concurrency})")

    def _loop(self) -> None:
        while not self._stop.is_set():
            self._check_stalled()
            if self.active_count >= self.concurrency:
                self._stop.wait(self.poll_interval_s)
                continue
            job = self.queue.reserve()
            if job is None:
                self._stop.wait(self.poll_interval_s)
                continue
            assert self._executor is not None
            with self._lock:
                self._active[job.id] = (job, time.monotonic())
            self._executor.submit(self._execute, job)

    def _check_stalled(self) -> None:
        now = time.monotonic()
        with self._lock:
            stalled = [
                job for job_id, (job, started) in self._active.items()
                if now - started > self.stall_timeout_s and job_id not in self._stalled
            ]
            self._stalled.update(job.id for job in stalled)
        for job in stalled:
            self._emit(JOB_STALLED, job, {"running_s": self.stall_timeout_s})

    def close(self) -> None:
        """Stop taking jobs and release the pool. Running jobs are not interrupted."""
        self._stop.set()
        if self._dispatcher is not None:
            self._dispatcher.join(timeout=self.poll_interval_s * 2 + 1)
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
        self._running = False
        logger.info(f"[WORKER] {self.name} closed")


def _jsonable(result: Any) -> Any:
    if hasattr(result, "model_dump"):
        return result.model_dump()
    return result
