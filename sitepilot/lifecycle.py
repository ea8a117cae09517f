"""
SitePilot Queue Health & Lifecycle Manager.

Treats the named queues and their workers as one unit: per-queue control,
health verdicts, aggregated metrics and a bounded graceful shutdown.
"""

from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Callable

from loguru import logger
from pydantic import BaseModel, Field

from sitepilot.config_loader import LifecycleConfig
from sitepilot.errors import QueueNotFound
from sitepilot.event_bus import JOB_COMPLETED, JOB_FAILED, JOB_RETRYING, JOB_STALLED, EventBus, QueueEvent
from sitepilot.queue import JobCounts, JobQueue, JobState
from sitepilot.worker import Worker


class QueueHealth(BaseModel):
    name: str
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0
    paused: bool = False
    healthy: bool = True


class WorkerHealth(BaseModel):
    name: str
    running: bool
    active: int = 0
    processed: int = 0
    failed: int = 0
    last_job_at: str | None = None


class HealthReport(BaseModel):
    healthy: bool
    queues: list[QueueHealth] = Field(default_factory=list)
    workers: list[WorkerHealth] = Field(default_factory=list)
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


def is_healthy(counts: JobCounts, threshold: float = 0.10) -> bool:
    """A queue with finished work is unhealthy once its failure rate reaches the threshold."""
    if counts.completed == 0:
        return True
    return counts.failed / (counts.failed + counts.completed) < threshold


class QueueManager:
    def __init__(
        self,
        queues: dict[str, JobQueue],
        config: LifecycleConfig | None = None,
        bus: EventBus | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.queues = queues
        self.config = config or LifecycleConfig()
        self.workers: dict[str, Worker] = {}
        self._sleep = sleep
        self._clock = clock
        if bus is not None:
            bus.subscribe(self._on_event)

    def register_worker(self, worker: Worker) -> None:
        self.workers[worker.name] = worker

    def _queue(self, name: str) -> JobQueue:
        try:
            return self.queues[name]
        except KeyError:
            raise QueueNotFound(f"Unknown queue: {name}") from None

    # -----------------------------------------------------------------------
    # Control
    # -----------------------------------------------------------------------

    def pause(self, name: str) -> None:
        self._queue(name).pause()
        logger.info(f"[QUEUES] {name} paused")

    def resume(self, name: str) -> None:
        self._queue(name).resume()
        logger.info(f"[QUEUES] {name} resumed")

    def clear(self, name: str) -> int:
        """Drop waiting and delayed jobs plus finished job records."""
        queue = self._queue(name)
        removed = queue.drain(delayed=True)
        removed += queue.clean(JobState.COMPLETED)
        removed += queue.clean(JobState.FAILED)
        logger.info(f"[QUEUES] {name} cleared ({removed} jobs)")
        return removed

    # -----------------------------------------------------------------------
    # Health
    # -----------------------------------------------------------------------

    def queue_health(self, name: str) -> QueueHealth:
        counts = self._queue(name).counts()
        return QueueHealth(
            name=name,
            **counts.model_dump(),
            healthy=is_healthy(counts, self.config.failure_threshold),
        )

    def all_queue_health(self) -> list[QueueHealth]:
        return [self.queue_health(name) for name in self.queues]

    def worker_health(self, name: str) -> WorkerHealth | None:
        worker = self.workers.get(name)
        if worker is None:
            return None
        return WorkerHealth(
            name=name,
            running=worker.is_running,
            active=worker.active_count,
            processed=worker.processed,
            failed=worker.failed,
            last_job_at=worker.last_job_at,
        )

    def all_worker_health(self) -> list[WorkerHealth]:
        return [h for h in (self.worker_health(n) for n in self.workers) if h is not None]

    def metrics(self) -> dict:
        queues = self.all_queue_health()
        workers = self.all_worker_health()
        return {
            "queues": {
                "total": len(queues),
                "healthy": sum(1 for q in queues if q.healthy),
                "waiting": sum(q.waiting for q in queues),
                "active": sum(q.active for q in queues),
                "completed": sum(q.completed for q in queues),
                "failed": sum(q.failed for q in queues),
                "delayed": sum(q.delayed for q in queues),
            },
            "workers": {
                "total": len(workers),
                "running": sum(1 for w in workers if w.running),
                "processed": sum(w.processed for w in workers),
                "failed": sum(w.failed for w in workers),
            },
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    def health_check(self) -> HealthReport:
        queues = self.all_queue_health()
        workers = self.all_worker_health()
        healthy = all(q.healthy for q in queues) and all(w.running for w in workers)
        return HealthReport(healthy=healthy, queues=queues, workers=workers)

    # -----------------------------------------------------------------------
    # Shutdown
    # -----------------------------------------------------------------------

    def _active_total(self) -> int:
        return sum(q.counts().active for q in self.queues.values())

    def _wait_for_drain(self) -> bool:
        deadline = self._clock() + self.config.shutdown_timeout_s
        while True:
            active = self._active_total()
            if active == 0:
                return True
            if self._clock() >= deadline:
                logger.warning(f"[QUEUES] Shutdown timeout with {active} jobs still active")
                return False
            logger.info(f"[QUEUES] Waiting for {active} active jobs")
            self._sleep(self.config.poll_interval_s)

    def _close_all(self) -> None:
        for worker in self.workers.values():
            try:
                worker.close()
            except Exception as e:
                logger.error(f"[QUEUES] Closing worker {worker.name} failed: {e}")
        for name, queue in self.queues.items():
            try:
                queue.close()
            except Exception as e:
                logger.error(f"[QUEUES] Closing queue {name} failed: {e}")

    def graceful_shutdown(self) -> bool:
        """Pause, wait for in-flight jobs (bounded), then close everything.

        Returns:
            bool: True if every active job finished before the deadline.
        """
        logger.info("[QUEUES] Graceful shutdown starting")
        drained = False
        try:
            for name, queue in self.queues.items():
                try:
                    queue.pause()
                    logger.debug(f"[QUEUES] {name} paused for shutdown")
                except Exception as e:
                    logger.error(f"[QUEUES] Pausing {name} failed: {e}")
            drained = self._wait_for_drain()
        except Exception as e:
            # counts unavailable, so nothing proves the queues drained
            logger.error(f"[QUEUES] Drain check failed: {e}")
        finally:
            self._close_all()

        logger.info("[QUEUES] Shutdown complete" + ("" if drained else " (not drained)"))
        return drained

    # -----------------------------------------------------------------------
    # Events
    # -----------------------------------------------------------------------

    def _on_event(self, event: QueueEvent) -> None:
        job = event.payload.get("job_id")
        name = event.payload.get("job_name")
        if event.event_type == JOB_COMPLETED:
            logger.debug(f"[QUEUES] {event.queue}/{name} {job} completed")
        elif event.event_type == JOB_FAILED:
            logger.error(f"[QUEUES] {event.queue}/{name} {job} failed: {event.payload.get('reason')}")
        elif event.event_type == JOB_RETRYING:
            logger.warning(f"[QUEUES] {event.queue}/{name} {job} will retry")
        elif event.event_type == JOB_STALLED:
            logger.warning(f"[QUEUES] {event.queue}/{name} {job} stalled")
