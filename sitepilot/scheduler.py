"""
SitePilot Scheduler: a thin façade over the named job queues.

Phase code never touches a queue directly. It asks the scheduler to run a
phase, and the scheduler picks the queue, the attempt budget and the
backoff from config.
"""

from __future__ import annotations

import time
from typing import Any, Callable

from loguru import logger

from sitepilot.config_loader import QueuesConfig
from sitepilot.errors import QueueNotFound
from sitepilot.queue import QUEUE_NAMES, Job, JobCounts, JobQueue

PHASE_QUEUES: dict[str, str] = {
    "research": "build",
    "architecture": "build",
    "content": "build",
    "publish": "publish",
    "monitor": "monitor",
    "audit": "monitor",
    "optimize": "optimize",
    "fix": "optimize",
    "capability": "agent-tasks",
}


def build_queues(
    config: QueuesConfig,
    clock: Callable[[], float] = time.time,
) -> dict[str, JobQueue]:
    """Create one queue handle per known queue name for the configured backend."""
    queues: dict[str, JobQueue] = {}
    if config.backend == "redis":
        import redis

        from sitepilot.queue.redis_queue import RedisJobQueue

        client = redis.from_url(config.redis_url, decode_responses=True)
        for name in QUEUE_NAMES:
            queues[name] = RedisJobQueue(
                name,
                client,
                prefix=config.prefix,
                default_attempts=config.attempts_for(name),
                default_backoff_ms=config.backoff_for(name),
                lease_s=config.lease_s,
                clock=clock,
            )
    else:
        from sitepilot.queue.memory import InMemoryJobQueue

        for name in QUEUE_NAMES:
            queues[name] = InMemoryJobQueue(
                name,
                default_attempts=config.attempts_for(name),
                default_backoff_ms=config.backoff_for(name),
                clock=clock,
            )
    logger.debug(f"[QUEUES] {config.backend} backend, queues: {', '.join(queues)}")
    return queues


class Scheduler:
    def __init__(self, queues: dict[str, JobQueue], config: QueuesConfig | None = None):
        self.queues = queues
        self.config = config or QueuesConfig()

    def queue(self, name: str) -> JobQueue:
        try:
            return self.queues[name]
        except KeyError:
            raise QueueNotFound(f"Unknown queue: {name}") from None

    @property
    def names(self) -> list[str]:
        return list(self.queues)

    # -- enqueue ------------------------------------------------------------

    def enqueue(
        self,
        queue_name: str,
        job_name: str,
        payload: dict[str, Any],
        correlation_id: str,
        delay_ms: int = 0,
        attempts: int | None = None,
    ) -> Job:
        if not correlation_id:
            raise ValueError("Every job needs a correlation id")
        queue = self.queue(queue_name)
        job = queue.add(
            job_name,
            payload,
            correlation_id,
            delay_ms=delay_ms,
            attempts=attempts or self.config.attempts_for(queue_name),
            backoff_ms=self.config.backoff_for(queue_name),
        )
        logger.debug(
            f"[QUEUES] {queue_name}/{job_name} queued"
            + (f" in {delay_ms}ms" if delay_ms else "")
            + f" ({correlation_id})"
        )
        return job

    def schedule_phase(
        self,
        phase: str,
        payload: dict[str, Any],
        correlation_id: str,
        delay_ms: int = 0,
    ) -> Job:
        if phase not in PHASE_QUEUES:
            raise ValueError(f"Unknown phase: {phase}")
        return self.enqueue(
            PHASE_QUEUES[phase],
            phase,
            payload,
            correlation_id,
            delay_ms=delay_ms,
        )

    # -- inspect / control --------------------------------------------------

    def counts(self, queue_name: str) -> JobCounts:
        return self.queue(queue_name).counts()

    def pause(self, queue_name: str) -> None:
        self.queue(queue_name).pause()

    def resume(self, queue_name: str) -> None:
        self.queue(queue_name).resume()

    def drain(self, queue_name: str, delayed: bool = True) -> int:
        return self.queue(queue_name).drain(delayed=delayed)

    def failed_jobs(self, queue_name: str | None = None) -> list[Job]:
        names = [queue_name] if queue_name else self.names
        jobs: list[Job] = []
        for name in names:
            jobs.extend(self.queue(name).failed_jobs())
        return jobs

    def remove(self, queue_name: str, job_id: str) -> bool:
        return self.queue(queue_name).remove(job_id)
