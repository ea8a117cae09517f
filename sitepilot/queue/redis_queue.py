"""
Redis-backed JobQueue.

Key layout under `{prefix}:{queue}`:
  :jobs       hash   job id → job JSON while waiting, delayed or active
  :waiting    list   job ids, FIFO
  :delayed    zset   job id scored by the epoch second it becomes due
  :active     zset   job id scored by the epoch second its lease runs out
  :failed     hash   job id → job JSON (terminal)
  :completed  list   job JSON, newest first, capped
  :paused     string present while paused

Several worker processes may share one queue. Every move between these keys
happens in one MULTI/EXEC guarded by WATCH, so a job is handed out once and
a crash between steps cannot drop it. A reserved job holds a lease; when a
worker dies its lease expires and the job goes back to waiting (or to the
failed set once its attempts are spent).
"""

from __future__ import annotations

import time
from typing import Any, Callable

import redis
from loguru import logger

from sitepilot.models import utc_now
from sitepilot.queue import KEEP_COMPLETED, Job, JobCounts, JobState


class RedisJobQueue:
    def __init__(
        self,
        name: str,
        client: redis.Redis,
        prefix: str = "sitepilot",
        default_attempts: int = 3,
        default_backoff_ms: int = 1000,
        lease_s: float = 600.0,
        clock: Callable[[], float] = time.time,
    ):
        self.name = name
        self.client = client
        self.default_attempts = default_attempts
        self.default_backoff_ms = default_backoff_ms
        self.lease_s = lease_s
        self._clock = clock
        base = f"{prefix}:{name}"
        self._jobs = f"{base}:jobs"
        self._waiting = f"{base}:waiting"
        self._delayed = f"{base}:delayed"
        self._active = f"{base}:active"
        self._failed = f"{base}:failed"
        self._completed = f"{base}:completed"
        self._paused = f"{base}:paused"

    @classmethod
    def from_url(cls, name: str, url: str, **kwargs: Any) -> "RedisJobQueue":
        return cls(name, redis.from_url(url, decode_responses=True), **kwargs)

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
        pipe = self.client.pipeline()
        if delay_ms > 0:
            job.state = JobState.DELAYED
            job.run_at = self._clock() + delay_ms / 1000
            pipe.hset(self._jobs, job.id, job.model_dump_json())
            pipe.zadd(self._delayed, {job.id: job.run_at})
        else:
            pipe.hset(self._jobs, job.id, job.model_dump_json())
            pipe.rpush(self._waiting, job.id)
        pipe.execute()
        return job

    # -- housekeeping -------------------------------------------------------

    def _promote_due(self) -> None:
        with self.client.pipeline() as pipe:
            try:
                pipe.watch(self._delayed)
                due = pipe.zrangebyscore(self._delayed, 0, self._clock())
                if not due:
                    return
                pipe.multi()
                pipe.zrem(self._delayed, *due)
                pipe.rpush(self._waiting, *due)
                pipe.execute()
            except redis.WatchError:
                logger.debug(f"[QUEUES] {self.name}: delayed jobs promoted by another handle")

    def _recover_expired(self) -> None:
        """Return jobs whose lease ran out to waiting, or fail them when no attempts remain."""
        with self.client.pipeline() as pipe:
            try:
                pipe.watch(self._active)
                expired = pipe.zrangebyscore(self._active, 0, self._clock())
                if not expired:
                    return
                raws = pipe.hmget(self._jobs, expired)
                pipe.multi()
                pipe.zrem(self._active, *expired)
                for job_id, raw in zip(expired, raws):
                    if raw is None:
                        continue
                    job = Job.model_validate_json(raw)
                    if job.attempts_made >= job.max_attempts:
                        job.state = JobState.FAILED
                        job.failed_reason = (
                            f"RetriesExhausted: lease expired after {job.attempts_made} attempts"
                        )
                        job.finished_at = utc_now()
                        pipe.hdel(self._jobs, job_id)
                        pipe.hset(self._failed, job_id, job.model_dump_json())
                    else:
                        job.state = JobState.WAITING
                        pipe.hset(self._jobs, job_id, job.model_dump_json())
                        pipe.rpush(self._waiting, job_id)
                pipe.execute()
                logger.warning(f"[QUEUES] {self.name}: recovered {len(expired)} jobs with expired leases")
            except redis.WatchError:
                logger.debug(f"[QUEUES] {self.name}: expired leases recovered by another handle")

    # -- work ---------------------------------------------------------------

    def reserve(self) -> Job | None:
        if self.is_paused():
            return None
        self._recover_expired()
        self._promote_due()

        with self.client.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(self._waiting)
                    job_id = pipe.lindex(self._waiting, 0)
                    if job_id is None:
                        return None
                    raw = pipe.hget(self._jobs, job_id)
                    pipe.multi()
                    pipe.lpop(self._waiting)
                    if raw is None:
                        # removed between push and pop
                        pipe.execute()
                        continue
                    job = Job.model_validate_json(raw)
                    job.state = JobState.ACTIVE
                    job.attempts_made += 1
                    pipe.hset(self._jobs, job_id, job.model_dump_json())
                    pipe.zadd(self._active, {job_id: self._clock() + self.lease_s})
                    pipe.execute()
                    return job
                except redis.WatchError:
                    continue

    def complete(self, job: Job, result: Any = None) -> None:
        job = job.model_copy(update={
            "state": JobState.COMPLETED,
            "result": result,
            "finished_at": utc_now(),
        })
        pipe = self.client.pipeline()
        pipe.zrem(self._active, job.id)
        pipe.hdel(self._jobs, job.id)
        pipe.lpush(self._completed, job.model_dump_json())
        pipe.ltrim(self._completed, 0, KEEP_COMPLETED - 1)
        pipe.execute()

    def fail(self, job: Job, reason: str, retry: bool) -> JobState:
        job = job.model_copy(update={"failed_reason": reason})
        pipe = self.client.pipeline()
        pipe.zrem(self._active, job.id)

        if retry and job.attempts_made < job.max_attempts:
            delay_ms = job.retry_delay_ms()
            job.state = JobState.DELAYED
            job.run_at = self._clock() + delay_ms / 1000
            pipe.hset(self._jobs, job.id, job.model_dump_json())
            pipe.zadd(self._delayed, {job.id: job.run_at})
            pipe.execute()
            logger.debug(f"[QUEUES] {self.name}/{job.id} retry in {delay_ms}ms")
            return JobState.DELAYED

        job.state = JobState.FAILED
        job.finished_at = utc_now()
        pipe.hdel(self._jobs, job.id)
        pipe.hset(self._failed, job.id, job.model_dump_json())
        pipe.execute()
        return JobState.FAILED

    def counts(self) -> JobCounts:
        pipe = self.client.pipeline()
        pipe.llen(self._waiting)
        pipe.zcard(self._active)
        pipe.llen(self._completed)
        pipe.hlen(self._failed)
        pipe.zcard(self._delayed)
        pipe.exists(self._paused)
        waiting, active, completed, failed, delayed, paused = pipe.execute()
        return JobCounts(
            waiting=waiting,
            active=active,
            completed=completed,
            failed=failed,
            delayed=delayed,
            paused=bool(paused),
        )

    def pause(self) -> None:
        self.client.set(self._paused, "1")

    def resume(self) -> None:
        self.client.delete(self._paused)

    def is_paused(self) -> bool:
        return bool(self.client.exists(self._paused))

    def drain(self, delayed: bool = True) -> int:
        ids = list(self.client.lrange(self._waiting, 0, -1))
        if delayed:
            ids += list(self.client.zrange(self._delayed, 0, -1))
        pipe = self.client.pipeline()
        pipe.delete(self._waiting)
        if delayed:
            pipe.delete(self._delayed)
        if ids:
            pipe.hdel(self._jobs, *ids)
        pipe.execute()
        return len(ids)

    def clean(self, state: JobState) -> int:
        if state == JobState.COMPLETED:
            removed = self.client.llen(self._completed)
            self.client.delete(self._completed)
            return removed
        if state == JobState.FAILED:
            removed = self.client.hlen(self._failed)
            self.client.delete(self._failed)
            return removed
        if state == JobState.DELAYED:
            ids = self.client.zrange(self._delayed, 0, -1)
            if ids:
                self.client.hdel(self._jobs, *ids)
            self.client.delete(self._delayed)
            return len(ids)
        if state == JobState.WAITING:
            ids = self.client.lrange(self._waiting, 0, -1)
            if ids:
                self.client.hdel(self._jobs, *ids)
            self.client.delete(self._waiting)
            return len(ids)
        raise ValueError(f"Cannot clean {state.value} jobs")

    def failed_jobs(self) -> list[Job]:
        return [Job.model_validate_json(raw) for raw in self.client.hvals(self._failed)]

    def remove(self, job_id: str) -> bool:
        if self.client.hdel(self._failed, job_id):
            return True
        pipe = self.client.pipeline()
        pipe.lrem(self._waiting, 0, job_id)
        pipe.zrem(self._delayed, job_id)
        pipe.hdel(self._jobs, job_id)
        return any(pipe.execute())

    def close(self) -> None:
        self.client.close()
