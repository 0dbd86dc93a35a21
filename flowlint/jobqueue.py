"""Durable review job queue.

The API enqueues :class:`ReviewJob` descriptors; workers reserve, process
and then complete or fail them. Delivery is at-least-once. Each job is keyed
by :attr:`ReviewJob.job_id` and at most one entry per key exists from
enqueue until the job is completed or dropped after its last attempt, so
identical webhooks (e.g. ``pull_request.opened`` and ``check_suite.requested``
for the same sha) collapse into one job.

Two backends implement the same contract: :class:`RedisJobQueue` for
deployments and :class:`MemoryJobQueue` for tests and single-process runs.
"""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Deque, Dict, List, Optional, Tuple

import redis

from .config import Settings
from .models import ReviewJob

log = logging.getLogger("flowlint.queue")


class QueueError(RuntimeError):
    """The broker could not accept or hand out work."""


class EnqueueStatus(str, Enum):
    QUEUED = "queued"
    DUPLICATE = "duplicate"


@dataclass(frozen=True)
class EnqueueResult:
    status: EnqueueStatus
    job_id: str

    @property
    def duplicate(self) -> bool:
        return self.status is EnqueueStatus.DUPLICATE


@dataclass(frozen=True)
class Delivery:
    job_id: str
    job: ReviewJob
    attempt: int


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    backoff_s: float = 2.0

    def delay_after(self, attempt: int) -> float:
        """Seconds to wait before the attempt that follows ``attempt`` (1-based)."""
        return self.backoff_s * (2 ** (max(attempt, 1) - 1))

    def should_retry(self, attempt: int) -> bool:
        return attempt < self.attempts


class JobQueue(ABC):
    """Pluggable work queue. Workers depend on this, never on a backend."""

    def __init__(self, retry: Optional[RetryPolicy] = None):
        self.retry = retry or RetryPolicy()

    @abstractmethod
    def enqueue(self, job: ReviewJob) -> EnqueueResult:
        """Add ``job`` unless an entry with the same job id is pending.

        Returns a DUPLICATE result (never raises) for an already pending key.
        Broker failures raise QueueError.
        """

    @abstractmethod
    def reserve(self, timeout: float = 1.0) -> Optional[Delivery]:
        """Hand out the next ready job, waiting up to ``timeout`` seconds."""

    @abstractmethod
    def complete(self, delivery: Delivery) -> None:
        """Remove a processed job; its key becomes available again."""

    @abstractmethod
    def fail(self, delivery: Delivery, error: BaseException) -> bool:
        """Record a failed attempt. Returns True if a retry was scheduled,
        False if the job was dropped after its last attempt."""

    @abstractmethod
    def waiting_count(self) -> int:
        """Number of jobs ready and waiting for a worker."""

    @abstractmethod
    def ping(self) -> None:
        """Raise QueueError if the broker is unreachable."""

    def close(self) -> None:
        """Release broker connections. Default is a no-op."""


def enqueue_review(queue: JobQueue, job: ReviewJob) -> EnqueueResult:
    log.info("enqueueing review job job=%s repo=%s pr=%s sha=%s", job.job_id, job.repo, job.pr_number, job.short_sha)
    result = queue.enqueue(job)
    if result.duplicate:
        log.debug("job already exists (deduplication) job=%s", job.job_id)
    return result


# ---------------- In-memory backend ----------------

class MemoryJobQueue(JobQueue):
    def __init__(self, retry: Optional[RetryPolicy] = None, clock: Callable[[], float] = time.monotonic):
        super().__init__(retry)
        self._clock = clock
        self._cond = threading.Condition()
        self._jobs: Dict[str, ReviewJob] = {}
        self._attempts: Dict[str, int] = {}
        self._wait: Deque[str] = deque()
        self._active: List[str] = []
        self._delayed: List[Tuple[float, str]] = []
        self._closed = False

    def enqueue(self, job: ReviewJob) -> EnqueueResult:
        with self._cond:
            if self._closed:
                raise QueueError("queue is closed")
            if job.job_id in self._jobs:
                return EnqueueResult(EnqueueStatus.DUPLICATE, job.job_id)
            self._jobs[job.job_id] = job
            self._wait.append(job.job_id)
            self._cond.notify()
        return EnqueueResult(EnqueueStatus.QUEUED, job.job_id)

    def reserve(self, timeout: float = 1.0) -> Optional[Delivery]:
        deadline = self._clock() + max(timeout, 0)
        with self._cond:
            while True:
                self._promote_due()
                if self._wait:
                    job_id = self._wait.popleft()
                    self._active.append(job_id)
                    attempt = self._attempts.get(job_id, 0) + 1
                    self._attempts[job_id] = attempt
                    return Delivery(job_id, self._jobs[job_id], attempt)
                remaining = deadline - self._clock()
                if remaining <= 0 or self._closed:
                    return None
                self._cond.wait(min(remaining, 0.05))

    def complete(self, delivery: Delivery) -> None:
        with self._cond:
            self._forget(delivery.job_id)

    def fail(self, delivery: Delivery, error: BaseException) -> bool:
        with self._cond:
            if delivery.job_id in self._active:
                self._active.remove(delivery.job_id)
            if self.retry.should_retry(delivery.attempt):
                ready_at = self._clock() + self.retry.delay_after(delivery.attempt)
                self._delayed.append((ready_at, delivery.job_id))
                return True
            self._forget(delivery.job_id)
            return False

    def waiting_count(self) -> int:
        with self._cond:
            return len(self._wait)

    def delayed_count(self) -> int:
        with self._cond:
            return len(self._delayed)

    def pending_ids(self) -> List[str]:
        with self._cond:
            return list(self._jobs)

    def ping(self) -> None:
        if self._closed:
            raise QueueError("queue is closed")

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def _promote_due(self) -> None:
        now = self._clock()
        due = [item for item in self._delayed if item[0] <= now]
        for item in sorted(due):
            self._delayed.remove(item)
            self._wait.append(item[1])

    def _forget(self, job_id: str) -> None:
        if job_id in self._active:
            self._active.remove(job_id)
        self._jobs.pop(job_id, None)
        self._attempts.pop(job_id, None)


# ---------------- Redis backend ----------------

# KEYS: jobs hash, wait list. ARGV: job id, payload.
_ENQUEUE_LUA = """
if redis.call('HSETNX', KEYS[1], ARGV[1], ARGV[2]) == 0 then
  return 0
end
redis.call('LPUSH', KEYS[2], ARGV[1])
return 1
"""

# KEYS: delayed zset, wait list. ARGV: now.
_PROMOTE_LUA = """
local due = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1])
for _, id in ipairs(due) do
  redis.call('ZREM', KEYS[1], id)
  redis.call('LPUSH', KEYS[2], id)
end
return #due
"""

# KEYS: active list, wait list, leases zset. ARGV: now, stalled_after.
# An active id without a lease is stamped now and left for a later pass.
_REQUEUE_LUA = """
local ids = redis.call('LRANGE', KEYS[1], 0, -1)
local now = tonumber(ARGV[1])
local moved = 0
for _, id in ipairs(ids) do
  local since = redis.call('ZSCORE', KEYS[3], id)
  if not since then
    redis.call('ZADD', KEYS[3], now, id)
  elseif now - tonumber(since) >= tonumber(ARGV[2]) then
    if redis.call('LREM', KEYS[1], 1, id) == 1 then
      redis.call('RPUSH', KEYS[2], id)
      redis.call('ZREM', KEYS[3], id)
      moved = moved + 1
    end
  end
end
return moved
"""


class RedisJobQueue(JobQueue):
    """Redis-backed queue.

    Layout under ``<name>:``: ``jobs`` (hash id -> payload, the dedup set),
    ``attempts`` (hash id -> attempt count), ``wait`` (list, LPUSH/right pop),
    ``active`` (list of reserved ids), ``leases`` (zset id -> reserve time)
    and ``delayed`` (zset id -> ready time).
    """

    def __init__(self, client, name: str = "review", retry: Optional[RetryPolicy] = None,
                 clock: Callable[[], float] = time.time):
        super().__init__(retry)
        self.client = client
        self.name = name
        self._clock = clock
        self._enqueue = client.register_script(_ENQUEUE_LUA)
        self._promote = client.register_script(_PROMOTE_LUA)
        self._requeue = client.register_script(_REQUEUE_LUA)

    @classmethod
    def from_url(cls, url: str, name: str = "review", retry: Optional[RetryPolicy] = None) -> "RedisJobQueue":
        return cls(redis.Redis.from_url(url, decode_responses=True), name=name, retry=retry)

    def _key(self, part: str) -> str:
        return f"{self.name}:{part}"

    def enqueue(self, job: ReviewJob) -> EnqueueResult:
        try:
            added = self._enqueue(
                keys=[self._key("jobs"), self._key("wait")],
                args=[job.job_id, job.model_dump_json()],
            )
        except redis.RedisError as e:
            raise QueueError(f"enqueue failed: {e}") from e
        status = EnqueueStatus.QUEUED if int(added) == 1 else EnqueueStatus.DUPLICATE
        return EnqueueResult(status, job.job_id)

    def reserve(self, timeout: float = 1.0) -> Optional[Delivery]:
        try:
            self._promote(keys=[self._key("delayed"), self._key("wait")], args=[self._clock()])
            # BLMOVE treats 0 as "block forever"
            if timeout > 0:
                job_id = self.client.blmove(self._key("wait"), self._key("active"), timeout, "RIGHT", "LEFT")
            else:
                job_id = self.client.lmove(self._key("wait"), self._key("active"), "RIGHT", "LEFT")
            if job_id is None:
                return None
            payload = self.client.hget(self._key("jobs"), job_id)
            if payload is None:
                log.warning("dropping orphaned queue entry job=%s", job_id)
                self.client.lrem(self._key("active"), 1, job_id)
                return None
            self.client.zadd(self._key("leases"), {job_id: self._clock()})
            attempt = int(self.client.hincrby(self._key("attempts"), job_id, 1))
        except redis.RedisError as e:
            raise QueueError(f"reserve failed: {e}") from e
        return Delivery(job_id, ReviewJob.model_validate_json(payload), attempt)

    def complete(self, delivery: Delivery) -> None:
        pipe = self.client.pipeline()
        pipe.lrem(self._key("active"), 1, delivery.job_id)
        pipe.zrem(self._key("leases"), delivery.job_id)
        pipe.hdel(self._key("jobs"), delivery.job_id)
        pipe.hdel(self._key("attempts"), delivery.job_id)
        try:
            pipe.execute()
        except redis.RedisError as e:
            raise QueueError(f"complete failed: {e}") from e

    def fail(self, delivery: Delivery, error: BaseException) -> bool:
        if not self.retry.should_retry(delivery.attempt):
            self.complete(delivery)
            return False
        ready_at = self._clock() + self.retry.delay_after(delivery.attempt)
        pipe = self.client.pipeline()
        pipe.lrem(self._key("active"), 1, delivery.job_id)
        pipe.zrem(self._key("leases"), delivery.job_id)
        pipe.zadd(self._key("delayed"), {delivery.job_id: ready_at})
        try:
            pipe.execute()
        except redis.RedisError as e:
            raise QueueError(f"scheduling retry failed: {e}") from e
        log.info("retry scheduled job=%s attempt=%d in=%.1fs", delivery.job_id, delivery.attempt, ready_at - self._clock())
        return True

    def requeue_active(self, stalled_after_s: float = 900.0) -> int:
        """Return abandoned jobs to the wait list (worker start-up).

        Only reservations older than ``stalled_after_s`` move, so jobs other
        live workers are still processing stay where they are.
        """
        try:
            moved = int(self._requeue(
                keys=[self._key("active"), self._key("wait"), self._key("leases")],
                args=[self._clock(), stalled_after_s],
            ))
        except redis.RedisError as e:
            raise QueueError(f"requeue failed: {e}") from e
        if moved:
            log.warning("requeued %d stalled job(s) queue=%s", moved, self.name)
        return moved

    def waiting_count(self) -> int:
        return int(self.client.llen(self._key("wait")))

    def ping(self) -> None:
        try:
            self.client.ping()
        except redis.RedisError as e:
            raise QueueError(f"broker unreachable: {e}") from e

    def close(self) -> None:
        self.client.close()


def queue_from_settings(settings: Settings) -> RedisJobQueue:
    return RedisJobQueue.from_url(
        settings.redis_url,
        name=settings.queue_name,
        retry=RetryPolicy(attempts=settings.job_attempts, backoff_s=settings.job_backoff_s),
    )
