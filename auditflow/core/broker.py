"""Durable, priority-aware job queues with leases and delayed redelivery.

Both brokers share one contract:

* ``enqueue`` places a job id on a named queue with a priority tier, optionally
  delayed;
* ``dequeue`` hands out a :class:`Lease` that stays valid for the visibility
  timeout; an expired lease makes the job deliverable again with ``attempt + 1``;
* ``ack`` removes a leased job for good, ``nack`` schedules it again after a
  delay with ``attempt + 1``.

Strictly higher priorities are delivered first, FIFO within a tier.
"""

from __future__ import annotations

import heapq
import itertools
import threading
import time
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Protocol
from uuid import uuid4

import structlog
from redis import Redis
from redis.client import Pipeline
from redis.exceptions import WatchError

from .config import Settings

LOGGER = structlog.get_logger(__name__)

IMPORT_QUEUE = "imports"
EXPORT_QUEUE = "exports"


class Priority(str, Enum):
    """Priority tiers accepted at submission."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def weight(self) -> int:
        return _PRIORITY_WEIGHTS[self]

    @classmethod
    def coerce(cls, value: "Priority | str | None") -> "Priority":
        """Return the matching tier, falling back to ``normal``."""

        if isinstance(value, Priority):
            return value
        try:
            return cls(str(value or "").strip().lower())
        except ValueError:
            return cls.NORMAL


_PRIORITY_WEIGHTS = {
    Priority.LOW: 1,
    Priority.NORMAL: 5,
    Priority.HIGH: 10,
    Priority.CRITICAL: 20,
}
_MAX_WEIGHT = max(_PRIORITY_WEIGHTS.values())


@dataclass(frozen=True, slots=True)
class QueuePolicy:
    """Concurrency and retry settings for one queue class."""

    name: str
    concurrency: int
    max_attempts: int = 3
    backoff_seconds: float = 2.0
    backoff_max_seconds: float = 300.0
    visibility_timeout: float = 300.0

    def backoff(self, attempt: int) -> float:
        """Return the delay before re-running a job whose ``attempt`` just failed."""

        delay = self.backoff_seconds * (2 ** max(attempt - 1, 0))
        return min(delay, self.backoff_max_seconds)


def default_policies(settings: Settings) -> dict[str, QueuePolicy]:
    """Return the import and export queue policies derived from settings."""

    shared = {
        "max_attempts": settings.job_max_attempts,
        "backoff_seconds": settings.job_backoff_seconds,
        "backoff_max_seconds": settings.job_backoff_max_seconds,
        "visibility_timeout": settings.visibility_timeout_seconds,
    }
    return {
        IMPORT_QUEUE: QueuePolicy(
            name=IMPORT_QUEUE, concurrency=settings.import_concurrency, **shared
        ),
        EXPORT_QUEUE: QueuePolicy(
            name=EXPORT_QUEUE, concurrency=settings.export_concurrency, **shared
        ),
    }


@dataclass(frozen=True, slots=True)
class Lease:
    """A time-bounded claim on a delivered job."""

    job_id: str
    queue: str
    token: str
    attempt: int
    priority: Priority
    deadline: float


class QueueBroker(Protocol):
    """Contract shared by the in-memory and Redis brokers."""

    def enqueue(
        self,
        job_id: str,
        queue: str,
        priority: Priority | str = Priority.NORMAL,
        *,
        delay: float = 0.0,
        attempt: int = 1,
    ) -> bool: ...

    def dequeue(
        self,
        queue: str,
        *,
        timeout: float = 0.0,
        visibility_timeout: float | None = None,
    ) -> Lease | None: ...

    def ack(self, lease: Lease) -> bool: ...

    def nack(self, lease: Lease, delay: float = 0.0) -> bool: ...

    def extend(self, lease: Lease, seconds: float | None = None) -> bool: ...

    def stats(self, queue: str) -> dict[str, int]: ...

    def purge(self, queue: str) -> int: ...


def priority_score(priority: Priority, enqueued_at: float) -> float:
    """Return a sorted-set score ordering by priority tier, then arrival."""

    return (_MAX_WEIGHT - priority.weight) * 10**13 + int(enqueued_at * 1000)


@dataclass
class _Message:
    job_id: str
    queue: str
    priority: Priority
    attempt: int
    available_at: float
    token: str | None = None
    deadline: float | None = None
    seq: int = field(default=0)


class InMemoryBroker:
    """Thread-safe single-process broker used for local runs and tests."""

    def __init__(
        self,
        *,
        visibility_timeout: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.visibility_timeout = visibility_timeout
        self._clock = clock
        self._cond = threading.Condition()
        self._seq = itertools.count()
        self._messages: dict[tuple[str, str], _Message] = {}
        self._ready: dict[str, list[tuple[int, int, str]]] = defaultdict(list)
        self._delayed: dict[str, list[_Message]] = defaultdict(list)
        self._inflight: dict[str, dict[str, _Message]] = defaultdict(dict)

    def enqueue(
        self,
        job_id: str,
        queue: str,
        priority: Priority | str = Priority.NORMAL,
        *,
        delay: float = 0.0,
        attempt: int = 1,
    ) -> bool:
        tier = Priority.coerce(priority)
        with self._cond:
            if (queue, job_id) in self._messages:
                LOGGER.warning("queue_duplicate_enqueue_ignored", job_id=job_id, queue=queue)
                return False
            message = _Message(
                job_id=job_id,
                queue=queue,
                priority=tier,
                attempt=attempt,
                available_at=self._clock() + max(delay, 0.0),
            )
            self._messages[(queue, job_id)] = message
            self._schedule(message, delay)
            self._cond.notify_all()
        LOGGER.info(
            "job_enqueued", job_id=job_id, queue=queue, priority=tier.value, delay=delay
        )
        return True

    def dequeue(
        self,
        queue: str,
        *,
        timeout: float = 0.0,
        visibility_timeout: float | None = None,
    ) -> Lease | None:
        wait_until = time.monotonic() + max(timeout, 0.0)
        lease_seconds = visibility_timeout or self.visibility_timeout
        with self._cond:
            while True:
                now = self._clock()
                self._promote(queue, now)
                self._reclaim(queue, now)
                heap = self._ready[queue]
                if heap:
                    _, _, job_id = heapq.heappop(heap)
                    message = self._messages[(queue, job_id)]
                    message.token = uuid4().hex
                    message.deadline = now + lease_seconds
                    self._inflight[queue][job_id] = message
                    return Lease(
                        job_id=job_id,
                        queue=queue,
                        token=message.token,
                        attempt=message.attempt,
                        priority=message.priority,
                        deadline=message.deadline,
                    )
                remaining = wait_until - time.monotonic()
                if remaining <= 0:
                    return None
                self._cond.wait(min(remaining, 0.25))

    def ack(self, lease: Lease) -> bool:
        with self._cond:
            message = self._owned(lease)
            if message is None:
                return False
            del self._inflight[lease.queue][lease.job_id]
            del self._messages[(lease.queue, lease.job_id)]
        return True

    def nack(self, lease: Lease, delay: float = 0.0) -> bool:
        with self._cond:
            message = self._owned(lease)
            if message is None:
                return False
            del self._inflight[lease.queue][lease.job_id]
            message.attempt += 1
            message.token = None
            message.deadline = None
            message.available_at = self._clock() + max(delay, 0.0)
            self._schedule(message, delay)
            self._cond.notify_all()
        return True

    def extend(self, lease: Lease, seconds: float | None = None) -> bool:
        with self._cond:
            message = self._owned(lease)
            if message is None:
                return False
            message.deadline = self._clock() + (seconds or self.visibility_timeout)
        return True

    def stats(self, queue: str) -> dict[str, int]:
        with self._cond:
            now = self._clock()
            self._promote(queue, now)
            return {
                "waiting": len(self._ready[queue]),
                "active": len(self._inflight[queue]),
                "delayed": len(self._delayed[queue]),
            }

    def purge(self, queue: str) -> int:
        with self._cond:
            job_ids = [job_id for _, _, job_id in self._ready[queue]]
            job_ids.extend(message.job_id for message in self._delayed[queue])
            for job_id in job_ids:
                self._messages.pop((queue, job_id), None)
            self._ready[queue] = []
            self._delayed[queue] = []
        return len(job_ids)

    def _owned(self, lease: Lease) -> _Message | None:
        message = self._inflight[lease.queue].get(lease.job_id)
        if message is None or message.token != lease.token:
            LOGGER.warning(
                "queue_lease_lost", job_id=lease.job_id, queue=lease.queue, attempt=lease.attempt
            )
            return None
        return message

    def _schedule(self, message: _Message, delay: float) -> None:
        if delay > 0:
            self._delayed[message.queue].append(message)
            return
        message.seq = next(self._seq)
        heapq.heappush(
            self._ready[message.queue],
            (-message.priority.weight, message.seq, message.job_id),
        )

    def _promote(self, queue: str, now: float) -> None:
        delayed = self._delayed[queue]
        due = [message for message in delayed if message.available_at <= now]
        if not due:
            return
        self._delayed[queue] = [message for message in delayed if message.available_at > now]
        for message in sorted(due, key=lambda item: item.available_at):
            self._schedule(message, 0.0)

    def _reclaim(self, queue: str, now: float) -> None:
        inflight = self._inflight[queue]
        expired = [
            message
            for message in inflight.values()
            if message.deadline is not None and message.deadline <= now
        ]
        for message in expired:
            del inflight[message.job_id]
            message.attempt += 1
            message.token = None
            message.deadline = None
            self._schedule(message, 0.0)
            LOGGER.warning(
                "queue_lease_expired",
                job_id=message.job_id,
                queue=queue,
                next_attempt=message.attempt,
            )


class RedisBroker:
    """Broker storing queues in Redis sorted sets.

    Per queue: ``ready`` (score orders by priority then arrival), ``delayed``
    (score is the availability timestamp) and ``inflight`` (score is the lease
    deadline). Message metadata lives in one hash per job. Every move between
    sets runs in a WATCH/MULTI transaction so a job is always in exactly one
    of them.
    """

    def __init__(
        self,
        client: Redis,
        *,
        key_prefix: str = "auditflow",
        visibility_timeout: float = 300.0,
        poll_interval: float = 0.5,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.client = client
        self.key_prefix = key_prefix
        self.visibility_timeout = visibility_timeout
        self.poll_interval = poll_interval
        self._clock = clock

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> "RedisBroker":
        return cls(Redis.from_url(url, decode_responses=True), **kwargs)

    def _key(self, queue: str, suffix: str) -> str:
        return f"{self.key_prefix}:queue:{queue}:{suffix}"

    def _message_key(self, queue: str, job_id: str) -> str:
        return self._key(queue, f"msg:{job_id}")

    def enqueue(
        self,
        job_id: str,
        queue: str,
        priority: Priority | str = Priority.NORMAL,
        *,
        delay: float = 0.0,
        attempt: int = 1,
    ) -> bool:
        tier = Priority.coerce(priority)
        message_key = self._message_key(queue, job_id)
        if self.client.exists(message_key):
            LOGGER.warning("queue_duplicate_enqueue_ignored", job_id=job_id, queue=queue)
            return False

        now = self._clock()
        pipe = self.client.pipeline()
        pipe.hset(message_key, mapping={"priority": tier.value, "attempt": attempt})
        if delay > 0:
            pipe.zadd(self._key(queue, "delayed"), {job_id: now + delay})
        else:
            pipe.zadd(self._key(queue, "ready"), {job_id: priority_score(tier, now)})
        pipe.execute()
        LOGGER.info(
            "job_enqueued", job_id=job_id, queue=queue, priority=tier.value, delay=delay
        )
        return True

    def dequeue(
        self,
        queue: str,
        *,
        timeout: float = 0.0,
        visibility_timeout: float | None = None,
    ) -> Lease | None:
        wait_until = time.monotonic() + max(timeout, 0.0)
        lease_seconds = visibility_timeout or self.visibility_timeout
        while True:
            now = self._clock()
            self._promote(queue, now)
            self._reclaim(queue, now)
            lease = self._lease_next(queue, now + lease_seconds)
            if lease is not None:
                return lease
            remaining = wait_until - time.monotonic()
            if remaining <= 0:
                return None
            time.sleep(min(remaining, self.poll_interval))

    def _lease_next(self, queue: str, deadline: float) -> Lease | None:
        """Move the head of ``ready`` into ``inflight`` in one transaction."""

        ready_key = self._key(queue, "ready")
        inflight_key = self._key(queue, "inflight")
        token = uuid4().hex

        def take_head(pipe: Pipeline) -> Lease | None:
            head = pipe.zrange(ready_key, 0, 0)
            if not head:
                return None
            job_id = head[0]
            message_key = self._message_key(queue, job_id)
            fields = pipe.hgetall(message_key)
            pipe.multi()
            pipe.zrem(ready_key, job_id)
            pipe.zadd(inflight_key, {job_id: deadline})
            pipe.hset(message_key, "token", token)
            return Lease(
                job_id=job_id,
                queue=queue,
                token=token,
                attempt=int(fields.get("attempt", 1)),
                priority=Priority.coerce(fields.get("priority")),
                deadline=deadline,
            )

        return self.client.transaction(take_head, ready_key, value_from_callable=True)

    def ack(self, lease: Lease) -> bool:
        message_key = self._message_key(lease.queue, lease.job_id)
        with self.client.pipeline() as pipe:
            try:
                pipe.watch(message_key)
                if pipe.hget(message_key, "token") != lease.token:
                    pipe.unwatch()
                    LOGGER.warning("queue_lease_lost", job_id=lease.job_id, queue=lease.queue)
                    return False
                pipe.multi()
                pipe.zrem(self._key(lease.queue, "inflight"), lease.job_id)
                pipe.delete(message_key)
                pipe.execute()
                return True
            except WatchError:
                LOGGER.warning("queue_lease_race", job_id=lease.job_id, queue=lease.queue)
                return False

    def nack(self, lease: Lease, delay: float = 0.0) -> bool:
        message_key = self._message_key(lease.queue, lease.job_id)
        with self.client.pipeline() as pipe:
            try:
                pipe.watch(message_key)
                if pipe.hget(message_key, "token") != lease.token:
                    pipe.unwatch()
                    LOGGER.warning("queue_lease_lost", job_id=lease.job_id, queue=lease.queue)
                    return False
                tier = Priority.coerce(pipe.hget(message_key, "priority"))
                now = self._clock()
                pipe.multi()
                pipe.zrem(self._key(lease.queue, "inflight"), lease.job_id)
                pipe.hincrby(message_key, "attempt", 1)
                pipe.hdel(message_key, "token")
                if delay > 0:
                    pipe.zadd(self._key(lease.queue, "delayed"), {lease.job_id: now + delay})
                else:
                    pipe.zadd(
                        self._key(lease.queue, "ready"),
                        {lease.job_id: priority_score(tier, now)},
                    )
                pipe.execute()
                return True
            except WatchError:
                LOGGER.warning("queue_lease_race", job_id=lease.job_id, queue=lease.queue)
                return False

    def extend(self, lease: Lease, seconds: float | None = None) -> bool:
        message_key = self._message_key(lease.queue, lease.job_id)
        deadline = self._clock() + (seconds or self.visibility_timeout)

        def push_deadline(pipe: Pipeline) -> bool:
            if pipe.hget(message_key, "token") != lease.token:
                return False
            pipe.multi()
            pipe.zadd(self._key(lease.queue, "inflight"), {lease.job_id: deadline}, xx=True)
            return True

        extended = self.client.transaction(push_deadline, message_key, value_from_callable=True)
        if not extended:
            LOGGER.warning("queue_lease_lost", job_id=lease.job_id, queue=lease.queue)
        return extended

    def stats(self, queue: str) -> dict[str, int]:
        self._promote(queue, self._clock())
        pipe = self.client.pipeline()
        pipe.zcard(self._key(queue, "ready"))
        pipe.zcard(self._key(queue, "inflight"))
        pipe.zcard(self._key(queue, "delayed"))
        waiting, active, delayed = pipe.execute()
        return {"waiting": int(waiting), "active": int(active), "delayed": int(delayed)}

    def purge(self, queue: str) -> int:
        ready_key = self._key(queue, "ready")
        delayed_key = self._key(queue, "delayed")

        def drop_waiting(pipe: Pipeline) -> int:
            job_ids = list(pipe.zrange(ready_key, 0, -1))
            job_ids.extend(pipe.zrange(delayed_key, 0, -1))
            pipe.multi()
            for job_id in job_ids:
                pipe.delete(self._message_key(queue, job_id))
            pipe.delete(ready_key, delayed_key)
            return len(job_ids)

        return self.client.transaction(
            drop_waiting, ready_key, delayed_key, value_from_callable=True
        )

    def _promote(self, queue: str, now: float) -> None:
        delayed_key = self._key(queue, "delayed")
        ready_key = self._key(queue, "ready")

        def move_due(pipe: Pipeline) -> None:
            due = pipe.zrangebyscore(delayed_key, "-inf", now)
            if not due:
                return
            tiers = [
                Priority.coerce(pipe.hget(self._message_key(queue, job_id), "priority"))
                for job_id in due
            ]
            pipe.multi()
            pipe.zrem(delayed_key, *due)
            pipe.zadd(
                ready_key,
                {job_id: priority_score(tier, now) for job_id, tier in zip(due, tiers)},
            )

        self.client.transaction(move_due, delayed_key)

    def _reclaim(self, queue: str, now: float) -> None:
        inflight_key = self._key(queue, "inflight")
        ready_key = self._key(queue, "ready")

        def requeue_expired(pipe: Pipeline) -> list[tuple[str, int]]:
            expired = pipe.zrangebyscore(inflight_key, "-inf", now)
            if not expired:
                return []
            reclaimed = []
            for job_id in expired:
                fields = pipe.hgetall(self._message_key(queue, job_id))
                next_attempt = int(fields.get("attempt", 1)) + 1
                reclaimed.append((job_id, next_attempt, Priority.coerce(fields.get("priority"))))
            pipe.multi()
            pipe.zrem(inflight_key, *expired)
            for job_id, _, tier in reclaimed:
                message_key = self._message_key(queue, job_id)
                pipe.hincrby(message_key, "attempt", 1)
                pipe.hdel(message_key, "token")
                pipe.zadd(ready_key, {job_id: priority_score(tier, now)})
            return [(job_id, attempt) for job_id, attempt, _ in reclaimed]

        for job_id, attempt in self.client.transaction(
            requeue_expired, inflight_key, value_from_callable=True
        ):
            LOGGER.warning(
                "queue_lease_expired", job_id=job_id, queue=queue, next_attempt=attempt
            )


def build_broker(settings: Settings) -> QueueBroker:
    """Return the broker selected by configuration."""

    if settings.redis_enabled:
        return RedisBroker.from_url(
            settings.redis_url,
            key_prefix=settings.redis_key_prefix,
            visibility_timeout=settings.visibility_timeout_seconds,
        )
    LOGGER.warning("redis_disabled_using_in_process_queue")
    return InMemoryBroker(visibility_timeout=settings.visibility_timeout_seconds)


__all__ = [
    "EXPORT_QUEUE",
    "IMPORT_QUEUE",
    "InMemoryBroker",
    "Lease",
    "Priority",
    "QueueBroker",
    "QueuePolicy",
    "RedisBroker",
    "build_broker",
    "default_policies",
    "priority_score",
]
