"""Bounded worker pools pulling jobs from the queue broker."""

from __future__ import annotations

import threading
from time import perf_counter

import structlog

from ..core.broker import Lease, QueueBroker, QueuePolicy
from .job_store import JobRecordStore
from .metrics import job_duration_seconds, job_retries_total
from .runner import AttemptOutcome, JobRunner, OutcomeKind

LOGGER = structlog.get_logger(__name__)

EXHAUSTED_MESSAGE = "Maximum attempts exceeded"


class Worker:
    """Runs one job at a time from a single queue."""

    def __init__(
        self,
        policy: QueuePolicy,
        broker: QueueBroker,
        store: JobRecordStore,
        runner: JobRunner,
        *,
        name: str | None = None,
    ) -> None:
        self.policy = policy
        self.broker = broker
        self.store = store
        self.runner = runner
        self.name = name or f"{policy.name}-worker"

    def process_next(self, timeout: float = 0.0) -> AttemptOutcome | None:
        """Take one delivery from the queue and drive it to ack or nack.

        Returns the attempt outcome, or ``None`` when nothing was delivered or
        the delivery was dropped without running an attempt.
        """

        lease = self.broker.dequeue(
            self.policy.name,
            timeout=timeout,
            visibility_timeout=self.policy.visibility_timeout,
        )
        if lease is None:
            return None

        log = LOGGER.bind(
            worker=self.name, job_id=lease.job_id, queue=lease.queue, attempt=lease.attempt
        )
        record = self.store.get(lease.job_id)
        if record is None:
            log.warning("job_missing_for_delivery")
            self.broker.ack(lease)
            return None
        if record.is_terminal:
            log.info("terminal_job_delivery_ignored", status=record.status)
            self.broker.ack(lease)
            return None
        if lease.attempt > record.max_attempts:
            self.store.fail(lease.job_id, record.last_error or EXHAUSTED_MESSAGE)
            self.broker.ack(lease)
            log.warning("job_attempts_exhausted_on_redelivery", max_attempts=record.max_attempts)
            return None

        claimed = self.store.claim(lease.job_id, lease.attempt)
        if claimed is None:
            log.warning("job_claim_conflict", status=record.status, attempts=record.attempts)
            self.broker.ack(lease)
            return None

        start = perf_counter()
        outcome = self.runner.run(
            claimed,
            heartbeat=lambda: self.broker.extend(lease, self.policy.visibility_timeout),
        )
        job_duration_seconds.labels(queue=self.policy.name).observe(perf_counter() - start)
        self._apply(lease, claimed.max_attempts, outcome)
        log.info("attempt_finished", outcome=outcome.kind.value)
        return outcome

    def _apply(self, lease: Lease, max_attempts: int, outcome: AttemptOutcome) -> None:
        """Record ``outcome`` on the job, then settle the delivery.

        Every write is conditional on ``lease.attempt``. When the record has
        moved on to a later attempt the write matches nothing and any result
        file stored by this attempt is removed.
        """

        job_id = lease.job_id
        if outcome.kind is OutcomeKind.SUPERSEDED:
            self.broker.ack(lease)
            return

        if outcome.kind is OutcomeKind.COMPLETED:
            try:
                completed = self.store.complete(
                    job_id,
                    lease.attempt,
                    outcome.snapshot,
                    total=outcome.total,
                    result=outcome.result,
                )
            except Exception:
                self.runner.discard_result(outcome)
                raise
            if not completed:
                LOGGER.warning("attempt_outcome_discarded", job_id=job_id, attempt=lease.attempt)
                self.runner.discard_result(outcome)
            self.broker.ack(lease)
            return

        message = outcome.error or "Job failed"
        if outcome.kind is OutcomeKind.TRANSIENT and lease.attempt < max_attempts:
            if not self.store.requeue(job_id, lease.attempt, message):
                LOGGER.warning("attempt_outcome_discarded", job_id=job_id, attempt=lease.attempt)
                self.broker.ack(lease)
                return
            delay = self.policy.backoff(lease.attempt)
            self.broker.nack(lease, delay)
            job_retries_total.labels(queue=self.policy.name).inc()
            LOGGER.info(
                "job_retry_scheduled",
                job_id=job_id,
                attempt=lease.attempt,
                next_attempt=lease.attempt + 1,
                delay=delay,
            )
            return

        if not self.store.fail(job_id, message, outcome.snapshot, attempt=lease.attempt):
            LOGGER.warning("attempt_outcome_discarded", job_id=job_id, attempt=lease.attempt)
        self.broker.ack(lease)

    def run(self, stop: threading.Event, poll_timeout: float = 1.0) -> None:
        LOGGER.info("worker_started", worker=self.name, queue=self.policy.name)
        while not stop.is_set():
            try:
                self.process_next(timeout=poll_timeout)
            except Exception:
                # The lease expires and the job is delivered again.
                LOGGER.exception("worker_iteration_failed", worker=self.name)
                stop.wait(poll_timeout)
        LOGGER.info("worker_stopped", worker=self.name)


class WorkerPool:
    """Fixed-size set of worker threads for one queue class."""

    def __init__(
        self,
        policy: QueuePolicy,
        broker: QueueBroker,
        store: JobRecordStore,
        runner: JobRunner,
        *,
        poll_timeout: float = 1.0,
    ) -> None:
        self.policy = policy
        self.poll_timeout = poll_timeout
        self.workers = [
            Worker(policy, broker, store, runner, name=f"{policy.name}-{index}")
            for index in range(max(policy.concurrency, 1))
        ]
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    @property
    def running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._threads = [
            threading.Thread(
                target=worker.run,
                args=(self._stop, self.poll_timeout),
                name=worker.name,
                daemon=True,
            )
            for worker in self.workers
        ]
        for thread in self._threads:
            thread.start()
        LOGGER.info("worker_pool_started", queue=self.policy.name, size=len(self.workers))

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout)
        LOGGER.info("worker_pool_stopped", queue=self.policy.name)


__all__ = ["EXHAUSTED_MESSAGE", "Worker", "WorkerPool"]
