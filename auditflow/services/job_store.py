"""Persistence and state transitions for job records."""

from __future__ import annotations

import math
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

import structlog
from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.orm import Session, sessionmaker

from ..core.storage import StoredFile
from ..db import session_scope
from ..models.job import JobDirection, JobRecord, JobStatus, TERMINAL_STATUSES
from .metrics import pipeline_jobs_total
from .progress import ProgressSnapshot

LOGGER = structlog.get_logger(__name__)

CANCELLED_MESSAGE = "cancelled"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Return ``value`` as an aware UTC datetime; SQLite hands back naive ones."""

    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _counter_values(snapshot: ProgressSnapshot) -> dict[str, Any]:
    return {
        "processed_records": snapshot.processed,
        "success_records": snapshot.success,
        "error_records": snapshot.errors,
        "error_log": list(snapshot.error_log),
        "errors_omitted": snapshot.omitted,
    }


def _reset_counters() -> dict[str, Any]:
    return _counter_values(ProgressSnapshot())


def _held_by(attempt: int) -> Any:
    return and_(
        JobRecord.status == JobStatus.PROCESSING.value,
        JobRecord.attempts == attempt,
    )


class JobRecordStore:
    """Owns every write to ``pipeline_jobs``.

    Transitions are conditional updates: each one only matches rows in the
    source state it expects, so a record that already reached ``completed`` or
    ``failed`` is never changed again. Writes made on behalf of a running
    attempt also match on ``attempts``, so a worker whose lease was taken over
    by a later attempt cannot change the record.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        export_retention_days: int = 7,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.session_factory = session_factory
        self.export_retention = timedelta(days=export_retention_days)
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    # Creation -----------------------------------------------------------------

    def create(
        self,
        *,
        organization_id: int,
        kind: str,
        direction: JobDirection | str,
        queue: str,
        priority: str = "normal",
        max_attempts: int = 3,
        submitted_by: int | None = None,
        **fields: Any,
    ) -> JobRecord:
        """Persist a new ``pending`` record and return it."""

        direction = JobDirection(direction)
        record = JobRecord(
            id=str(uuid4()),
            organization_id=organization_id,
            submitted_by=submitted_by,
            kind=kind,
            direction=direction.value,
            status=JobStatus.PENDING.value,
            priority=priority,
            queue=queue,
            max_attempts=max_attempts,
            attempts=0,
            cancel_requested=False,
            download_count=0,
            **_reset_counters(),
            **fields,
        )
        if direction is JobDirection.EXPORT:
            record.expires_at = self.now() + self.export_retention
        with session_scope(self.session_factory) as session:
            session.add(record)
        LOGGER.info(
            "job_created",
            job_id=record.id,
            organization_id=organization_id,
            kind=kind,
            priority=priority,
        )
        return record

    def create_rejected(
        self,
        *,
        organization_id: int,
        kind: str,
        direction: str,
        message: str,
        submitted_by: int | None = None,
        **fields: Any,
    ) -> JobRecord:
        """Persist a submission that was refused before it could ever run."""

        now = self.now()
        record = JobRecord(
            id=str(uuid4()),
            organization_id=organization_id,
            submitted_by=submitted_by,
            kind=str(kind)[:64],
            direction=str(direction)[:16],
            status=JobStatus.FAILED.value,
            priority="normal",
            attempts=0,
            max_attempts=0,
            last_error=message,
            cancel_requested=False,
            download_count=0,
            finished_at=now,
            **_reset_counters(),
            **fields,
        )
        with session_scope(self.session_factory) as session:
            session.add(record)
        pipeline_jobs_total.labels(direction=record.direction, status=JobStatus.FAILED.value).inc()
        LOGGER.warning(
            "job_rejected", job_id=record.id, organization_id=organization_id, kind=kind
        )
        return record

    # Reads --------------------------------------------------------------------

    def get(self, job_id: str, organization_id: int | None = None) -> JobRecord | None:
        with session_scope(self.session_factory) as session:
            record = session.get(JobRecord, job_id)
        if record is None:
            return None
        if organization_id is not None and record.organization_id != organization_id:
            return None
        return record

    def list_jobs(
        self,
        organization_id: int,
        *,
        direction: str | None = None,
        status: str | None = None,
        kind: str | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[JobRecord], int, int]:
        """Return ``(records, total, total_pages)`` newest first."""

        page = max(page, 1)
        limit = max(min(limit, 100), 1)
        conditions = [JobRecord.organization_id == organization_id]
        if direction:
            conditions.append(JobRecord.direction == direction)
        if status:
            conditions.append(JobRecord.status == status)
        if kind:
            conditions.append(JobRecord.kind == kind)

        with session_scope(self.session_factory) as session:
            total = session.scalar(select(func.count()).select_from(JobRecord).where(*conditions))
            records = session.scalars(
                select(JobRecord)
                .where(*conditions)
                .order_by(JobRecord.created_at.desc(), JobRecord.id)
                .offset((page - 1) * limit)
                .limit(limit)
            ).all()
        total = int(total or 0)
        return list(records), total, math.ceil(total / limit)

    def list_expired(self, before: datetime) -> list[str]:
        """Return ids of export records whose ``expires_at`` is before ``before``."""

        with session_scope(self.session_factory) as session:
            rows = session.scalars(
                select(JobRecord.id).where(
                    JobRecord.direction == JobDirection.EXPORT.value,
                    JobRecord.expires_at.is_not(None),
                    JobRecord.expires_at < before,
                )
            ).all()
        return list(rows)

    def is_cancel_requested(self, job_id: str) -> bool:
        with session_scope(self.session_factory) as session:
            flag = session.scalar(select(JobRecord.cancel_requested).where(JobRecord.id == job_id))
        return bool(flag)

    # Transitions ----------------------------------------------------------------

    def _transition(self, job_id: str, condition: Any, values: dict[str, Any]) -> bool:
        with session_scope(self.session_factory) as session:
            result = session.execute(
                update(JobRecord)
                .where(JobRecord.id == job_id, condition)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
        return result.rowcount == 1

    def claim(self, job_id: str, attempt: int) -> JobRecord | None:
        """Move a record into ``processing`` for ``attempt``.

        A ``processing`` record can be claimed again only by a later attempt,
        which happens when the previous worker's lease expired. Counters restart
        from zero on every claim.
        """

        claimable = or_(
            JobRecord.status == JobStatus.PENDING.value,
            and_(
                JobRecord.status == JobStatus.PROCESSING.value,
                JobRecord.attempts < attempt,
            ),
        )
        claimed = self._transition(
            job_id,
            claimable,
            {
                "status": JobStatus.PROCESSING.value,
                "attempts": attempt,
                "started_at": self.now(),
                "total_records": None,
                **_reset_counters(),
            },
        )
        if not claimed:
            return None
        LOGGER.info("job_claimed", job_id=job_id, attempt=attempt)
        return self.get(job_id)

    def set_total(self, job_id: str, attempt: int, total: int) -> bool:
        return self._transition(job_id, _held_by(attempt), {"total_records": total})

    def flush_progress(self, job_id: str, attempt: int, snapshot: ProgressSnapshot) -> bool:
        return self._transition(job_id, _held_by(attempt), _counter_values(snapshot))

    def complete(
        self,
        job_id: str,
        attempt: int,
        snapshot: ProgressSnapshot,
        *,
        total: int | None = None,
        result: StoredFile | None = None,
    ) -> bool:
        values: dict[str, Any] = {
            "status": JobStatus.COMPLETED.value,
            "finished_at": self.now(),
            "last_error": None,
            **_counter_values(snapshot),
        }
        if total is not None:
            values["total_records"] = total
        if result is not None:
            values.update(
                result_key=result.key,
                result_size=result.size,
                result_content_type=result.content_type,
            )
        completed = self._transition(job_id, _held_by(attempt), values)
        if completed:
            self._count_terminal(job_id, JobStatus.COMPLETED)
            LOGGER.info(
                "job_completed",
                job_id=job_id,
                processed=snapshot.processed,
                success=snapshot.success,
                errors=snapshot.errors,
            )
        return completed

    def fail(
        self,
        job_id: str,
        message: str,
        snapshot: ProgressSnapshot | None = None,
        *,
        attempt: int | None = None,
    ) -> bool:
        """Move a non-terminal record to ``failed`` keeping ``message`` as last error.

        With ``attempt`` the record must still be processing that attempt.
        """

        values: dict[str, Any] = {
            "status": JobStatus.FAILED.value,
            "finished_at": self.now(),
            "last_error": message,
        }
        if snapshot is not None:
            values.update(_counter_values(snapshot))
        if attempt is None:
            condition = JobRecord.status.not_in(TERMINAL_STATUSES)
        else:
            condition = _held_by(attempt)
        failed = self._transition(job_id, condition, values)
        if failed:
            self._count_terminal(job_id, JobStatus.FAILED)
            LOGGER.warning("job_failed", job_id=job_id, error=message)
        return failed

    def requeue(self, job_id: str, attempt: int, message: str) -> bool:
        """Return a record processing ``attempt`` to ``pending`` after a transient error."""

        requeued = self._transition(
            job_id,
            _held_by(attempt),
            {
                "status": JobStatus.PENDING.value,
                "last_error": message,
                "total_records": None,
                **_reset_counters(),
            },
        )
        if requeued:
            LOGGER.info("job_requeued", job_id=job_id, error=message)
        return requeued

    def request_cancel(self, job_id: str) -> str | None:
        """Cancel a job; return the resulting status or ``None`` when terminal."""

        if self.fail_pending(job_id, CANCELLED_MESSAGE):
            return JobStatus.FAILED.value
        flagged = self._transition(
            job_id,
            JobRecord.status == JobStatus.PROCESSING.value,
            {"cancel_requested": True},
        )
        if flagged:
            LOGGER.info("job_cancel_requested", job_id=job_id)
            return JobStatus.PROCESSING.value
        return None

    def fail_pending(self, job_id: str, message: str) -> bool:
        failed = self._transition(
            job_id,
            JobRecord.status == JobStatus.PENDING.value,
            {
                "status": JobStatus.FAILED.value,
                "finished_at": self.now(),
                "last_error": message,
            },
        )
        if failed:
            self._count_terminal(job_id, JobStatus.FAILED)
            LOGGER.info("job_failed_before_start", job_id=job_id, error=message)
        return failed

    def record_download(self, job_id: str) -> bool:
        return self._transition(
            job_id,
            JobRecord.status == JobStatus.COMPLETED.value,
            {"download_count": JobRecord.download_count + 1},
        )

    def delete(self, job_id: str) -> JobRecord | None:
        """Delete the record and return its last state for file cleanup."""

        record = self.get(job_id)
        if record is None:
            return None
        with session_scope(self.session_factory) as session:
            session.execute(delete(JobRecord).where(JobRecord.id == job_id))
        LOGGER.info("job_deleted", job_id=job_id)
        return record

    def _count_terminal(self, job_id: str, status: JobStatus) -> None:
        with session_scope(self.session_factory) as session:
            direction = session.scalar(select(JobRecord.direction).where(JobRecord.id == job_id))
        pipeline_jobs_total.labels(direction=direction or "unknown", status=status.value).inc()


__all__ = ["CANCELLED_MESSAGE", "JobRecordStore", "as_utc", "utcnow"]
