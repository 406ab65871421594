"""Execution of a single attempt of an import or export job."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
import structlog
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy.exc import OperationalError

from ..core.exceptions import (
    AttemptSuperseded,
    FatalJobError,
    JobCancelled,
    PipelineError,
    RowError,
    TransientJobError,
)
from ..core.storage import EXPORT_AREA, FileStorage, StoredFile, ensure_scoped, organization_key
from ..models.job import JobDirection, JobRecord
from .codecs import FileFormat, apply_mapping, generate, parse
from .job_store import CANCELLED_MESSAGE, JobRecordStore
from .progress import ProgressAggregator, ProgressSnapshot
from .registry import HandlerRegistry, JobKind

LOGGER = structlog.get_logger(__name__)

TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    TransientJobError,
    OperationalError,
    RedisConnectionError,
)


class OutcomeKind(str, Enum):
    COMPLETED = "completed"
    TRANSIENT = "transient"
    FATAL = "fatal"
    CANCELLED = "cancelled"
    SUPERSEDED = "superseded"


@dataclass(frozen=True, slots=True)
class AttemptOutcome:
    """Result of one attempt; the worker maps it onto the job state machine."""

    kind: OutcomeKind
    snapshot: ProgressSnapshot = field(default_factory=ProgressSnapshot)
    total: int | None = None
    result: StoredFile | None = None
    error: str | None = None


class JobRunner:
    """Runs one attempt of a claimed job and reports how it ended.

    Row-level failures are recorded on the progress aggregator and never end the
    attempt. Everything else that escapes is classified into an
    :class:`AttemptOutcome` so callers never inspect exception types.
    """

    def __init__(
        self,
        store: JobRecordStore,
        storage: FileStorage,
        registry: HandlerRegistry,
        *,
        error_log_cap: int = 1000,
        flush_every: int = 100,
    ) -> None:
        self.store = store
        self.storage = storage
        self.registry = registry
        self.error_log_cap = error_log_cap
        self.flush_every = flush_every

    def run(
        self, record: JobRecord, heartbeat: Callable[[], bool] | None = None
    ) -> AttemptOutcome:
        """Run ``record`` for the attempt it was claimed with.

        ``heartbeat`` extends the delivery lease and returns ``False`` once the
        lease is gone, which ends the attempt without touching the record.
        """

        log = LOGGER.bind(job_id=record.id, kind=record.kind, attempt=record.attempts)
        progress = ProgressAggregator(
            error_log_cap=self.error_log_cap, flush_every=self.flush_every
        )
        try:
            if record.direction == JobDirection.IMPORT.value:
                return self._run_import(record, progress, heartbeat)
            return self._run_export(record)
        except AttemptSuperseded as exc:
            log.warning("attempt_superseded", reason=exc.message)
            return AttemptOutcome(
                OutcomeKind.SUPERSEDED, snapshot=progress.snapshot(), error=exc.message
            )
        except JobCancelled:
            log.info("attempt_cancelled", processed=progress.processed)
            return AttemptOutcome(
                OutcomeKind.CANCELLED, snapshot=progress.snapshot(), error=CANCELLED_MESSAGE
            )
        except FatalJobError as exc:
            log.warning("attempt_fatal", error=str(exc))
            return AttemptOutcome(OutcomeKind.FATAL, snapshot=progress.snapshot(), error=exc.message)
        except TRANSIENT_ERRORS as exc:
            log.warning("attempt_transient_failure", error=str(exc))
            message = exc.message if isinstance(exc, PipelineError) else str(exc)
            return AttemptOutcome(OutcomeKind.TRANSIENT, snapshot=progress.snapshot(), error=message)
        except Exception as exc:
            log.exception("attempt_unexpected_failure")
            return AttemptOutcome(
                OutcomeKind.FATAL,
                snapshot=progress.snapshot(),
                error=f"{type(exc).__name__}: {exc}",
            )

    def _check_cancelled(self, record: JobRecord) -> None:
        if self.store.is_cancel_requested(record.id):
            raise JobCancelled("Cancellation requested", {"job_id": record.id})

    def _set_total(self, record: JobRecord, total: int) -> None:
        if not self.store.set_total(record.id, record.attempts, total):
            raise AttemptSuperseded("Job record is no longer held by this attempt")

    def _run_import(
        self,
        record: JobRecord,
        progress: ProgressAggregator,
        heartbeat: Callable[[], bool] | None,
    ) -> AttemptOutcome:
        handler = self.registry.resolve_import(record.kind)
        key = ensure_scoped(record.organization_id, record.source_key or "")
        content = self.storage.read(key)
        rows = apply_mapping(parse(content, record.source_format or ""), record.mapping_config)
        total = len(rows)
        self._set_total(record, total)
        self._check_cancelled(record)

        for index, row in enumerate(rows, start=1):
            try:
                handler(record.organization_id, row)
            except (FatalJobError, *TRANSIENT_ERRORS):
                raise
            except RowError as exc:
                progress.record(False, index, exc.message)
            except Exception as exc:
                LOGGER.debug("row_failed", job_id=record.id, row=index, error=str(exc))
                progress.record(False, index, str(exc) or type(exc).__name__)
            else:
                progress.record(True, index)

            if progress.should_flush():
                if not self.store.flush_progress(record.id, record.attempts, progress.snapshot()):
                    raise AttemptSuperseded("Job record is no longer held by this attempt")
                progress.mark_flushed()
                if heartbeat is not None and not heartbeat():
                    raise AttemptSuperseded("Delivery lease expired")
                self._check_cancelled(record)

        return AttemptOutcome(OutcomeKind.COMPLETED, snapshot=progress.snapshot(), total=total)

    def _run_export(self, record: JobRecord) -> AttemptOutcome:
        kind = JobKind.parse(record.kind, JobDirection.EXPORT)
        handler = self.registry.resolve_export(kind)
        file_format = FileFormat.coerce(record.output_format or "")
        data = handler(record.organization_id, dict(record.filters or {}))
        if isinstance(data, dict):
            total = sum(len(rows) for rows in data.values())
        else:
            total = len(data)
        self._set_total(record, total)
        self._check_cancelled(record)

        export_name = record.export_name or f"{kind.entity}_export"
        generated = generate(
            file_format,
            data,
            info={
                "export_name": export_name,
                "export_type": kind.entity,
                "organization_id": record.organization_id,
                "format": file_format.value,
            },
        )
        key = organization_key(
            record.organization_id, EXPORT_AREA, generated.filename(export_name)
        )
        stored = self.storage.put(key, generated.content, content_type=generated.content_type)
        snapshot = ProgressSnapshot(processed=total, success=total)
        return AttemptOutcome(
            OutcomeKind.COMPLETED, snapshot=snapshot, total=total, result=stored
        )

    def discard_result(self, outcome: AttemptOutcome) -> None:
        """Delete the file stored by an attempt whose outcome was not recorded."""

        if outcome.result is None:
            return
        try:
            self.storage.delete(outcome.result.key)
        except PipelineError as exc:
            LOGGER.error("export_result_discard_failed", key=outcome.result.key, error=str(exc))
            return
        LOGGER.info("export_result_discarded", key=outcome.result.key)


__all__ = ["AttemptOutcome", "JobRunner", "OutcomeKind", "TRANSIENT_ERRORS"]
