"""Submission, polling, download and cleanup surface of the job pipeline."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from pathlib import PurePosixPath
from typing import Any, BinaryIO

import structlog

from ..core.broker import EXPORT_QUEUE, IMPORT_QUEUE, Priority, QueueBroker, QueuePolicy
from ..core.exceptions import (
    JobNotFound,
    PipelineError,
    ResultUnavailable,
    SourceMissing,
    UnknownJobKind,
    UnsupportedFormat,
    UploadRejected,
)
from ..core.storage import UPLOAD_AREA, FileStorage, ensure_scoped, organization_key
from ..models.job import JobDirection, JobStatus
from ..schemas.job import ExportRequest, ImportSource, JobPage, JobRead
from .codecs import PARSEABLE_FORMATS, detect_format
from .job_store import JobRecordStore, as_utc
from .registry import HandlerRegistry, JobKind

LOGGER = structlog.get_logger(__name__)


@dataclass(frozen=True, slots=True)
class DownloadableFile:
    """An export result ready to be streamed to the submitter."""

    filename: str
    content_type: str
    size: int | None
    stream: BinaryIO


class PipelineService:
    """Entry point used by collaborators to run and follow jobs."""

    def __init__(
        self,
        store: JobRecordStore,
        broker: QueueBroker,
        storage: FileStorage,
        registry: HandlerRegistry,
        policies: Mapping[str, QueuePolicy],
        *,
        max_upload_bytes: int = 10 * 1024 * 1024,
    ) -> None:
        self.store = store
        self.broker = broker
        self.storage = storage
        self.registry = registry
        self.policies = dict(policies)
        self.max_upload_bytes = max_upload_bytes

    # Submission -----------------------------------------------------------------

    def stage_upload(
        self,
        organization_id: int,
        filename: str,
        content: bytes,
        *,
        mapping_config: dict[str, str] | None = None,
    ) -> ImportSource:
        """Validate an uploaded file and store it under the organization's prefix."""

        if not content:
            raise UploadRejected("Uploaded file is empty", {"filename": filename})
        if len(content) > self.max_upload_bytes:
            raise UploadRejected(
                "Uploaded file exceeds the size limit",
                {"filename": filename, "size": len(content), "limit": self.max_upload_bytes},
            )
        try:
            file_format = detect_format(filename)
        except UnsupportedFormat as exc:
            raise UploadRejected(
                "Unsupported file type", {"filename": filename, **exc.details}
            ) from exc
        if file_format not in PARSEABLE_FORMATS:
            raise UploadRejected(
                "File type cannot be imported",
                {"filename": filename, "format": file_format.value},
            )

        key = organization_key(organization_id, UPLOAD_AREA, filename)
        stored = self.storage.put(key, content)
        LOGGER.info(
            "upload_staged", organization_id=organization_id, key=key, size=stored.size
        )
        return ImportSource(
            storage_key=stored.key,
            file_name=filename,
            size=stored.size,
            file_format=file_format.value,
            mapping_config=mapping_config,
        )

    def submit(
        self,
        organization_id: int,
        kind: JobKind | str,
        direction: JobDirection | str,
        source_or_filters: ImportSource | ExportRequest | Mapping[str, Any] | None,
        requested_format: str | None = None,
        *,
        priority: Priority | str = Priority.NORMAL,
        submitted_by: int | None = None,
        name: str | None = None,
    ) -> str:
        """Create a ``pending`` job record, enqueue it and return its id.

        Raises :class:`UnknownJobKind` for kinds without a handler; the refused
        submission is still persisted as a ``failed`` record whose id is carried
        on the exception.
        """

        raw_direction = str(getattr(direction, "value", direction) or "").lower()
        try:
            job_kind = JobKind.parse(kind, raw_direction)
            if not self.registry.supports(job_kind):
                raise UnknownJobKind(job_kind.value)
        except UnknownJobKind as exc:
            record = self.store.create_rejected(
                organization_id=organization_id,
                kind=str(getattr(kind, "value", kind)),
                direction=raw_direction,
                message=exc.message,
                submitted_by=submitted_by,
            )
            raise UnknownJobKind(exc.kind, job_id=record.id, details=exc.details) from exc

        tier = Priority.coerce(priority)
        if job_kind.direction is JobDirection.IMPORT:
            queue = IMPORT_QUEUE
            fields = self._import_fields(organization_id, source_or_filters, requested_format)
        else:
            queue = EXPORT_QUEUE
            fields = self._export_fields(source_or_filters, requested_format, name)

        policy = self.policies[queue]
        record = self.store.create(
            organization_id=organization_id,
            kind=job_kind.value,
            direction=job_kind.direction,
            queue=queue,
            priority=tier.value,
            max_attempts=policy.max_attempts,
            submitted_by=submitted_by,
            **fields,
        )
        try:
            self.broker.enqueue(record.id, queue, tier)
        except Exception as exc:
            self.store.fail_pending(record.id, f"Could not enqueue job: {exc}")
            raise
        return record.id

    def _import_fields(
        self,
        organization_id: int,
        source: ImportSource | ExportRequest | Mapping[str, Any] | None,
        requested_format: str | None,
    ) -> dict[str, Any]:
        if isinstance(source, Mapping):
            source = ImportSource.model_validate(dict(source))
        if not isinstance(source, ImportSource):
            raise UploadRejected("Import jobs require a staged upload")
        return {
            "file_name": source.file_name,
            "source_key": ensure_scoped(organization_id, source.storage_key),
            "source_size": source.size,
            "source_format": (requested_format or source.file_format).lower(),
            "mapping_config": source.mapping_config,
        }

    def _export_fields(
        self,
        request: ImportSource | ExportRequest | Mapping[str, Any] | None,
        requested_format: str | None,
        name: str | None,
    ) -> dict[str, Any]:
        if request is None:
            request = ExportRequest()
        elif isinstance(request, Mapping):
            request = ExportRequest(filters=dict(request))
        if not isinstance(request, ExportRequest):
            raise UploadRejected("Export jobs take filter criteria, not an upload")
        return {
            "export_name": name or request.export_name,
            "output_format": (requested_format or "csv").lower(),
            "filters": request.filters,
        }

    # Polling --------------------------------------------------------------------

    def get(self, job_id: str, organization_id: int) -> JobRead:
        record = self.store.get(job_id, organization_id)
        if record is None:
            raise JobNotFound(job_id)
        return JobRead.from_record(record)

    def list_jobs(
        self,
        organization_id: int,
        *,
        direction: str | None = None,
        status: str | None = None,
        kind: str | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> JobPage:
        records, total, total_pages = self.store.list_jobs(
            organization_id,
            direction=direction,
            status=status,
            kind=kind,
            page=page,
            limit=limit,
        )
        return JobPage(
            jobs=[JobRead.from_record(record) for record in records],
            total=total,
            page=max(page, 1),
            total_pages=total_pages,
        )

    def cancel(self, job_id: str, organization_id: int) -> JobRead:
        """Cancel a pending job now, or ask a running one to stop between rows."""

        if self.store.get(job_id, organization_id) is None:
            raise JobNotFound(job_id)
        status = self.store.request_cancel(job_id)
        LOGGER.info("job_cancel", job_id=job_id, resulting_status=status)
        return self.get(job_id, organization_id)

    def queue_stats(self) -> dict[str, dict[str, int]]:
        return {queue: self.broker.stats(queue) for queue in self.policies}

    # Results ----------------------------------------------------------------------

    def download(self, job_id: str, organization_id: int) -> DownloadableFile:
        """Open the result of a completed export that has not expired."""

        record = self.store.get(job_id, organization_id)
        if record is None:
            raise JobNotFound(job_id)
        if record.status != JobStatus.COMPLETED.value or not record.result_key:
            raise ResultUnavailable(
                "Export is not ready for download", {"job_id": job_id, "status": record.status}
            )
        expires_at = as_utc(record.expires_at)
        if expires_at is not None and self.store.now() > expires_at:
            raise ResultUnavailable("Export has expired", {"job_id": job_id})

        try:
            stream = self.storage.open(record.result_key)
        except SourceMissing as exc:
            raise ResultUnavailable("Export file is missing", {"job_id": job_id}) from exc
        self.store.record_download(job_id)
        LOGGER.info("export_downloaded", job_id=job_id, organization_id=organization_id)
        return DownloadableFile(
            filename=PurePosixPath(record.result_key).name.split("-", 1)[-1],
            content_type=record.result_content_type or "application/octet-stream",
            size=record.result_size,
            stream=stream,
        )

    # Cleanup ----------------------------------------------------------------------

    def list_expired(self, before: datetime | None = None) -> list[str]:
        return self.store.list_expired(as_utc(before) or self.store.now())

    def delete(self, job_id: str, organization_id: int | None = None) -> None:
        """Remove a job record together with its stored source and result files."""

        record = self.store.get(job_id, organization_id)
        if record is None:
            raise JobNotFound(job_id)
        for key in (record.source_key, record.result_key):
            if key:
                self.storage.delete(ensure_scoped(record.organization_id, key))
        self.store.delete(job_id)

    def sweep_expired(self, before: datetime | None = None) -> list[str]:
        """Delete every expired export; return the ids that were removed."""

        removed: list[str] = []
        for job_id in self.list_expired(before):
            try:
                self.delete(job_id)
            except PipelineError as exc:
                LOGGER.error("expired_job_cleanup_failed", job_id=job_id, error=str(exc))
                continue
            removed.append(job_id)
        LOGGER.info("expired_jobs_swept", count=len(removed))
        return removed


__all__ = ["DownloadableFile", "PipelineService"]
