"""Job record model for tracking import and export processing."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import JSON, BigInteger, Boolean, DateTime, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class JobStatus(str, Enum):
    """Lifecycle states of a job record."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class JobDirection(str, Enum):
    IMPORT = "import"
    EXPORT = "export"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED.value, JobStatus.FAILED.value})


class JobRecord(Base):
    """Persisted state of one asynchronous import or export."""

    __tablename__ = "pipeline_jobs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    organization_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    submitted_by: Mapped[int | None] = mapped_column(Integer)
    kind: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    direction: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=JobStatus.PENDING.value, index=True
    )
    priority: Mapped[str] = mapped_column(String(16), nullable=False, default="normal")
    queue: Mapped[str | None] = mapped_column(String(32))

    # Import source
    file_name: Mapped[str | None] = mapped_column(String(255))
    source_key: Mapped[str | None] = mapped_column(String(500))
    source_size: Mapped[int | None] = mapped_column(BigInteger)
    source_format: Mapped[str | None] = mapped_column(String(16))
    mapping_config: Mapped[dict[str, Any] | None] = mapped_column(JSON)

    # Export request
    export_name: Mapped[str | None] = mapped_column(String(255))
    output_format: Mapped[str | None] = mapped_column(String(16))
    filters: Mapped[dict[str, Any] | None] = mapped_column(JSON)

    total_records: Mapped[int | None] = mapped_column(Integer)
    processed_records: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    success_records: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_records: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_log: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    errors_omitted: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Export result
    result_key: Mapped[str | None] = mapped_column(String(500))
    result_size: Mapped[int | None] = mapped_column(BigInteger)
    result_content_type: Mapped[str | None] = mapped_column(String(128))

    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    last_error: Mapped[str | None] = mapped_column(Text)
    cancel_requested: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    download_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), index=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def progress_percent(self) -> int:
        if not self.total_records:
            return 0
        return round(self.processed_records / self.total_records * 100)

    @property
    def success_rate(self) -> int:
        if not self.processed_records:
            return 0
        return round(self.success_records / self.processed_records * 100)


Index("ix_pipeline_jobs_org_status", JobRecord.organization_id, JobRecord.status)

__all__ = ["JobDirection", "JobRecord", "JobStatus", "TERMINAL_STATUSES"]
