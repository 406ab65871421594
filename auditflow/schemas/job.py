"""Job submission and polling schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ErrorEntry(BaseModel):
    """One row-level error captured during an attempt."""

    row: int | None
    message: str


class ImportSource(BaseModel):
    """Reference to an uploaded file staged for import."""

    storage_key: str
    file_name: str
    size: int = Field(ge=0)
    file_format: str
    mapping_config: dict[str, str] | None = None


class ExportRequest(BaseModel):
    """Filter criteria and naming for an export."""

    filters: dict[str, Any] = Field(default_factory=dict)
    export_name: str | None = None


class ResultReference(BaseModel):
    key: str
    size: int | None
    content_type: str | None


class JobRead(BaseModel):
    """Read-only projection of a job record exposed to collaborators."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    organization_id: int
    kind: str
    direction: str
    status: str
    priority: str
    file_name: str | None = None
    export_name: str | None = None
    output_format: str | None = None
    total_records: int | None
    processed_records: int
    success_records: int
    error_records: int
    error_log: list[ErrorEntry] = Field(default_factory=list)
    errors_omitted: int = 0
    progress_percent: int
    success_rate: int
    attempts: int
    max_attempts: int
    last_error: str | None = None
    cancel_requested: bool = False
    download_count: int = 0
    result: ResultReference | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    expires_at: datetime | None = None

    @classmethod
    def from_record(cls, record: Any) -> "JobRead":
        """Build the projection, folding result columns into ``result``."""

        projection = cls.model_validate(record)
        if record.result_key:
            projection.result = ResultReference(
                key=record.result_key,
                size=record.result_size,
                content_type=record.result_content_type,
            )
        return projection


class JobPage(BaseModel):
    """Paginated listing of job records."""

    jobs: list[JobRead]
    total: int
    page: int
    total_pages: int


__all__ = [
    "ErrorEntry",
    "ExportRequest",
    "ImportSource",
    "JobPage",
    "JobRead",
    "ResultReference",
]
