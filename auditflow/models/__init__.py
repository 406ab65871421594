"""ORM models exposed for easy imports."""

from .base import Base
from .job import JobDirection, JobRecord, JobStatus
from .record import ImportedRecord

__all__ = [
    "Base",
    "ImportedRecord",
    "JobDirection",
    "JobRecord",
    "JobStatus",
]
