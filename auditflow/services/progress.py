"""Per-attempt row accounting with a bounded error log."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .metrics import rows_total


@dataclass(frozen=True, slots=True)
class ProgressSnapshot:
    """Counters and error log at a point in an attempt."""

    processed: int = 0
    success: int = 0
    errors: int = 0
    error_log: list[dict[str, Any]] = field(default_factory=list)
    omitted: int = 0


class ProgressAggregator:
    """Accumulates row outcomes for one attempt of one job.

    The error log keeps the first ``error_log_cap`` row errors verbatim. Later
    errors are still counted and summarized by a trailing marker entry in
    :meth:`snapshot`.
    """

    def __init__(self, *, error_log_cap: int = 1000, flush_every: int = 100) -> None:
        self.error_log_cap = max(error_log_cap, 0)
        self.flush_every = max(flush_every, 1)
        self.processed = 0
        self.success = 0
        self.errors = 0
        self.omitted = 0
        self._error_log: list[dict[str, Any]] = []
        self._since_flush = 0

    def record(self, success: bool, row_index: int, message: str | None = None) -> None:
        self.processed += 1
        self._since_flush += 1
        if success:
            self.success += 1
            rows_total.labels(outcome="success").inc()
            return

        self.errors += 1
        rows_total.labels(outcome="error").inc()
        if len(self._error_log) < self.error_log_cap:
            self._error_log.append({"row": row_index, "message": message or "Row failed"})
        else:
            self.omitted += 1

    def should_flush(self) -> bool:
        return self._since_flush >= self.flush_every

    def mark_flushed(self) -> None:
        self._since_flush = 0

    def snapshot(self) -> ProgressSnapshot:
        error_log = list(self._error_log)
        if self.omitted:
            error_log.append(
                {"row": None, "message": f"{self.omitted} additional errors omitted"}
            )
        return ProgressSnapshot(
            processed=self.processed,
            success=self.success,
            errors=self.errors,
            error_log=error_log,
            omitted=self.omitted,
        )


__all__ = ["ProgressAggregator", "ProgressSnapshot"]
