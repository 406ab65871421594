"""Celery tasks for pipeline housekeeping."""

from __future__ import annotations

from datetime import datetime
from functools import lru_cache
from typing import Any

import structlog

from ..main import Pipeline, build_pipeline
from .worker import celery

LOGGER = structlog.get_logger(__name__)


@lru_cache()
def get_pipeline() -> Pipeline:
    """Return the process-wide pipeline used by maintenance tasks."""

    return build_pipeline()


@celery.task(name="tasks.maintenance.sweep_expired_jobs")
def sweep_expired_jobs(before: str | None = None) -> dict[str, Any]:
    """Delete export jobs (and their files) whose retention window has passed."""

    cutoff = datetime.fromisoformat(before) if before else None
    try:
        removed = get_pipeline().service.sweep_expired(cutoff)
    except Exception as exc:  # pragma: no cover - logged and re-raised
        LOGGER.error("expired_sweep_failure", error=str(exc))
        raise
    LOGGER.info("expired_sweep_success", removed=len(removed))
    return {"removed": removed, "count": len(removed)}


@celery.task(name="tasks.maintenance.queue_stats")
def queue_stats() -> dict[str, dict[str, int]]:
    """Report waiting, active and delayed counts for every job queue."""

    stats = get_pipeline().service.queue_stats()
    LOGGER.info("queue_stats", **stats)
    return stats


__all__ = ["get_pipeline", "queue_stats", "sweep_expired_jobs"]
