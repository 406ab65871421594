"""Prometheus metric definitions for the job pipeline."""

from __future__ import annotations

from prometheus_client import Counter, Histogram

pipeline_jobs_total = Counter(
    "pipeline_jobs_total",
    "Jobs reaching a terminal state, by direction and outcome.",
    labelnames=["direction", "status"],
)

job_duration_seconds = Histogram(
    "pipeline_job_duration_seconds",
    "Duration of a single job attempt in seconds.",
    labelnames=["queue"],
)

rows_total = Counter(
    "pipeline_rows_total",
    "Import rows processed, by outcome.",
    labelnames=["outcome"],
)

job_retries_total = Counter(
    "pipeline_job_retries_total",
    "Jobs requeued after a transient failure.",
    labelnames=["queue"],
)

codec_seconds = Histogram(
    "pipeline_codec_seconds",
    "Time spent parsing or generating a file.",
    labelnames=["format", "operation"],
)

__all__ = [
    "codec_seconds",
    "job_duration_seconds",
    "job_retries_total",
    "pipeline_jobs_total",
    "rows_total",
]
