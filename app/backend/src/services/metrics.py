"""Prometheus metric definitions for job processing."""

from __future__ import annotations

from prometheus_client import Counter, Histogram

jobs_dispatched_total = Counter(
    "docflow_jobs_dispatched_total",
    "Dispatch requests by outcome (queued, duplicate, unavailable).",
    labelnames=["outcome"],
)

job_attempts_total = Counter(
    "docflow_job_attempts_total",
    "Processing attempts by job type and outcome.",
    labelnames=["type", "outcome"],
)

job_attempt_duration_seconds = Histogram(
    "docflow_job_attempt_duration_seconds",
    "Duration of a single processing attempt in seconds.",
    labelnames=["type"],
)

job_events_published_total = Counter(
    "docflow_job_events_published_total",
    "Job events handed to the event broker, by event type.",
    labelnames=["type"],
)

__all__ = [
    "job_attempt_duration_seconds",
    "job_attempts_total",
    "job_events_published_total",
    "jobs_dispatched_total",
]
