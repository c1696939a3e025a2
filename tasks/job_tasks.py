"""Celery task that runs one processing attempt for a dispatched job."""

from __future__ import annotations

import threading
from typing import Any

import structlog
from celery import signals
from celery.exceptions import Reject

from app.backend.src.core.container import Services, build_services
from app.backend.src.core.errors import JobAttemptFailed
from app.backend.src.services.dispatcher import PROCESS_JOB_TASK

from .worker import celery, settings

LOGGER = structlog.get_logger(__name__)

_services: Services | None = None
_services_lock = threading.Lock()


@signals.worker_process_init.connect
def _init_worker_services(**_: Any) -> None:
    """Build the service graph once per worker child, after the fork."""

    global _services
    with _services_lock:
        _services = build_services(settings, celery)


@signals.worker_process_shutdown.connect
def _close_worker_services(**_: Any) -> None:
    global _services
    with _services_lock:
        if _services is not None:
            _services.close()
            _services = None


def worker_services() -> Services:
    """Return this process's services; solo and thread pools build them on first use."""

    global _services
    with _services_lock:
        if _services is None:
            _services = build_services(settings, celery)
        return _services


@celery.task(name=PROCESS_JOB_TASK, bind=True)
def process_job(self, job_id: str, organization_id: str, user_id: str) -> dict[str, Any]:
    """Run the pipeline for ``job_id``; retries follow the dispatcher's policy."""

    services = worker_services()
    attempt = self.request.retries + 1
    try:
        job = services.worker.run_attempt(job_id, attempt)
    except JobAttemptFailed as failure:
        if failure.will_retry:
            LOGGER.info(
                "job_retry_scheduled",
                job_id=job_id,
                attempt=attempt,
                countdown=failure.retry_delay,
            )
            try:
                raise self.retry(
                    exc=failure.error,
                    countdown=failure.retry_delay,
                    max_retries=services.dispatcher.policy.max_attempts - 1,
                )
            except Reject:
                # The retry message never reached the broker.
                LOGGER.error("job_retry_publish_failed", job_id=job_id, attempt=attempt)
                services.worker.abandon_retry(job_id, attempt)
                raise
        raise failure.error

    if job is None:
        return {"job_id": job_id, "status": "skipped", "attempt": attempt}
    return {"job_id": job_id, "status": job.status, "attempt": attempt}


__all__ = ["process_job", "worker_services"]
