"""Attempt boundary for worker slots.

``JobWorker.run_attempt`` is what a Celery task calls for each delivery of a
job. It holds the dispatcher's lease for the duration of the attempt, runs
the pipeline, and on failure writes exactly one ``fail_job`` whose
``should_retry`` flag comes from the dispatcher's retry policy before
raising :class:`JobAttemptFailed` back to the queue layer.
"""

from __future__ import annotations

from time import perf_counter
from typing import Any

import structlog
from redis.exceptions import RedisError

from app.backend.src.core.errors import JobAttemptFailed, NotFoundError
from app.backend.src.models import Job, JobStatus
from app.backend.src.services.dispatcher import (
    STATE_ACTIVE,
    STATE_FAILED,
    STATE_RETRYING,
    STATE_SUCCEEDED,
    QueueDispatcher,
)
from app.backend.src.services.job_status import JobStatusService
from app.backend.src.services.job_store import JobStore
from app.backend.src.services.metrics import (
    job_attempt_duration_seconds,
    job_attempts_total,
)
from app.backend.src.services.pipeline import JobPipeline

LOGGER = structlog.get_logger(__name__)


def error_code_for(error: BaseException) -> str:
    return getattr(error, "code", None) or type(error).__name__ or "PROCESSING_ERROR"


class JobWorker:
    def __init__(
        self,
        store: JobStore,
        status: JobStatusService,
        pipeline: JobPipeline,
        dispatcher: QueueDispatcher,
    ) -> None:
        self.store = store
        self.status = status
        self.pipeline = pipeline
        self.dispatcher = dispatcher

    def run_attempt(self, job_id: str, attempt: int = 1) -> Job | None:
        """Run one attempt; returns ``None`` when another slot already holds the job."""

        lease = self.dispatcher.acquire_lease(job_id)
        if lease is None:
            LOGGER.info("job_attempt_skipped", job_id=job_id, attempt=attempt, reason="lease_held")
            return None

        start = perf_counter()
        context: dict[str, Any] = {"job_id": job_id, "attempt": attempt}
        try:
            self.dispatcher.record_attempt(job_id, attempt, STATE_ACTIVE)
            try:
                job = self.store.require(job_id)
                context.update(
                    type=job.type,
                    organization_id=job.organization_id,
                    user_id=job.user_id,
                    file_size=job.file_size,
                    mime_type=job.mime_type,
                )
                if job.status == JobStatus.COMPLETED.value:
                    context.update(status=job.status, outcome="skipped")
                    self.dispatcher.record_attempt(job_id, attempt, STATE_SUCCEEDED)
                    return job

                result = self.pipeline.run(job, context)
            except Exception as exc:
                retry_delay = self.dispatcher.next_delay(attempt, exc)
                self._record_failure(job_id, exc, retry_delay)
                self.dispatcher.record_attempt(
                    job_id, attempt, STATE_RETRYING if retry_delay is not None else STATE_FAILED
                )
                context.update(
                    status=JobStatus.FAILED.value,
                    outcome="error",
                    will_retry=retry_delay is not None,
                    retry_delay=retry_delay,
                    error={"code": error_code_for(exc), "message": str(exc)},
                )
                raise JobAttemptFailed(job_id, exc, retry_delay) from exc

            self.dispatcher.record_attempt(job_id, attempt, STATE_SUCCEEDED)
            context.update(status=result.status, outcome="success")
            return result
        finally:
            self._release(lease, job_id)
            duration = perf_counter() - start
            job_type = context.get("type", "unknown")
            job_attempt_duration_seconds.labels(type=job_type).observe(duration)
            job_attempts_total.labels(type=job_type, outcome=context.get("outcome", "error")).inc()
            context["duration_ms"] = int(duration * 1000)
            LOGGER.info("job_processing", **context)

    def abandon_retry(self, job_id: str, attempt: int) -> None:
        """Make a failed attempt terminal when its retry could not be scheduled."""

        self.dispatcher.record_attempt(job_id, attempt, STATE_FAILED)
        try:
            self.status.announce_failure(job_id)
        except NotFoundError:
            LOGGER.warning("job_retry_abandoned_missing", job_id=job_id, attempt=attempt)

    def _record_failure(self, job_id: str, error: BaseException, retry_delay: float | None) -> None:
        if isinstance(error, NotFoundError):
            return
        try:
            self.status.fail_job(
                job_id,
                error_code_for(error),
                str(error) or "Unknown error occurred",
                should_retry=retry_delay is not None,
            )
        except Exception:
            LOGGER.exception("job_failure_record_failed", job_id=job_id)

    @staticmethod
    def _release(lease: Any, job_id: str) -> None:
        try:
            lease.release()
        except RedisError as exc:
            LOGGER.warning("job_lease_release_failed", job_id=job_id, error=str(exc))


__all__ = ["JobWorker", "error_code_for"]
