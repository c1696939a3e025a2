"""Job status protocol: persist to the JobStore, then publish a matching event.

The two steps are not transactional. Publishing is best-effort; the
persisted row stays authoritative and subscribers get a snapshot on
connect to cover anything they missed.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import structlog

from app.backend.src.core.errors import InvalidStatusTransition
from app.backend.src.models import Job, JobStatus
from app.backend.src.models.base import utcnow
from app.backend.src.schemas.events import JobEvent, JobEventData
from app.backend.src.services.event_broker import EventBroker
from app.backend.src.services.job_store import JobStore
from app.backend.src.services.metrics import job_events_published_total

LOGGER = structlog.get_logger(__name__)

# Allowed targets per current status. ``failed -> processing`` is the re-entry
# of a retried attempt and ``extracting -> processing`` the restart of an attempt
# redelivered after a worker crash; ``completed -> completed`` is an idempotent
# re-complete.
ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    JobStatus.PENDING.value: frozenset({JobStatus.PROCESSING.value, JobStatus.FAILED.value}),
    JobStatus.PROCESSING.value: frozenset(
        {
            JobStatus.PROCESSING.value,
            JobStatus.EXTRACTING.value,
            JobStatus.COMPLETED.value,
            JobStatus.FAILED.value,
        }
    ),
    JobStatus.EXTRACTING.value: frozenset(
        {JobStatus.PROCESSING.value, JobStatus.COMPLETED.value, JobStatus.FAILED.value}
    ),
    JobStatus.FAILED.value: frozenset({JobStatus.PROCESSING.value}),
    JobStatus.COMPLETED.value: frozenset({JobStatus.COMPLETED.value}),
}


def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


@dataclass(frozen=True)
class CompletedJobResult:
    markdown_result: str
    page_count: int
    processing_time_ms: int
    json_result: Any | None = None
    token_count: int | None = None
    llm_model: str | None = None


class JobStatusService:
    """The only writer of job status during a processing attempt."""

    def __init__(self, store: JobStore, broker: EventBroker) -> None:
        self.store = store
        self.broker = broker

    def _check_transition(self, job: Job, target: JobStatus) -> None:
        if not can_transition(job.status, target.value):
            raise InvalidStatusTransition(job.id, job.status, target.value)

    def _publish(self, event: JobEvent) -> None:
        try:
            self.broker.publish(event.job_id, event)
        except Exception as exc:  # publish is best-effort; the row is already persisted
            LOGGER.warning(
                "job_event_publish_failed",
                job_id=event.job_id,
                event_type=event.type,
                error=str(exc),
            )
            return
        job_events_published_total.labels(type=event.type).inc()

    def update_status(self, job_id: str, status: JobStatus, **fields: Any) -> Job:
        """Persist ``status`` plus checkpoint ``fields`` and publish a ``status`` event."""

        current = self.store.require(job_id)
        self._check_transition(current, status)
        job = self.store.update_fields(job_id, {"status": status.value, **fields})
        self._publish(
            JobEvent.status(job_id, status.value, fields.get("processing_time_ms"))
        )
        LOGGER.info("job_status_updated", job_id=job_id, status=status.value, previous=current.status)
        return job

    def update_file_info(
        self,
        job_id: str,
        *,
        file_key: str,
        file_name: str,
        file_size: int,
        mime_type: str,
    ) -> Job:
        return self.store.update_fields(
            job_id,
            {
                "file_key": file_key,
                "file_name": file_name,
                "file_size": file_size,
                "mime_type": mime_type,
            },
        )

    def complete_job(self, job_id: str, result: CompletedJobResult) -> Job:
        current = self.store.require(job_id)
        self._check_transition(current, JobStatus.COMPLETED)

        completed_at = current.completed_at
        if current.status != JobStatus.COMPLETED.value or completed_at is None:
            completed_at = utcnow()

        job = self.store.update_fields(
            job_id,
            {
                "status": JobStatus.COMPLETED.value,
                "completed_at": completed_at,
                "markdown_result": result.markdown_result,
                "json_result": result.json_result,
                "page_count": result.page_count,
                "token_count": result.token_count,
                "processing_time_ms": result.processing_time_ms,
                "llm_model": result.llm_model,
                "error_code": None,
                "error_message": None,
            },
        )
        self._publish(
            JobEvent(
                type="completed",
                job_id=job_id,
                data=JobEventData(
                    status=JobStatus.COMPLETED.value,
                    markdown_result=result.markdown_result,
                    json_result=result.json_result,
                    processing_time_ms=result.processing_time_ms,
                ),
            )
        )
        LOGGER.info(
            "job_completed",
            job_id=job_id,
            page_count=result.page_count,
            token_count=result.token_count,
            processing_time_ms=result.processing_time_ms,
        )
        return job

    def fail_job(
        self,
        job_id: str,
        error_code: str,
        error_message: str,
        *,
        should_retry: bool,
    ) -> Job:
        """Record one failed attempt; the ``error`` event fires only once retries are over."""

        current = self.store.require(job_id)
        self._check_transition(current, JobStatus.FAILED)
        job = self.store.update_fields(
            job_id,
            {
                "status": JobStatus.FAILED.value,
                "error_code": error_code,
                "error_message": error_message,
                "retry_count": Job.retry_count + 1,
            },
        )
        if not should_retry:
            self._publish(
                JobEvent(
                    type="error",
                    job_id=job_id,
                    data=JobEventData(status=JobStatus.FAILED.value, error=error_message),
                )
            )
        LOGGER.warning(
            "job_failed",
            job_id=job_id,
            error_code=error_code,
            retry_count=job.retry_count,
            will_retry=should_retry,
        )
        return job

    def announce_failure(self, job_id: str) -> Job:
        """Publish the deferred ``error`` event for a job whose retry was abandoned."""

        job = self.store.require(job_id)
        self._publish(
            JobEvent(
                type="error",
                job_id=job_id,
                data=JobEventData(
                    status=job.status,
                    error=job.error_message or "Unknown error occurred",
                ),
            )
        )
        LOGGER.warning("job_retry_abandoned", job_id=job_id, error_code=job.error_code)
        return job


__all__ = [
    "ALLOWED_TRANSITIONS",
    "CompletedJobResult",
    "JobStatusService",
    "can_transition",
]
