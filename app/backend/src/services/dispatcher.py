"""Queue dispatch with an explicit retry policy.

Submission and execution are decoupled: ``QueueDispatcher.dispatch`` only
publishes a task message; the worker side asks the same dispatcher for an
execution lease and for the retry decision after a failed attempt, so the
question "will this job be retried?" is answered in exactly one place.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import structlog
from celery import Celery
from kombu.exceptions import OperationalError
from redis.exceptions import RedisError

from app.backend.src.core.errors import DispatchError
from app.backend.src.core.redis_queue import DispatchLedger, Lease
from app.backend.src.services.metrics import jobs_dispatched_total

LOGGER = structlog.get_logger(__name__)

PROCESS_JOB_TASK = "tasks.process_job"

STATE_QUEUED = "queued"
STATE_ACTIVE = "active"
STATE_RETRYING = "retrying"
STATE_SUCCEEDED = "succeeded"
STATE_FAILED = "failed"
TERMINAL_DISPATCH_STATES = frozenset({STATE_SUCCEEDED, STATE_FAILED})


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt budget and exponential backoff for one job.

    Attempts are 1-indexed: attempt ``n`` failing waits
    ``base_delay * backoff_factor ** (n - 1)`` seconds before attempt ``n + 1``.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    backoff_factor: float = 2.0
    max_delay: float | None = None

    def delay_for(self, attempt: int) -> float:
        delay = self.base_delay * (self.backoff_factor ** max(attempt - 1, 0))
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        return delay

    def should_retry(self, attempt: int, error: BaseException) -> bool:
        if attempt >= self.max_attempts:
            return False
        return bool(getattr(error, "retryable", True))

    def next_delay(self, attempt: int, error: BaseException) -> float | None:
        """Return the backoff before the next attempt, or ``None`` when exhausted."""

        if not self.should_retry(attempt, error):
            return None
        return self.delay_for(attempt)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class QueueDispatcher:
    """Schedules job executions on Celery and tracks them in a dispatch ledger."""

    def __init__(
        self,
        celery_app: Celery,
        ledger: DispatchLedger,
        policy: RetryPolicy | None = None,
        *,
        queue_name: str = "jobs",
        lease_ttl: int = 600,
        success_ttl: int = 86_400,
        failure_ttl: int = 604_800,
    ) -> None:
        self.celery_app = celery_app
        self.ledger = ledger
        self.policy = policy or RetryPolicy()
        self.queue_name = queue_name
        self.lease_ttl = lease_ttl
        self.success_ttl = success_ttl
        self.failure_ttl = failure_ttl

    def dispatch(self, job_id: str, organization_id: str, user_id: str) -> str:
        """Schedule one attempt sequence for ``job_id`` and return its dispatch id."""

        message = {
            "job_id": job_id,
            "organization_id": organization_id,
            "user_id": user_id,
        }
        record = {**message, "state": STATE_QUEUED, "attempts": 0, "updated_at": _now()}

        if not self.ledger.reserve(job_id, record, self.failure_ttl):
            existing = self.ledger.read(job_id) or {}
            if existing.get("state") not in TERMINAL_DISPATCH_STATES:
                jobs_dispatched_total.labels(outcome="duplicate").inc()
                LOGGER.info(
                    "job_dispatch_deduplicated",
                    job_id=job_id,
                    state=existing.get("state"),
                )
                return job_id
            self.ledger.write(job_id, record, self.failure_ttl)

        try:
            self.celery_app.send_task(
                PROCESS_JOB_TASK,
                kwargs=message,
                task_id=job_id,
                queue=self.queue_name,
                retry=True,
                retry_policy={
                    "max_retries": 2,
                    "interval_start": 0,
                    "interval_step": 0.5,
                    "interval_max": 1,
                },
            )
        except (OperationalError, RedisError, OSError) as exc:
            self.ledger.discard(job_id)
            jobs_dispatched_total.labels(outcome="unavailable").inc()
            LOGGER.error("job_dispatch_failed", job_id=job_id, error=str(exc))
            raise DispatchError(f"Queue unavailable: {exc}") from exc

        jobs_dispatched_total.labels(outcome="queued").inc()
        LOGGER.info(
            "job_dispatched",
            job_id=job_id,
            organization_id=organization_id,
            queue=self.queue_name,
        )
        return job_id

    def acquire_lease(self, job_id: str) -> Lease | None:
        """Claim ``job_id`` for one worker slot; ``None`` if another slot holds it."""

        return self.ledger.acquire_lease(job_id, self.lease_ttl)

    def next_delay(self, attempt: int, error: BaseException) -> float | None:
        return self.policy.next_delay(attempt, error)

    def record_attempt(self, job_id: str, attempt: int, state: str) -> None:
        """Update the ledger after an attempt starts or ends; retention follows the state."""

        if state == STATE_SUCCEEDED:
            ttl = self.success_ttl
        else:
            ttl = self.failure_ttl
        try:
            record: dict[str, Any] = self.ledger.read(job_id) or {"job_id": job_id}
            record.update(state=state, attempts=attempt, updated_at=_now())
            self.ledger.write(job_id, record, ttl)
        except DispatchError as exc:
            LOGGER.warning(
                "dispatch_record_update_failed",
                job_id=job_id,
                state=state,
                error=str(exc),
            )

    def check_health(self) -> bool:
        if not self.ledger.ping():
            return False
        try:
            with self.celery_app.connection_for_write() as connection:
                connection.ensure_connection(max_retries=1)
        except (OperationalError, RedisError, OSError) as exc:
            LOGGER.warning("queue_health_check_failed", error=str(exc))
            return False
        return True


__all__ = [
    "PROCESS_JOB_TASK",
    "QueueDispatcher",
    "RetryPolicy",
    "STATE_ACTIVE",
    "STATE_FAILED",
    "STATE_QUEUED",
    "STATE_RETRYING",
    "STATE_SUCCEEDED",
]
