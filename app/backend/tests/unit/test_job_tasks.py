"""Celery task boundary: attempt numbering and retry scheduling."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any
from unittest.mock import Mock

sys.path.append(str(Path(__file__).resolve().parents[4]))

import pytest
from celery.exceptions import Reject, Retry
from kombu.exceptions import OperationalError
from conftest import EventRecorder, FakeOcr, JobFactory

import tasks.job_tasks as job_tasks
from app.backend.src.core.container import Services
from app.backend.src.core.errors import NotFoundError, OcrTimeoutError
from app.backend.src.models import JobType
from app.backend.src.services.dispatcher import STATE_FAILED


@pytest.fixture()
def task_services(services: Services, monkeypatch: pytest.MonkeyPatch) -> Services:
    monkeypatch.setattr(job_tasks, "worker_services", lambda: services)
    return services


def test_task_completes_job(task_services: Services, make_job: JobFactory) -> None:
    job = make_job(JobType.PARSE)

    result = job_tasks.process_job(job.id, job.organization_id, job.user_id)

    assert result == {"job_id": job.id, "status": "completed", "attempt": 1}
    assert task_services.store.require(job.id).markdown_result == "hello"


def test_retryable_failure_schedules_retry(task_services: Services, make_job: JobFactory, ocr: FakeOcr, monkeypatch: pytest.MonkeyPatch) -> None:
    job = make_job(JobType.PARSE)
    ocr.errors = [OcrTimeoutError(300, "http://ocr/layout-parsing")]
    scheduled: dict[str, Any] = {}

    def fake_retry(**kwargs: Any) -> Retry:
        scheduled.update(kwargs)
        return Retry("retry scheduled")

    monkeypatch.setattr(job_tasks.process_job, "retry", fake_retry)

    with pytest.raises(Retry):
        job_tasks.process_job(job.id, job.organization_id, job.user_id)

    assert scheduled["countdown"] == 1.0
    assert scheduled["max_retries"] == 2
    assert isinstance(scheduled["exc"], OcrTimeoutError)
    assert task_services.store.require(job.id).status == "failed"


def test_missing_job_raises_original_error(task_services: Services) -> None:
    with pytest.raises(NotFoundError):
        job_tasks.process_job("job_missing", "org_test", "usr_test")


def test_held_lease_reports_skipped(task_services: Services, make_job: JobFactory) -> None:
    job = make_job(JobType.PARSE)
    lease = task_services.dispatcher.acquire_lease(job.id)

    result = job_tasks.process_job(job.id, job.organization_id, job.user_id)

    assert result["status"] == "skipped"
    lease.release()


def test_unpublished_retry_becomes_terminal_failure(
    task_services: Services,
    make_job: JobFactory,
    ocr: FakeOcr,
    celery_app: Mock,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    job = make_job(JobType.PARSE)
    ocr.errors = [OcrTimeoutError(300, "http://ocr/layout-parsing")]
    events = EventRecorder(task_services.broker)
    events.watch(job.id)

    def broker_down(**kwargs: Any) -> Retry:
        raise Reject(OperationalError("broker down"), requeue=False)

    monkeypatch.setattr(job_tasks.process_job, "retry", broker_down)

    with pytest.raises(Reject):
        job_tasks.process_job(job.id, job.organization_id, job.user_id)

    assert task_services.store.require(job.id).status == "failed"
    assert task_services.dispatcher.ledger.read(job.id)["state"] == STATE_FAILED
    errors = events.of_type("error")
    assert len(errors) == 1
    assert "timed out" in errors[0]["data"]["error"]
    events.close()

    task_services.dispatcher.dispatch(job.id, job.organization_id, job.user_id)
    celery_app.send_task.assert_called_once()
