"""Job intake: storage, persistence and dispatch ordering."""

from __future__ import annotations

import sys
from pathlib import Path
from unittest.mock import Mock

sys.path.append(str(Path(__file__).resolve().parents[4]))

import pytest
from kombu.exceptions import OperationalError as BrokerError
from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from conftest import JobFactory, SchemaFactory

from app.backend.src.core.container import Services
from app.backend.src.core.errors import DispatchError, JobInputError, NotFoundError, StorageError
from app.backend.src.core.redis_queue import InMemoryDispatchLedger
from app.backend.src.models import Job, JobStatus, JobType
from app.backend.src.services.dispatcher import PROCESS_JOB_TASK, STATE_QUEUED

ORG_ID = "org_test"
USER_ID = "usr_test"


def test_upload_stores_file_then_dispatches(services: Services, celery_app: Mock, ledger: InMemoryDispatchLedger) -> None:
    job = services.job_service.submit_upload(
        ORG_ID, USER_ID, JobType.PARSE, b"%PDF-1.7", "scan.pdf", "application/pdf"
    )

    assert job.status == JobStatus.PENDING.value
    assert job.file_key == f"{ORG_ID}/jobs/{job.id}/scan.pdf"
    assert job.file_size == 8
    assert services.storage.get(job.file_key) == b"%PDF-1.7"

    args, kwargs = celery_app.send_task.call_args
    assert args == (PROCESS_JOB_TASK,)
    assert kwargs["kwargs"] == {"job_id": job.id, "organization_id": ORG_ID, "user_id": USER_ID}
    assert ledger.read(job.id)["state"] == STATE_QUEUED


def test_empty_upload_is_rejected(services: Services, celery_app: Mock) -> None:
    with pytest.raises(JobInputError):
        services.job_service.submit_upload(ORG_ID, USER_ID, JobType.PARSE, b"", "empty.pdf")
    celery_app.send_task.assert_not_called()


def test_url_job_has_no_file_key(services: Services) -> None:
    job = services.job_service.submit_url(
        ORG_ID, USER_ID, JobType.PARSE, "https://files.example.com/in/report.pdf"
    )

    assert job.file_key is None
    assert job.file_name == "report.pdf"
    assert job.source_url == "https://files.example.com/in/report.pdf"
    assert job.mime_type == "application/octet-stream"


def test_non_http_url_is_rejected(services: Services) -> None:
    with pytest.raises(JobInputError):
        services.job_service.submit_url(ORG_ID, USER_ID, JobType.PARSE, "ftp://files.example.com/a.pdf")


def test_dispatch_failure_leaves_job_pending(services: Services, celery_app: Mock) -> None:
    celery_app.send_task.side_effect = BrokerError("broker down")

    with pytest.raises(DispatchError):
        services.job_service.submit_url(ORG_ID, USER_ID, JobType.PARSE, "https://files.example.com/a.pdf")

    with services.session_factory() as session:
        stored = session.scalars(select(Job)).one()
    assert stored.status == JobStatus.PENDING.value
    assert stored.source_url == "https://files.example.com/a.pdf"


def test_unknown_schema_is_not_found(services: Services) -> None:
    with pytest.raises(NotFoundError):
        services.job_service.submit_upload(
            ORG_ID, USER_ID, JobType.EXTRACT, b"%PDF", "a.pdf", schema_id="sch_missing"
        )


def test_schema_from_other_organization_is_not_found(services: Services, make_schema: SchemaFactory) -> None:
    schema = make_schema(organization_id="org_other")

    with pytest.raises(NotFoundError):
        services.job_service.submit_upload(
            ORG_ID, USER_ID, JobType.EXTRACT, b"%PDF", "a.pdf", schema_id=schema.id
        )


def test_get_job_is_scoped_to_organization(services: Services, make_job: JobFactory) -> None:
    job = make_job(organization_id="org_other")

    with pytest.raises(NotFoundError):
        services.job_service.get_job(ORG_ID, job.id)


def test_delete_job_tolerates_storage_errors(services: Services, make_job: JobFactory, monkeypatch: pytest.MonkeyPatch) -> None:
    job = make_job()

    def broken_delete(key: str) -> None:
        raise StorageError("disk gone", key=key)

    monkeypatch.setattr(services.storage, "delete", broken_delete)
    services.job_service.delete_job(ORG_ID, job.id)

    assert services.store.get(job.id) is None


def test_generate_schema_requires_markdown(services: Services, make_job: JobFactory) -> None:
    job = make_job()

    with pytest.raises(JobInputError):
        services.job_service.generate_schema(ORG_ID, USER_ID, job.id)


def test_generate_schema_saves_result(services: Services, make_job: JobFactory) -> None:
    job = make_job(status=JobStatus.COMPLETED, markdown_result="# Invoice\nTotal: 5")

    schema = services.job_service.generate_schema(ORG_ID, USER_ID, job.id, hints="totals")

    assert schema.name == "Invoice"
    assert schema.sample_job_id == job.id
    assert schema.generated_by == "test/model"
    assert services.store.get_schema(schema.id, ORG_ID) is not None


def test_upload_blob_is_removed_when_insert_fails(services: Services, monkeypatch: pytest.MonkeyPatch, celery_app: Mock) -> None:
    def failing_insert(job: Job) -> Job:
        raise OperationalError("INSERT INTO jobs", {}, Exception("database is locked"))

    monkeypatch.setattr(services.store, "insert", failing_insert)

    with pytest.raises(OperationalError):
        services.job_service.submit_upload(ORG_ID, USER_ID, JobType.PARSE, b"%PDF-1.7", "scan.pdf")

    assert [path for path in services.storage.root.rglob("*") if path.is_file()] == []
    celery_app.send_task.assert_not_called()


def test_dot_only_upload_name_is_stored(services: Services) -> None:
    job = services.job_service.submit_upload(ORG_ID, USER_ID, JobType.PARSE, b"%PDF", "..")

    assert job.file_key == f"{ORG_ID}/jobs/{job.id}/file"
    assert services.storage.get(job.file_key) == b"%PDF"
