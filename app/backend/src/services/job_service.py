"""Job intake and lookup used by the HTTP layer."""

from __future__ import annotations

import structlog
from sqlalchemy.exc import SQLAlchemyError

from app.backend.src.core.errors import JobInputError, NotFoundError, StorageError
from app.backend.src.core.storage import Storage, job_file_key
from app.backend.src.models import ExtractionSchema, Job, JobStatus, JobType
from app.backend.src.models.base import new_id
from app.backend.src.services.dispatcher import QueueDispatcher
from app.backend.src.services.fetcher import filename_from_url
from app.backend.src.services.job_store import JobStore
from app.backend.src.services.llm import LlmService

LOGGER = structlog.get_logger(__name__)

DEFAULT_MIME_TYPE = "application/octet-stream"


class JobService:
    """Creates jobs and hands them to the dispatcher.

    Creation and dispatch are two steps: when dispatch fails the row stays
    ``pending`` and :class:`DispatchError` reaches the caller.
    """

    def __init__(
        self,
        store: JobStore,
        storage: Storage,
        dispatcher: QueueDispatcher,
        llm: LlmService,
    ) -> None:
        self.store = store
        self.storage = storage
        self.dispatcher = dispatcher
        self.llm = llm

    def _discard_file(self, job_id: str, key: str) -> None:
        try:
            self.storage.delete(key)
        except StorageError as exc:
            LOGGER.warning("job_file_delete_failed", job_id=job_id, key=key, error=str(exc))

    def _check_schema(self, organization_id: str, schema_id: str | None) -> None:
        if schema_id and self.store.get_schema(schema_id, organization_id) is None:
            raise NotFoundError(f"Schema not found: {schema_id}")

    def submit_upload(
        self,
        organization_id: str,
        user_id: str,
        job_type: JobType,
        file_bytes: bytes,
        file_name: str,
        mime_type: str | None = None,
        schema_id: str | None = None,
        hints: str | None = None,
    ) -> Job:
        if not file_bytes:
            raise JobInputError("Uploaded file is empty")
        self._check_schema(organization_id, schema_id)

        job_id = new_id("job")
        mime_type = mime_type or DEFAULT_MIME_TYPE
        file_key = job_file_key(organization_id, job_id, file_name)
        self.storage.put(file_key, file_bytes, mime_type)

        try:
            job = self.store.insert(
                Job(
                    id=job_id,
                    organization_id=organization_id,
                    user_id=user_id,
                    type=job_type.value,
                    status=JobStatus.PENDING.value,
                    file_name=file_name,
                    file_key=file_key,
                    file_size=len(file_bytes),
                    mime_type=mime_type,
                    schema_id=schema_id,
                    hints=hints,
                )
            )
        except SQLAlchemyError:
            self._discard_file(job_id, file_key)
            raise
        self.dispatcher.dispatch(job.id, organization_id, user_id)
        return job

    def submit_url(
        self,
        organization_id: str,
        user_id: str,
        job_type: JobType,
        source_url: str,
        schema_id: str | None = None,
        hints: str | None = None,
    ) -> Job:
        """Create a job whose bytes the worker fetches on its first attempt."""

        if not source_url.startswith(("http://", "https://")):
            raise JobInputError("URL must use http or https")
        self._check_schema(organization_id, schema_id)

        job = self.store.insert(
            Job(
                organization_id=organization_id,
                user_id=user_id,
                type=job_type.value,
                status=JobStatus.PENDING.value,
                file_name=filename_from_url(source_url),
                file_key=None,
                file_size=0,
                mime_type=DEFAULT_MIME_TYPE,
                source_url=source_url,
                schema_id=schema_id,
                hints=hints,
            )
        )
        self.dispatcher.dispatch(job.id, organization_id, user_id)
        return job

    def get_job(self, organization_id: str, job_id: str) -> Job:
        job = self.store.get(job_id, organization_id)
        if job is None:
            raise NotFoundError(f"Job not found: {job_id}")
        return job

    def delete_job(self, organization_id: str, job_id: str) -> None:
        job = self.get_job(organization_id, job_id)
        if job.file_key:
            self._discard_file(job_id, job.file_key)
        self.store.delete(job_id)
        LOGGER.info("job_deleted", job_id=job_id, organization_id=organization_id)

    def generate_schema(
        self,
        organization_id: str,
        user_id: str,
        job_id: str,
        hints: str | None = None,
    ) -> ExtractionSchema:
        """Ask the LLM for a schema describing a processed job and save it."""

        job = self.get_job(organization_id, job_id)
        if not job.markdown_result:
            raise JobInputError("Job has not been processed yet or has no markdown result")

        generated = self.llm.generate_schema(job.markdown_result, hints)
        schema = self.store.insert_schema(
            ExtractionSchema(
                organization_id=organization_id,
                user_id=user_id,
                name=generated.name,
                description=generated.description,
                json_schema=generated.json_schema,
                sample_job_id=job.id,
                generated_by=self.llm.model,
            )
        )
        LOGGER.info("schema_generated", schema_id=schema.id, job_id=job_id)
        return schema


__all__ = ["JobService"]
