"""Processing pipeline for one job attempt: fetch -> OCR -> extraction -> finalize."""

from __future__ import annotations

from time import perf_counter
from typing import Any, Protocol

import structlog

from app.backend.src.core.errors import JobInputError
from app.backend.src.core.storage import Storage, job_file_key
from app.backend.src.models import Job, JobStatus, JobType
from app.backend.src.models.base import utcnow
from app.backend.src.services.fetcher import FetchedFile
from app.backend.src.services.job_status import CompletedJobResult, JobStatusService
from app.backend.src.services.job_store import JobStore
from app.backend.src.services.llm import ExtractionResult
from app.backend.src.services.ocr import OcrResult

LOGGER = structlog.get_logger(__name__)


class Fetcher(Protocol):
    def fetch(self, url: str) -> FetchedFile:
        ...


class OcrCollaborator(Protocol):
    def parse(self, data: bytes, mime_type: str) -> OcrResult:
        ...


class LlmCollaborator(Protocol):
    def extract(
        self,
        markdown: str,
        schema: dict[str, Any] | None = None,
        hints: str | None = None,
    ) -> ExtractionResult:
        ...


class JobPipeline:
    """Runs the stages of one attempt; any error propagates to the caller."""

    def __init__(
        self,
        store: JobStore,
        status: JobStatusService,
        storage: Storage,
        fetcher: Fetcher,
        ocr: OcrCollaborator,
        llm: LlmCollaborator,
    ) -> None:
        self.store = store
        self.status = status
        self.storage = storage
        self.fetcher = fetcher
        self.ocr = ocr
        self.llm = llm

    def run(self, job: Job, context: dict[str, Any] | None = None) -> Job:
        context = context if context is not None else {}
        start = perf_counter()

        self.status.update_status(job.id, JobStatus.PROCESSING, started_at=utcnow())

        file_key, mime_type = self._ensure_file(job, context)

        data = self.storage.get(file_key)
        ocr_result = self.ocr.parse(data, mime_type)
        context["page_count"] = ocr_result.page_count

        # Checkpoint: observers can see OCR output before the job finalizes.
        self.status.update_status(
            job.id,
            JobStatus.PROCESSING,
            markdown_result=ocr_result.markdown,
            page_count=ocr_result.page_count,
        )

        if job.type == JobType.EXTRACT.value:
            return self._run_extraction(job, ocr_result, start, context)
        return self._finish_parse(job, ocr_result, start)

    def _ensure_file(self, job: Job, context: dict[str, Any]) -> tuple[str, str]:
        """Return ``(file_key, mime_type)``, fetching the source URL on first use."""

        if job.file_key:
            return job.file_key, job.mime_type

        if not job.source_url:
            raise JobInputError("No file or URL provided for job")

        fetched = self.fetcher.fetch(job.source_url)
        file_key = job_file_key(job.organization_id, job.id, fetched.file_name)
        self.storage.put(file_key, fetched.content, fetched.content_type)
        self.status.update_file_info(
            job.id,
            file_key=file_key,
            file_name=fetched.file_name,
            file_size=fetched.size,
            mime_type=fetched.content_type,
        )
        context.update(file_size=fetched.size, mime_type=fetched.content_type, fetched=True)
        return file_key, fetched.content_type

    def _run_extraction(
        self,
        job: Job,
        ocr_result: OcrResult,
        start: float,
        context: dict[str, Any],
    ) -> Job:
        self.status.update_status(job.id, JobStatus.EXTRACTING)

        schema = job.extraction_schema.json_schema if job.extraction_schema else None
        extraction = self.llm.extract(ocr_result.markdown, schema=schema, hints=job.hints)
        if job.schema_id:
            self.store.mark_schema_used(job.schema_id)

        token_count = extraction.usage.total_tokens
        context.update(token_count=token_count, llm_model=extraction.model)
        return self.status.complete_job(
            job.id,
            CompletedJobResult(
                markdown_result=ocr_result.markdown,
                page_count=ocr_result.page_count,
                processing_time_ms=_elapsed_ms(start),
                json_result=extraction.data,
                token_count=token_count,
                llm_model=extraction.model,
            ),
        )

    def _finish_parse(self, job: Job, ocr_result: OcrResult, start: float) -> Job:
        return self.status.complete_job(
            job.id,
            CompletedJobResult(
                markdown_result=ocr_result.markdown,
                page_count=ocr_result.page_count,
                processing_time_ms=_elapsed_ms(start),
            ),
        )


def _elapsed_ms(start: float) -> int:
    return int((perf_counter() - start) * 1000)


__all__ = ["Fetcher", "JobPipeline", "LlmCollaborator", "OcrCollaborator"]
