"""Durable job records: the single source of truth for job state."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Any

import structlog
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app.backend.src.core.errors import NotFoundError
from app.backend.src.db import session_scope
from app.backend.src.models import ExtractionSchema, Job
from app.backend.src.models.base import utcnow

LOGGER = structlog.get_logger(__name__)


class JobStore:
    """Reads and writes :class:`Job` rows in short transactional scopes.

    Returned objects are detached snapshots; callers never hold a session
    across network calls.
    """

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self.session_factory = session_factory

    def insert(self, job: Job) -> Job:
        with session_scope(self.session_factory) as session:
            session.add(job)
            session.flush()
            session.refresh(job)
        LOGGER.info("job_inserted", job_id=job.id, type=job.type, organization_id=job.organization_id)
        return job

    def get(self, job_id: str, organization_id: str | None = None) -> Job | None:
        """Return the job, scoped to ``organization_id`` when one is given."""

        stmt = select(Job).where(Job.id == job_id)
        if organization_id is not None:
            stmt = stmt.where(Job.organization_id == organization_id)
        with session_scope(self.session_factory) as session:
            return session.execute(stmt).unique().scalar_one_or_none()

    def require(self, job_id: str, organization_id: str | None = None) -> Job:
        job = self.get(job_id, organization_id)
        if job is None:
            raise NotFoundError(f"Job not found: {job_id}")
        return job

    def update_fields(self, job_id: str, fields: Mapping[str, Any]) -> Job:
        """Apply ``fields`` (values or SQL expressions) and return the fresh row."""

        values = dict(fields)
        values["updated_at"] = utcnow()
        with session_scope(self.session_factory) as session:
            result = session.execute(
                update(Job)
                .where(Job.id == job_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise NotFoundError(f"Job not found: {job_id}")
            return session.execute(select(Job).where(Job.id == job_id)).unique().scalar_one()

    def delete(self, job_id: str) -> None:
        with session_scope(self.session_factory) as session:
            job = session.get(Job, job_id)
            if job is not None:
                session.delete(job)

    def get_schema(self, schema_id: str, organization_id: str) -> ExtractionSchema | None:
        stmt = select(ExtractionSchema).where(
            ExtractionSchema.id == schema_id,
            ExtractionSchema.organization_id == organization_id,
        )
        with session_scope(self.session_factory) as session:
            return session.execute(stmt).scalar_one_or_none()

    def insert_schema(self, schema: ExtractionSchema) -> ExtractionSchema:
        with session_scope(self.session_factory) as session:
            session.add(schema)
            session.flush()
            session.refresh(schema)
        return schema

    def mark_schema_used(self, schema_id: str) -> None:
        with session_scope(self.session_factory) as session:
            session.execute(
                update(ExtractionSchema)
                .where(ExtractionSchema.id == schema_id)
                .values(
                    usage_count=ExtractionSchema.usage_count + 1,
                    last_used_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )


__all__ = ["JobStore"]
