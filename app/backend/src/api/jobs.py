"""Job submission, lookup and live status endpoints."""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import (
    APIRouter,
    Depends,
    File,
    Form,
    HTTPException,
    Response,
    UploadFile,
    WebSocket,
    status,
)
from fastapi.concurrency import run_in_threadpool

from app.backend.src.core.container import Services
from app.backend.src.core.errors import (
    DispatchError,
    JobInputError,
    NotFoundError,
    StorageError,
)
from app.backend.src.core.security import Identity
from app.backend.src.models import Job, JobType
from app.backend.src.schemas.job import JobRead

from .dependencies import get_identity, get_services

LOGGER = structlog.get_logger(__name__)

router = APIRouter(prefix="/jobs", tags=["jobs"])
ws_router = APIRouter(prefix="/ws", tags=["jobs"])


def _serialize_job(job: Job) -> dict[str, Any]:
    return JobRead.model_validate(job).model_dump(by_alias=True, mode="json")


async def _submit(
    services: Services,
    identity: Identity,
    job_type: JobType,
    file: UploadFile | None,
    url: str | None,
    schema_id: str | None = None,
    hints: str | None = None,
) -> dict[str, Any]:
    try:
        if url:
            job = await run_in_threadpool(
                services.job_service.submit_url,
                identity.organization_id,
                identity.user_id,
                job_type,
                url,
                schema_id,
                hints,
            )
        elif file is not None:
            contents = await file.read()
            job = await run_in_threadpool(
                services.job_service.submit_upload,
                identity.organization_id,
                identity.user_id,
                job_type,
                contents,
                file.filename or "upload",
                file.content_type,
                schema_id,
                hints,
            )
        else:
            raise HTTPException(status_code=400, detail="File or URL is required")
    except JobInputError as exc:
        raise HTTPException(status_code=400, detail=exc.message) from exc
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=exc.message) from exc
    except StorageError as exc:
        LOGGER.error("job_upload_store_failed", key=exc.key, error=exc.message)
        raise HTTPException(status_code=502, detail="Failed to store uploaded file") from exc
    except DispatchError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Job was created but could not be queued",
        ) from exc

    LOGGER.info(
        "job_submitted",
        job_id=job.id,
        type=job_type.value,
        organization_id=identity.organization_id,
        source="url" if url else "upload",
    )
    return _serialize_job(job)


@router.post("/parse")
async def submit_parse_job(
    file: UploadFile | None = File(None),
    url: str | None = Form(None),
    services: Services = Depends(get_services),
    identity: Identity = Depends(get_identity),
) -> dict[str, Any]:
    """Queue an OCR-only job for an uploaded file or a remote URL."""

    return await _submit(services, identity, JobType.PARSE, file, url)


@router.post("/extract")
async def submit_extract_job(
    schema_id: str = Form(..., alias="schemaId"),
    file: UploadFile | None = File(None),
    url: str | None = Form(None),
    hints: str | None = Form(None),
    services: Services = Depends(get_services),
    identity: Identity = Depends(get_identity),
) -> dict[str, Any]:
    """Queue an OCR plus structured extraction job against a saved schema."""

    return await _submit(services, identity, JobType.EXTRACT, file, url, schema_id, hints)


@router.get("/{job_id}")
def get_job(
    job_id: str,
    services: Services = Depends(get_services),
    identity: Identity = Depends(get_identity),
) -> dict[str, Any]:
    try:
        job = services.job_service.get_job(identity.organization_id, job_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail="Job not found") from exc
    return _serialize_job(job)


@router.delete("/{job_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_job(
    job_id: str,
    services: Services = Depends(get_services),
    identity: Identity = Depends(get_identity),
) -> Response:
    try:
        services.job_service.delete_job(identity.organization_id, job_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail="Job not found") from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@ws_router.websocket("/jobs/{job_id}")
async def job_events(websocket: WebSocket, job_id: str) -> None:
    """Stream a status snapshot followed by live events for one job."""

    services: Services = websocket.app.state.services
    await services.bridge.serve(websocket, job_id)


__all__ = ["router", "ws_router"]
