"""Extraction schema endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from fastapi.concurrency import run_in_threadpool

from app.backend.src.core.container import Services
from app.backend.src.core.errors import ExtractionError, JobInputError, NotFoundError
from app.backend.src.core.security import Identity
from app.backend.src.schemas.job import ExtractionSchemaRead, GenerateSchemaRequest

from .dependencies import get_identity, get_services

router = APIRouter(prefix="/schemas", tags=["schemas"])


@router.post("/generate")
async def generate_schema(
    payload: GenerateSchemaRequest,
    services: Services = Depends(get_services),
    identity: Identity = Depends(get_identity),
) -> dict[str, Any]:
    """Generate and save a schema from the markdown of a processed job."""

    try:
        schema = await run_in_threadpool(
            services.job_service.generate_schema,
            identity.organization_id,
            identity.user_id,
            payload.job_id,
            payload.hints,
        )
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail="Job not found") from exc
    except JobInputError as exc:
        raise HTTPException(status_code=400, detail=exc.message) from exc
    except ExtractionError as exc:
        raise HTTPException(status_code=502, detail=exc.message) from exc

    return ExtractionSchemaRead.model_validate(schema).model_dump(by_alias=True, mode="json")


__all__ = ["router"]
