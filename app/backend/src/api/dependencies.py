"""Request-scoped dependencies shared by the routers."""

from __future__ import annotations

from fastapi import Depends, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool

from app.backend.src.core.container import Services
from app.backend.src.core.errors import AuthError
from app.backend.src.core.security import Identity


def get_services(request: Request) -> Services:
    return request.app.state.services


async def get_identity(
    request: Request,
    services: Services = Depends(get_services),
) -> Identity:
    """Resolve the caller from a bearer API key or the session cookie."""

    try:
        return await run_in_threadpool(
            services.resolver.resolve,
            request.headers.get("authorization"),
            dict(request.cookies),
        )
    except AuthError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
        ) from exc


__all__ = ["get_identity", "get_services"]
