"""Public API routers exposed by the FastAPI application."""

from . import health, jobs, schemas

__all__ = [
    "health",
    "jobs",
    "schemas",
]
