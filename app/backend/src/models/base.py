"""SQLAlchemy declarative base and shared column helpers."""

from __future__ import annotations

import secrets
from datetime import datetime, timezone

from sqlalchemy.orm import DeclarativeBase

ID_PREFIXES = {
    "api_key": "ak",
    "job": "job",
    "schema": "sch",
    "session": "ses",
}


class Base(DeclarativeBase):
    """Base for SQLAlchemy models."""

    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(kind: str) -> str:
    """Return a prefixed random identifier such as ``job_Xk3...``."""

    return f"{ID_PREFIXES[kind]}_{secrets.token_urlsafe(12)}"


__all__ = ["Base", "new_id", "utcnow"]
