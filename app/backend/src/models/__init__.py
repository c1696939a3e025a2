"""ORM models exposed for easy imports."""

from .api_key import ApiKey
from .auth_session import AuthSession
from .base import Base
from .extraction_schema import ExtractionSchema
from .job import Job, JobStatus, JobType

__all__ = [
    "ApiKey",
    "AuthSession",
    "Base",
    "ExtractionSchema",
    "Job",
    "JobStatus",
    "JobType",
]
