"""Error taxonomy for the job-processing core.

Every error carries a ``code`` (persisted on failed jobs) and a
``retryable`` flag consulted by the dispatcher's retry policy.
"""

from __future__ import annotations


class DocflowError(Exception):
    """Base class for all domain errors."""

    retryable: bool = True

    def __init__(self, message: str, *, retryable: bool | None = None) -> None:
        super().__init__(message)
        self.message = message
        if retryable is not None:
            self.retryable = retryable

    @property
    def code(self) -> str:
        return type(self).__name__


class DispatchError(DocflowError):
    """The queue broker (or dispatch ledger) could not be reached."""


QueueUnavailable = DispatchError


class FetchError(DocflowError):
    """Retrieving a remote source URL failed."""

    def __init__(
        self,
        message: str,
        *,
        url: str,
        status_code: int | None = None,
        retryable: bool | None = None,
    ) -> None:
        super().__init__(message, retryable=retryable)
        self.url = url
        self.status_code = status_code


class StorageError(DocflowError):
    """A storage get/put/delete failed."""

    def __init__(self, message: str, *, key: str) -> None:
        super().__init__(message)
        self.key = key


class OcrError(DocflowError):
    """Base class for OCR collaborator failures."""


class OcrHttpError(OcrError):
    def __init__(self, status_code: int, reason: str, url: str) -> None:
        super().__init__(f"HTTP {status_code} {reason} from {url}")
        self.status_code = status_code
        self.url = url


class OcrApiError(OcrError):
    def __init__(self, error_code: int, error_msg: str, log_id: str) -> None:
        super().__init__(
            f"OCR API error: {error_msg} (code: {error_code}, logId: {log_id})"
        )
        self.error_code = error_code
        self.log_id = log_id


class OcrValidationError(OcrError):
    def __init__(self, message: str, issues: list | None = None) -> None:
        super().__init__(message)
        self.issues = issues or []


class OcrNetworkError(OcrError):
    def __init__(self, url: str, detail: str = "") -> None:
        message = f"Network error while connecting to {url}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.url = url


class OcrTimeoutError(OcrError):
    def __init__(self, timeout_seconds: float, url: str) -> None:
        super().__init__(f"Request to {url} timed out after {timeout_seconds}s")
        self.timeout_seconds = timeout_seconds
        self.url = url


class ExtractionError(DocflowError):
    """The LLM collaborator failed or returned unusable output."""


class NotFoundError(DocflowError):
    """A job (or related record) does not exist in the caller's scope."""

    retryable = False


class AuthError(DocflowError):
    """Credentials could not be resolved to an organization and user."""

    retryable = False


class JobInputError(DocflowError):
    """A job carries no usable input (neither file key nor source URL)."""

    retryable = False


class InvalidStatusTransition(DocflowError):
    """A status change would violate the job state machine."""

    retryable = False

    def __init__(self, job_id: str, current: str, target: str) -> None:
        super().__init__(f"Job {job_id}: illegal transition {current} -> {target}")
        self.job_id = job_id
        self.current = current
        self.target = target


class JobAttemptFailed(Exception):
    """Raised by the worker boundary after a failed attempt was recorded.

    ``retry_delay`` is the backoff before the next attempt, or ``None`` when
    the dispatcher will not retry.
    """

    def __init__(self, job_id: str, error: BaseException, retry_delay: float | None) -> None:
        super().__init__(f"Job {job_id} attempt failed: {error}")
        self.job_id = job_id
        self.error = error
        self.retry_delay = retry_delay

    @property
    def will_retry(self) -> bool:
        return self.retry_delay is not None


__all__ = [
    "AuthError",
    "DispatchError",
    "DocflowError",
    "ExtractionError",
    "FetchError",
    "InvalidStatusTransition",
    "JobAttemptFailed",
    "JobInputError",
    "NotFoundError",
    "OcrApiError",
    "OcrError",
    "OcrHttpError",
    "OcrNetworkError",
    "OcrTimeoutError",
    "OcrValidationError",
    "QueueUnavailable",
    "StorageError",
]
