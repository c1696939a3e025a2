"""Remote source URL retrieval for URL-submitted jobs."""

from __future__ import annotations

import time
from dataclasses import dataclass
from urllib.parse import unquote, urlparse

import httpx
import structlog

from app.backend.src.core.errors import FetchError

LOGGER = structlog.get_logger(__name__)

DEFAULT_CONTENT_TYPE = "application/octet-stream"


@dataclass(frozen=True)
class FetchedFile:
    content: bytes
    content_type: str
    file_name: str

    @property
    def size(self) -> int:
        return len(self.content)


def filename_from_url(url: str) -> str:
    """Return the last path segment of ``url``, or a ``download-<ms>`` fallback."""

    try:
        path = urlparse(url).path
    except ValueError:
        path = ""
    segments = [segment for segment in path.split("/") if segment]
    if segments:
        return unquote(segments[-1])
    return f"download-{int(time.time() * 1000)}"


class UrlFetcher:
    """Downloads a URL with an explicit timeout and a size cap."""

    def __init__(
        self,
        *,
        timeout: float = 30.0,
        max_bytes: int = 50 * 1024 * 1024,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.timeout = timeout
        self.max_bytes = max_bytes
        self.transport = transport

    def fetch(self, url: str) -> FetchedFile:
        try:
            with httpx.Client(
                timeout=self.timeout,
                follow_redirects=True,
                transport=self.transport,
            ) as client:
                with client.stream("GET", url) as response:
                    if not response.is_success:
                        raise FetchError(
                            f"Failed to fetch file from URL: {response.status_code} {response.reason_phrase}",
                            url=url,
                            status_code=response.status_code,
                            retryable=response.status_code >= 500 or response.status_code == 429,
                        )
                    content = self._read_capped(response, url)
                    content_type = response.headers.get("content-type") or DEFAULT_CONTENT_TYPE
        except httpx.TimeoutException as exc:
            raise FetchError(f"Timed out fetching {url} after {self.timeout}s", url=url) from exc
        except httpx.HTTPError as exc:
            raise FetchError(f"Failed to fetch file from URL: {exc}", url=url) from exc

        fetched = FetchedFile(
            content=content,
            content_type=content_type.split(";", 1)[0].strip() or DEFAULT_CONTENT_TYPE,
            file_name=filename_from_url(url),
        )
        LOGGER.info(
            "source_url_fetched",
            url=url,
            size=fetched.size,
            content_type=fetched.content_type,
        )
        return fetched

    def _read_capped(self, response: httpx.Response, url: str) -> bytes:
        chunks: list[bytes] = []
        total = 0
        for chunk in response.iter_bytes():
            total += len(chunk)
            if total > self.max_bytes:
                raise FetchError(
                    f"Remote file exceeds {self.max_bytes} bytes",
                    url=url,
                    retryable=False,
                )
            chunks.append(chunk)
        return b"".join(chunks)


__all__ = ["FetchedFile", "UrlFetcher", "filename_from_url"]
