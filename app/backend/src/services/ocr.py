"""Client for the layout-parsing OCR service (PaddleOCR-VL HTTP API)."""

from __future__ import annotations

import base64
import time
from dataclasses import dataclass
from typing import Any, Literal, Union

import httpx
import structlog
from pydantic import BaseModel, Field, ValidationError

from app.backend.src.core.errors import (
    OcrApiError,
    OcrHttpError,
    OcrNetworkError,
    OcrTimeoutError,
    OcrValidationError,
)

LOGGER = structlog.get_logger(__name__)

PAGE_SEPARATOR = "\n\n---\n\n"
FILE_TYPE_PDF = 0
FILE_TYPE_IMAGE = 1


class MarkdownData(BaseModel):
    text: str
    images: dict[str, str] | None = None


class LayoutParsingResult(BaseModel):
    markdown: MarkdownData
    output_images: dict[str, str] | None = Field(default=None, alias="outputImages")


class ImageInfo(BaseModel):
    type: Literal["image"]
    width: float
    height: float


class PdfInfo(BaseModel):
    type: Literal["pdf"]
    num_pages: int = Field(alias="numPages")


class InferResult(BaseModel):
    layout_parsing_results: list[LayoutParsingResult] = Field(alias="layoutParsingResults")
    data_info: Union[PdfInfo, ImageInfo] = Field(alias="dataInfo", discriminator="type")


class InferResponse(BaseModel):
    error_code: int = Field(alias="errorCode")
    error_msg: str = Field(default="", alias="errorMsg")
    log_id: str = Field(default="", alias="logId")
    result: InferResult | None = None


@dataclass(frozen=True)
class OcrResult:
    markdown: str
    page_count: int


def file_type_for(mime_type: str) -> int:
    if mime_type.lower().startswith("image/"):
        return FILE_TYPE_IMAGE
    return FILE_TYPE_PDF


def combine_markdown(result: InferResult) -> str:
    return PAGE_SEPARATOR.join(page.markdown.text for page in result.layout_parsing_results)


def page_count(result: InferResult) -> int:
    if isinstance(result.data_info, PdfInfo):
        return result.data_info.num_pages
    return 1


class OcrClient:
    """Turns document bytes into markdown; every request carries a timeout.

    Network errors and timeouts may be retried client-side (``retries``);
    HTTP, API and validation errors are raised immediately.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 300.0,
        retries: int = 0,
        retry_delay: float = 1.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.retries = retries
        self.retry_delay = retry_delay
        self.transport = transport

    def _client(self) -> httpx.Client:
        return httpx.Client(timeout=self.timeout, transport=self.transport)

    def parse(self, data: bytes, mime_type: str) -> OcrResult:
        url = f"{self.base_url}/layout-parsing"
        payload = {
            "file": base64.b64encode(data).decode("ascii"),
            "fileType": file_type_for(mime_type),
            "useLayoutDetection": True,
            "prettifyMarkdown": True,
            "maxNewTokens": 2048,
        }

        attempt = 0
        while True:
            try:
                result = self._infer(url, payload)
                break
            except (OcrNetworkError, OcrTimeoutError) as exc:
                if attempt >= self.retries:
                    raise
                attempt += 1
                LOGGER.warning(
                    "ocr_request_retry",
                    attempt=attempt,
                    retries=self.retries,
                    error=str(exc),
                )
                time.sleep(self.retry_delay)

        ocr_result = OcrResult(markdown=combine_markdown(result), page_count=page_count(result))
        LOGGER.info(
            "ocr_parse_completed",
            mime_type=mime_type,
            page_count=ocr_result.page_count,
            markdown_chars=len(ocr_result.markdown),
        )
        return ocr_result

    def _infer(self, url: str, payload: dict[str, Any]) -> InferResult:
        try:
            with self._client() as client:
                response = client.post(url, json=payload)
        except httpx.TimeoutException as exc:
            raise OcrTimeoutError(self.timeout, url) from exc
        except httpx.HTTPError as exc:
            raise OcrNetworkError(url, str(exc)) from exc

        if not response.is_success:
            raise OcrHttpError(response.status_code, response.reason_phrase, url)

        try:
            parsed = InferResponse.model_validate(response.json())
        except ValueError as exc:
            issues = exc.errors() if isinstance(exc, ValidationError) else []
            raise OcrValidationError("Invalid API response structure", issues) from exc

        if parsed.error_code != 0:
            raise OcrApiError(parsed.error_code, parsed.error_msg, parsed.log_id)
        if parsed.result is None:
            raise OcrValidationError("API response is missing a result")
        return parsed.result

    def check_health(self) -> bool:
        try:
            with self._client() as client:
                response = client.get(f"{self.base_url}/health")
            if not response.is_success:
                return False
            return response.json().get("errorCode") == 0
        except (httpx.HTTPError, ValueError) as exc:
            LOGGER.warning("ocr_health_check_failed", error=str(exc))
            return False


__all__ = ["OcrClient", "OcrResult", "combine_markdown", "file_type_for", "page_count"]
