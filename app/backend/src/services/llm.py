"""LLM-backed structured extraction and schema generation."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any

import structlog
from openai import OpenAI, OpenAIError

from app.backend.src.core.errors import ExtractionError

LOGGER = structlog.get_logger(__name__)

_CODE_BLOCK = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```")

EXTRACTION_SYSTEM_PROMPT = (
    "You are a data extraction assistant. Extract structured data from the provided "
    "markdown content. Return ONLY valid JSON, no markdown formatting or explanation."
)

SCHEMA_SYSTEM_PROMPT = """You are a JSON schema generator. Analyze the provided document and generate a JSON schema that can be used to extract structured data from similar documents.

Return ONLY a valid JSON object with this exact structure:
{
  "name": "A descriptive name for this schema",
  "description": "Description of what this schema extracts",
  "jsonSchema": { ... the JSON Schema definition ... }
}

Do not include any markdown formatting or explanation. Just the JSON object."""


@dataclass(frozen=True)
class TokenUsage:
    prompt_tokens: int
    completion_tokens: int

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass(frozen=True)
class ExtractionResult:
    data: dict[str, Any]
    usage: TokenUsage
    model: str


@dataclass(frozen=True)
class GeneratedSchema:
    name: str
    description: str
    json_schema: dict[str, Any]


def extract_json_object(raw: str | None) -> dict[str, Any]:
    """Pull the JSON object out of a model reply, fenced or bare."""

    if not raw:
        raise ExtractionError("LLM returned empty content")

    match = _CODE_BLOCK.search(raw)
    text = (match.group(1) if match else raw).strip()
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end == -1 or end < start:
        LOGGER.warning("llm_missing_json_object", raw_preview=text[:500])
        raise ExtractionError("No valid JSON object found in response")

    try:
        parsed = json.loads(text[start : end + 1])
    except json.JSONDecodeError as exc:
        LOGGER.warning("llm_json_parse_failed", error=str(exc), raw_preview=text[:500])
        raise ExtractionError(f"LLM returned malformed JSON: {exc}") from exc
    if not isinstance(parsed, dict):
        raise ExtractionError("LLM response is not a JSON object")
    return parsed


def build_extraction_prompt(
    markdown: str, schema: dict[str, Any] | None, hints: str | None
) -> str:
    if schema:
        prompt = (
            "Extract data from the following markdown content according to this JSON schema:\n\n"
            f"Schema:\n{json.dumps(schema, indent=2)}\n\n"
        )
    else:
        prompt = (
            "Extract all relevant structured data from the following markdown content "
            "and return it as JSON.\n\n"
        )
    if hints:
        prompt += f"Additional instructions: {hints}\n\n"
    return prompt + f"Markdown Content:\n{markdown}"


def build_schema_prompt(markdown: str, hints: str | None) -> str:
    prompt = "Analyze this document and generate a JSON schema for extracting structured data.\n\n"
    if hints:
        prompt += f"User hints about what to extract: {hints}\n\n"
    return prompt + f"Document content:\n{markdown}"


class LlmService:
    """Wraps an OpenAI-compatible chat completion endpoint."""

    def __init__(self, client: OpenAI | None, model: str, *, timeout: float = 120.0) -> None:
        self.client = client
        self.model = model
        self.timeout = timeout

    def _complete(self, system_prompt: str, user_prompt: str) -> tuple[str | None, TokenUsage, str]:
        if self.client is None:
            raise ExtractionError("LLM API key is not configured", retryable=False)
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                temperature=0,
                timeout=self.timeout,
            )
        except OpenAIError as exc:
            LOGGER.error("llm_request_failed", model=self.model, error=str(exc))
            raise ExtractionError(f"LLM request failed: {exc}") from exc

        if not response.choices:
            raise ExtractionError("LLM returned no choices")
        usage = response.usage
        token_usage = TokenUsage(
            prompt_tokens=getattr(usage, "prompt_tokens", 0) or 0,
            completion_tokens=getattr(usage, "completion_tokens", 0) or 0,
        )
        return response.choices[0].message.content, token_usage, response.model or self.model

    def extract(
        self,
        markdown: str,
        schema: dict[str, Any] | None = None,
        hints: str | None = None,
    ) -> ExtractionResult:
        content, usage, model = self._complete(
            EXTRACTION_SYSTEM_PROMPT, build_extraction_prompt(markdown, schema, hints)
        )
        data = extract_json_object(content)
        LOGGER.info(
            "llm_extraction_completed",
            model=model,
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            with_schema=schema is not None,
        )
        return ExtractionResult(data=data, usage=usage, model=model)

    def generate_schema(self, markdown: str, hints: str | None = None) -> GeneratedSchema:
        content, _, model = self._complete(SCHEMA_SYSTEM_PROMPT, build_schema_prompt(markdown, hints))
        payload = extract_json_object(content)
        json_schema = payload.get("jsonSchema")
        if not isinstance(json_schema, dict):
            raise ExtractionError("Generated schema is missing a jsonSchema object")
        LOGGER.info("llm_schema_generated", model=model, name=payload.get("name"))
        return GeneratedSchema(
            name=str(payload.get("name") or "Generated schema"),
            description=str(payload.get("description") or ""),
            json_schema=json_schema,
        )


def build_llm_client(api_key: str | None, base_url: str, timeout: float) -> OpenAI | None:
    if not api_key:
        LOGGER.warning("llm_api_key_missing", detail="extraction jobs will fail until OPENAI_API_KEY is set")
        return None
    return OpenAI(api_key=api_key, base_url=base_url, timeout=timeout, max_retries=1)


__all__ = [
    "ExtractionResult",
    "GeneratedSchema",
    "LlmService",
    "TokenUsage",
    "build_llm_client",
    "extract_json_object",
]
