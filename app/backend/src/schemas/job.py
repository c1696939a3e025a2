"""Job API schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class JobRead(BaseModel):
    """Schema for job records exposed via the API."""

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: str
    organization_id: str = Field(serialization_alias="organizationId")
    user_id: str = Field(serialization_alias="userId")
    type: str
    status: str
    file_name: str = Field(serialization_alias="fileName")
    file_key: str | None = Field(default=None, serialization_alias="fileKey")
    file_size: int = Field(serialization_alias="fileSize")
    mime_type: str = Field(serialization_alias="mimeType")
    source_url: str | None = Field(default=None, serialization_alias="sourceUrl")
    schema_id: str | None = Field(default=None, serialization_alias="schemaId")
    markdown_result: str | None = Field(default=None, serialization_alias="markdownResult")
    json_result: Any | None = Field(default=None, serialization_alias="jsonResult")
    page_count: int | None = Field(default=None, serialization_alias="pageCount")
    token_count: int | None = Field(default=None, serialization_alias="tokenCount")
    processing_time_ms: int | None = Field(
        default=None, serialization_alias="processingTimeMs"
    )
    error_code: str | None = Field(default=None, serialization_alias="errorCode")
    error_message: str | None = Field(default=None, serialization_alias="errorMessage")
    retry_count: int = Field(default=0, serialization_alias="retryCount")
    started_at: datetime | None = Field(default=None, serialization_alias="startedAt")
    completed_at: datetime | None = Field(default=None, serialization_alias="completedAt")
    created_at: datetime = Field(serialization_alias="createdAt")
    updated_at: datetime = Field(serialization_alias="updatedAt")


class GenerateSchemaRequest(BaseModel):
    job_id: str = Field(alias="jobId")
    hints: str | None = None


class ExtractionSchemaRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    description: str | None
    json_schema: dict[str, Any] = Field(serialization_alias="jsonSchema")
    sample_job_id: str | None = Field(serialization_alias="sampleJobId")
    generated_by: str | None = Field(serialization_alias="generatedBy")
