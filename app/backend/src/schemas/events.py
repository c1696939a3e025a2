"""Real-time job event messages (client-facing wire format)."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

EventType = Literal["status", "completed", "error"]


class JobEventData(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: str | None = None
    processing_time_ms: int | None = Field(default=None, alias="processingTimeMs")
    error: str | None = None
    markdown_result: str | None = Field(default=None, alias="markdownResult")
    json_result: Any | None = Field(default=None, alias="jsonResult")


class JobEvent(BaseModel):
    """``{"type": ..., "jobId": ..., "data": {...}}``; each event is self-describing."""

    model_config = ConfigDict(populate_by_name=True)

    type: EventType
    job_id: str = Field(alias="jobId")
    data: JobEventData = Field(default_factory=JobEventData)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)

    @classmethod
    def status(cls, job_id: str, status: str, processing_time_ms: int | None = None) -> "JobEvent":
        return cls(
            type="status",
            job_id=job_id,
            data=JobEventData(status=status, processing_time_ms=processing_time_ms),
        )


__all__ = ["EventType", "JobEvent", "JobEventData"]
