"""Schemas for the background job execution log."""

from datetime import date, datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class JobExecutionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: UUID
    job_type: str
    trigger: str
    started_at: datetime
    finished_at: datetime
    duration_ms: int
    success: bool
    processed: int
    succeeded: int
    failed: int
    errors: list[str]
    metadata: dict[str, Any] | None = Field(default=None, validation_alias="metadata_")


class SystemHealthResponse(BaseModel):
    last_success: dict[str, datetime | None]
    total_runs_today: int
    successful_runs_today: int
    failed_runs_today: int


class JobTriggerRequest(BaseModel):
    """Only analytics_generation reads ``metrics_date``; it defaults to yesterday."""

    metrics_date: date | None = None


class JobTriggerResponse(BaseModel):
    job_type: str
    job_id: str | None
