"""
Pydantic schemas for the admin API.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from pharmacall.jobs.models import JobStatus
from pharmacall.searches.models import SearchStatus


class JobResponse(BaseModel):
    """Schema for one queue job."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    search_id: UUID
    pharmacy_id: str
    pharmacy_name: str
    pharmacy_phone: str
    pharmacy_address: str
    medication_name: str
    dosage: str | None
    status: JobStatus
    attempt: int
    max_attempts: int
    scheduled_for: datetime | None
    started_at: datetime | None
    completed_at: datetime | None
    error_message: str | None
    result_data: dict[str, Any] | None
    dispatcher_message_id: str | None
    created_at: datetime
    updated_at: datetime


class JobMetricsResponse(BaseModel):
    total_jobs: int
    pending_jobs: int
    processing_jobs: int
    completed_jobs: int
    failed_jobs: int
    progress_percentage: float
    success_rate: float = Field(..., description="completed / (completed + failed), as a percentage")


class SearchSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    medication_name: str
    dosage: str | None
    status: SearchStatus
    completed_at: datetime | None


class SearchJobsResponse(BaseModel):
    search: SearchSummary
    jobs: list[JobResponse]
    metrics: JobMetricsResponse


class StartCallingResponse(BaseModel):
    search_id: UUID
    status: SearchStatus = SearchStatus.CALLING_IN_PROGRESS
    jobs_created: int
    jobs_enqueued: int
    jobs_failed: int
    jobs_skipped: int
    delay_seconds: int
    scheduled_for: datetime | None


class QueueStatsResponse(BaseModel):
    pending_jobs: int
    processing_jobs: int
    completed_jobs: int
    failed_jobs: int
    retry_scheduled_jobs: int
    total_jobs_24h: int
    success_rate: float
    avg_confidence_score: float
    recent_jobs: list[JobResponse]


class PharmacyResultRequest(BaseModel):
    """Operator-entered availability for one pharmacy."""

    pharmacy_id: str = Field(..., min_length=1, max_length=255)
    availability: bool
    price: float | None = Field(None, ge=0)
    notes: str = Field("", max_length=2000)


class PharmacyResultResponse(BaseModel):
    search: SearchSummary
    pharmacy_results: dict[str, Any]
