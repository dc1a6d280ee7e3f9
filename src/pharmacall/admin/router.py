"""
Admin API router: start and complete searches, inspect jobs and queue health,
and enter results manually.
"""

from dataclasses import asdict
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, status

from pharmacall.admin.auth import require_admin
from pharmacall.admin.schemas import (
    JobMetricsResponse,
    JobResponse,
    PharmacyResultRequest,
    PharmacyResultResponse,
    QueueStatsResponse,
    SearchJobsResponse,
    SearchSummary,
    StartCallingResponse,
)
from pharmacall.admin.service import AdminService
from pharmacall.dependencies import get_admin_service, get_scheduler
from pharmacall.scheduling.service import PharmacyCallScheduler
from pharmacall.shared.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(
    prefix="/api/admin",
    tags=["admin"],
    dependencies=[Depends(require_admin)],
    responses={401: {"description": "Invalid or missing admin key"}},
)


@router.post(
    "/searches/{search_id}/start-calling",
    response_model=StartCallingResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Create and dispatch one call job per selected pharmacy",
    responses={
        404: {"description": "Search not found"},
        422: {"description": "No pharmacies selected"},
    },
)
async def start_calling(
    search_id: UUID,
    scheduler: Annotated[PharmacyCallScheduler, Depends(get_scheduler)],
) -> StartCallingResponse:
    result = await scheduler.start_calling(search_id)
    return StartCallingResponse(
        search_id=result.search_id,
        jobs_created=result.jobs_created,
        jobs_enqueued=result.jobs_enqueued,
        jobs_failed=result.jobs_failed,
        jobs_skipped=result.jobs_skipped,
        delay_seconds=result.delay_seconds,
        scheduled_for=result.scheduled_for,
    )


@router.post(
    "/searches/{search_id}/complete",
    response_model=SearchSummary,
    summary="Mark a search completed",
    description="Jobs already scheduled keep running to their own terminal state.",
    responses={404: {"description": "Search not found"}},
)
async def complete_search(
    search_id: UUID,
    scheduler: Annotated[PharmacyCallScheduler, Depends(get_scheduler)],
) -> SearchSummary:
    search = await scheduler.complete_search(search_id)
    return SearchSummary.model_validate(search)


@router.get(
    "/searches/{search_id}/jobs",
    response_model=SearchJobsResponse,
    summary="List the call jobs of a search with progress metrics",
    responses={404: {"description": "Search not found"}},
)
async def list_search_jobs(
    search_id: UUID,
    service: Annotated[AdminService, Depends(get_admin_service)],
) -> SearchJobsResponse:
    view = await service.search_jobs(search_id)
    return SearchJobsResponse(
        search=SearchSummary.model_validate(view.search),
        jobs=[JobResponse.model_validate(job) for job in view.jobs],
        metrics=JobMetricsResponse(**asdict(view.metrics)),
    )


@router.get(
    "/queue-stats",
    response_model=QueueStatsResponse,
    summary="Queue health over the last 24 hours",
)
async def queue_stats(
    service: Annotated[AdminService, Depends(get_admin_service)],
) -> QueueStatsResponse:
    stats = await service.queue_stats()
    return QueueStatsResponse(
        pending_jobs=stats.counts["pending"],
        processing_jobs=stats.counts["processing"],
        completed_jobs=stats.counts["completed"],
        failed_jobs=stats.counts["failed"],
        retry_scheduled_jobs=stats.counts["retry_scheduled"],
        total_jobs_24h=stats.total_jobs_24h,
        success_rate=stats.success_rate,
        avg_confidence_score=stats.avg_confidence_score,
        recent_jobs=[JobResponse.model_validate(job) for job in stats.recent_jobs],
    )


@router.post(
    "/searches/{search_id}/pharmacy-results",
    response_model=PharmacyResultResponse,
    summary="Record a pharmacy result entered by an operator",
    responses={404: {"description": "Search not found"}},
)
async def update_pharmacy_result(
    search_id: UUID,
    body: PharmacyResultRequest,
    service: Annotated[AdminService, Depends(get_admin_service)],
) -> PharmacyResultResponse:
    search = await service.update_pharmacy_result(
        search_id,
        pharmacy_id=body.pharmacy_id,
        availability=body.availability,
        price=body.price,
        notes=body.notes,
    )
    metadata = search.search_metadata or {}
    return PharmacyResultResponse(
        search=SearchSummary.model_validate(search),
        pharmacy_results=metadata.get("pharmacy_results", {}),
    )
