"""
Read models and manual overrides for operators.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from pharmacall.jobs.models import CallRecordStatus, JobStatus, QueueJob
from pharmacall.jobs.store import JobStore
from pharmacall.searches.models import Search
from pharmacall.searches.repository import SearchRepository
from pharmacall.shared.database import utcnow
from pharmacall.shared.exceptions import SearchNotFoundError
from pharmacall.shared.logging import get_logger

logger = get_logger(__name__)

STATS_WINDOW = timedelta(hours=24)
RECENT_JOBS_LIMIT = 50


def _pct(numerator: int, denominator: int) -> float:
    if denominator <= 0:
        return 0.0
    return round(numerator / denominator * 100, 2)


@dataclass(frozen=True)
class JobMetrics:
    total_jobs: int
    pending_jobs: int
    processing_jobs: int
    completed_jobs: int
    failed_jobs: int
    progress_percentage: float
    success_rate: float

    @classmethod
    def from_jobs(cls, jobs: Sequence[QueueJob]) -> JobMetrics:
        counts = Counter(job.status for job in jobs)
        completed = counts[JobStatus.COMPLETED]
        failed = counts[JobStatus.FAILED]
        return cls(
            total_jobs=len(jobs),
            pending_jobs=counts[JobStatus.PENDING] + counts[JobStatus.RETRY_SCHEDULED],
            processing_jobs=counts[JobStatus.PROCESSING],
            completed_jobs=completed,
            failed_jobs=failed,
            progress_percentage=_pct(completed + failed, len(jobs)),
            success_rate=_pct(completed, completed + failed),
        )


@dataclass(frozen=True)
class SearchJobsView:
    search: Search
    jobs: list[QueueJob]
    metrics: JobMetrics


@dataclass(frozen=True)
class QueueStats:
    counts: dict[str, int]
    total_jobs_24h: int
    success_rate: float
    avg_confidence_score: float
    recent_jobs: list[QueueJob] = field(default_factory=list)


class AdminService:
    def __init__(
        self,
        searches: SearchRepository,
        jobs: JobStore,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._searches = searches
        self._jobs = jobs
        self._clock = clock

    async def search_jobs(self, search_id: UUID) -> SearchJobsView:
        search = await self._searches.get(search_id)
        if search is None:
            raise SearchNotFoundError(
                message=f"Search {search_id} not found",
                details={"search_id": str(search_id)},
            )
        jobs = await self._jobs.list_jobs_for_search(search_id)
        return SearchJobsView(search=search, jobs=jobs, metrics=JobMetrics.from_jobs(jobs))

    async def queue_stats(self) -> QueueStats:
        """Counts by status, success rate and average confidence for the last 24h."""
        since = self._clock() - STATS_WINDOW
        jobs = await self._jobs.list_jobs_created_since(since)
        counts = {status.value: 0 for status in JobStatus}
        for job in jobs:
            counts[job.status.value] += 1

        completed_ids = {job.id for job in jobs if job.status == JobStatus.COMPLETED}
        calls = await self._jobs.list_call_records_for_jobs(list(completed_ids))
        scores = [
            call.confidence_score
            for call in calls
            if call.status == CallRecordStatus.COMPLETED and call.confidence_score is not None
        ]

        recent = sorted(jobs, key=lambda j: j.created_at, reverse=True)[:RECENT_JOBS_LIMIT]
        return QueueStats(
            counts=counts,
            total_jobs_24h=len(jobs),
            success_rate=_pct(
                counts[JobStatus.COMPLETED.value],
                counts[JobStatus.COMPLETED.value] + counts[JobStatus.FAILED.value],
            ),
            avg_confidence_score=round(sum(scores) / len(scores), 2) if scores else 0.0,
            recent_jobs=recent,
        )

    async def update_pharmacy_result(
        self,
        search_id: UUID,
        pharmacy_id: str,
        availability: bool,
        price: float | None,
        notes: str,
    ) -> Search:
        """Record an operator-entered result and mark the search completed."""
        now = self._clock()
        result: dict[str, Any] = {
            "availability": availability,
            "price": price,
            "notes": notes,
            "updated_at": now.isoformat(),
            "updated_by": "admin",
        }
        search = await self._searches.record_pharmacy_result(search_id, pharmacy_id, result, now)
        if search is None:
            raise SearchNotFoundError(
                message=f"Search {search_id} not found",
                details={"search_id": str(search_id)},
            )
        logger.info(
            "Manual pharmacy result recorded",
            extra={"search_id": str(search_id), "pharmacy_id": pharmacy_id},
        )
        return search
