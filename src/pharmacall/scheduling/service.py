"""
Pharmacy-call scheduler.

Job state machine::

    pending -> processing -> completed
                          -> retry_scheduled -> processing ...
                          -> failed
    pending | retry_scheduled -> retry_scheduled   (outside calling window)
    pending | retry_scheduled -> failed            (rate limited, enqueue failure)

``completed`` and ``failed`` are terminal. The dispatcher delivers at least
once, so ``process_job`` is an idempotent transition function: the
conditional claim into ``processing`` is the point past which a duplicate
delivery becomes a no-op.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import datetime, timedelta
from uuid import UUID

from pharmacall.dispatch.interface import ProcessJobPayload, TaskDispatcher
from pharmacall.jobs.models import CallRecord, CallRecordStatus, JobStatus, QueueJob
from pharmacall.jobs.store import JobStore, NewJob
from pharmacall.scheduling.models import (
    ProcessJobResult,
    ProcessOutcome,
    SchedulerSettings,
    StartCallingResult,
)
from pharmacall.scheduling.rate_guard import RateGuard
from pharmacall.scheduling.retry_policy import delay_for_attempt
from pharmacall.scheduling.time_policy import delay_until_next_window, is_within_calling_window
from pharmacall.searches.models import Search, SearchStatus
from pharmacall.searches.repository import SearchRepository, SelectedPharmacy
from pharmacall.shared.database import utcnow
from pharmacall.shared.exceptions import (
    JobNotFoundError,
    NoPharmaciesSelectedError,
    SearchNotFoundError,
)
from pharmacall.shared.logging import get_logger
from pharmacall.voice.executor import CallExecutor
from pharmacall.voice.outcome import CallOutcome

logger = get_logger(__name__)

RATE_LIMITED_REASON = "Rate limited - called too recently"
ENQUEUE_FAILED_REASON = "Failed to enqueue job"
RETRY_SCHEDULE_FAILED_REASON = "Failed to schedule retry"
MAX_RETRIES_REASON = "Max retries exceeded"
CLAIM_LOST_REASON = "claim taken over by another delivery"


class PharmacyCallScheduler:
    """Creates, dispatches and resolves pharmacy-call jobs."""

    def __init__(
        self,
        searches: SearchRepository,
        jobs: JobStore,
        rate_guard: RateGuard,
        executor: CallExecutor,
        dispatcher: TaskDispatcher,
        settings: SchedulerSettings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._searches = searches
        self._jobs = jobs
        self._rate_guard = rate_guard
        self._executor = executor
        self._dispatcher = dispatcher
        self._settings = settings or SchedulerSettings()
        self._clock = clock

    # ------------------------------------------------------------------
    # StartCalling
    # ------------------------------------------------------------------

    async def start_calling(self, search_id: UUID) -> StartCallingResult:
        """Create one job per selected pharmacy and dispatch them.

        A dispatch failure downgrades only that job to ``failed``; the rest
        of the batch continues.

        Raises:
            SearchNotFoundError: the search does not exist.
            NoPharmaciesSelectedError: the search has no selected pharmacies.
        """
        search = await self._searches.get(search_id)
        if search is None:
            raise SearchNotFoundError(
                message=f"Search {search_id} not found",
                details={"search_id": str(search_id)},
            )

        pharmacies = SearchRepository.selected_pharmacies(search)
        if not pharmacies:
            raise NoPharmaciesSelectedError(
                message="No pharmacies selected for this search",
                details={"search_id": str(search_id)},
            )

        now = self._clock()
        await self._searches.set_status(search_id, SearchStatus.CALLING_IN_PROGRESS)

        upserted = await self._jobs.upsert_jobs(
            [self._new_job(search, pharmacy) for pharmacy in pharmacies]
        )

        delay = delay_until_next_window(self._settings.timezone, now)
        scheduled_for = now + timedelta(seconds=delay) if delay > 0 else None

        # Existing retry_scheduled/processing jobs already have a live invocation.
        to_dispatch = [
            item.job
            for item in upserted
            if item.created or item.job.status == JobStatus.PENDING
        ]
        skipped = len(upserted) - len(to_dispatch)

        enqueued = await asyncio.gather(
            *(self._enqueue_initial(job, delay, scheduled_for, now) for job in to_dispatch)
        )

        result = StartCallingResult(
            search_id=search_id,
            jobs_created=sum(1 for item in upserted if item.created),
            jobs_enqueued=sum(1 for ok in enqueued if ok),
            jobs_failed=sum(1 for ok in enqueued if not ok),
            jobs_skipped=skipped,
            delay_seconds=delay,
            scheduled_for=scheduled_for,
            job_ids=[item.job.id for item in upserted],
        )
        logger.info(
            "Calling started",
            extra={
                "search_id": str(search_id),
                "jobs_created": result.jobs_created,
                "jobs_enqueued": result.jobs_enqueued,
                "jobs_failed": result.jobs_failed,
                "jobs_skipped": result.jobs_skipped,
                "delay_seconds": delay,
            },
        )
        return result

    @staticmethod
    def _new_job(search: Search, pharmacy: SelectedPharmacy) -> NewJob:
        return NewJob(
            search_id=search.id,
            pharmacy_id=pharmacy.id,
            pharmacy_name=pharmacy.name,
            pharmacy_phone=pharmacy.phone,
            pharmacy_address=pharmacy.address,
            medication_name=search.medication_name,
            dosage=search.dosage,
            user_id=search.user_id,
        )

    async def _enqueue_initial(
        self,
        job: QueueJob,
        delay: int,
        scheduled_for: datetime | None,
        now: datetime,
    ) -> bool:
        payload = ProcessJobPayload(
            search_id=job.search_id,
            pharmacy_id=job.pharmacy_id,
            attempt=job.attempt,
        )
        try:
            message_id = await self._dispatcher.schedule(payload, delay)
        except Exception:
            logger.exception(
                "Failed to enqueue job",
                extra={"job_id": str(job.id), "pharmacy_id": job.pharmacy_id},
            )
            await self._jobs.update_job(
                job.id,
                status=JobStatus.FAILED,
                error_message=ENQUEUE_FAILED_REASON,
                completed_at=now,
            )
            return False

        patch: dict = {"dispatcher_message_id": message_id}
        if scheduled_for is not None:
            patch.update(status=JobStatus.RETRY_SCHEDULED, scheduled_for=scheduled_for)
        # no-op if a fast delivery already claimed the job
        await self._jobs.transition_job(job.id, expected=[JobStatus.PENDING], **patch)
        return True

    # ------------------------------------------------------------------
    # ProcessJob
    # ------------------------------------------------------------------

    async def process_job(self, payload: ProcessJobPayload) -> ProcessJobResult:
        """Handle one (possibly duplicate) dispatcher delivery.

        Raises:
            JobNotFoundError: no job exists for (search, pharmacy).
            DispatchError: rescheduling outside the calling window failed;
                the job keeps its last durable state for redelivery.
        """
        now = self._clock()
        job = await self._jobs.get_job(payload.search_id, payload.pharmacy_id)
        if job is None:
            logger.error(
                "Job not found for delivery",
                extra={
                    "search_id": str(payload.search_id),
                    "pharmacy_id": payload.pharmacy_id,
                    "attempt": payload.attempt,
                },
            )
            raise JobNotFoundError(
                message="Job not found",
                details={"search_id": str(payload.search_id), "pharmacy_id": payload.pharmacy_id},
            )

        skip_reason = self._duplicate_reason(job, payload, now)
        if skip_reason is not None:
            logger.info(
                "Job delivery skipped",
                extra={"job_id": str(job.id), "status": job.status.value, "reason": skip_reason},
            )
            return ProcessJobResult(ProcessOutcome.SKIPPED, job.id, job.attempt, reason=skip_reason)

        attempt = payload.attempt

        if not await self._rate_guard.can_call_now(job.pharmacy_id, job.id, now):
            return await self._fail_rate_limited(job, attempt, now, expected=None)

        if not is_within_calling_window(self._settings.timezone, now):
            return await self._reschedule_for_window(job, attempt, now)

        claimed = await self._jobs.claim_job(
            job.id,
            attempt=attempt,
            now=now,
            stale_before=now - self._settings.stale_processing_after,
        )
        if claimed is None:
            logger.info(
                "Job claim lost to another delivery",
                extra={"job_id": str(job.id), "attempt": attempt},
            )
            return ProcessJobResult(
                ProcessOutcome.SKIPPED, job.id, attempt, reason="claimed by another delivery"
            )

        if not await self._rate_guard.try_reserve(claimed.pharmacy_id, claimed.id, now):
            return await self._fail_rate_limited(
                claimed, attempt, now, expected=[JobStatus.PROCESSING]
            )

        record = await self._jobs.create_call_record(claimed, self._executor.provider)
        outcome = await self._run_executor(claimed, record)
        finished = self._clock()
        await self._store_call_result(record, outcome, finished)

        if outcome.success:
            return await self._complete(claimed, outcome, finished)
        return await self._handle_failure(claimed, outcome, finished)

    def _duplicate_reason(
        self,
        job: QueueJob,
        payload: ProcessJobPayload,
        now: datetime,
    ) -> str | None:
        if job.status == JobStatus.COMPLETED:
            return "already completed"
        if job.status == JobStatus.FAILED:
            return "already failed"
        if job.status == JobStatus.PROCESSING:
            started = job.started_at
            if started is not None and now - started < self._settings.stale_processing_after:
                return "already processing"
        if payload.attempt < job.attempt:
            return "stale attempt"
        if payload.attempt > job.max_attempts:
            return "attempt exceeds max attempts"
        return None

    async def _fail_rate_limited(
        self,
        job: QueueJob,
        attempt: int,
        now: datetime,
        expected: list[JobStatus] | None,
    ) -> ProcessJobResult:
        patch = {
            "status": JobStatus.FAILED,
            "error_message": RATE_LIMITED_REASON,
            "completed_at": now,
        }
        if expected is None:
            await self._jobs.update_job(job.id, **patch)
        else:
            await self._jobs.transition_job(job.id, expected=expected, **patch)
        logger.warning(
            "Pharmacy called too recently; job failed",
            extra={"job_id": str(job.id), "pharmacy_id": job.pharmacy_id},
        )
        return ProcessJobResult(
            ProcessOutcome.RATE_LIMITED, job.id, attempt, reason=RATE_LIMITED_REASON
        )

    async def _reschedule_for_window(
        self,
        job: QueueJob,
        attempt: int,
        now: datetime,
    ) -> ProcessJobResult:
        delay = delay_until_next_window(self._settings.timezone, now)
        # DispatchError propagates: the job stays as it was and redelivery retries this step
        message_id = await self._dispatcher.schedule(
            ProcessJobPayload(search_id=job.search_id, pharmacy_id=job.pharmacy_id, attempt=attempt),
            delay,
        )
        await self._jobs.update_job(
            job.id,
            status=JobStatus.RETRY_SCHEDULED,
            attempt=attempt,
            scheduled_for=now + timedelta(seconds=delay),
            dispatcher_message_id=message_id,
        )
        logger.info(
            "Outside calling window; job rescheduled",
            extra={"job_id": str(job.id), "delay_seconds": delay},
        )
        return ProcessJobResult(
            ProcessOutcome.RESCHEDULED,
            job.id,
            attempt,
            reason="outside calling window",
            retry_in_seconds=delay,
        )

    async def _run_executor(self, job: QueueJob, record: CallRecord) -> CallOutcome:
        async def on_placed(provider_call_id: str) -> None:
            await self._jobs.update_call_record(
                record.id,
                provider_call_id=provider_call_id,
                status=CallRecordStatus.RINGING,
            )

        try:
            return await self._executor.execute(job, on_placed=on_placed)
        except Exception:
            logger.exception("Call executor raised", extra={"job_id": str(job.id)})
            return CallOutcome.failure(error="call_failed")

    async def _store_call_result(
        self,
        record: CallRecord,
        outcome: CallOutcome,
        finished: datetime,
    ) -> None:
        patch: dict = {
            "status": CallRecordStatus.COMPLETED if outcome.success else CallRecordStatus.FAILED,
            "ended_at": finished,
            "duration_seconds": outcome.duration_seconds,
            "transcript": outcome.transcript,
            "extracted_data": outcome.extracted_data.to_dict() if outcome.extracted_data else None,
            "confidence_score": outcome.confidence_score,
            "error_message": outcome.error,
        }
        if outcome.provider_call_id:
            patch["provider_call_id"] = outcome.provider_call_id
        if outcome.success:
            patch["answered_at"] = finished - timedelta(seconds=outcome.duration_seconds or 0)
        await self._jobs.update_call_record(record.id, **patch)

    async def _complete(
        self,
        job: QueueJob,
        outcome: CallOutcome,
        finished: datetime,
    ) -> ProcessJobResult:
        result = (
            outcome.extracted_data.to_dict()
            if outcome.extracted_data
            else {"availability": None, "price": None, "notes": ""}
        )
        done = await self._jobs.transition_job(
            job.id,
            expected=[JobStatus.PROCESSING],
            expected_attempt=job.attempt,
            status=JobStatus.COMPLETED,
            result_data=result,
            error_message=None,
            completed_at=finished,
        )
        if done is None:
            return self._claim_lost(job, job.attempt)
        logger.info(
            "Pharmacy call completed",
            extra={
                "job_id": str(job.id),
                "pharmacy_id": job.pharmacy_id,
                "attempt": job.attempt,
                "availability": result.get("availability"),
            },
        )
        return ProcessJobResult(ProcessOutcome.COMPLETED, job.id, job.attempt, result=result)

    @staticmethod
    def _claim_lost(job: QueueJob, attempt: int) -> ProcessJobResult:
        # another delivery took the claim over; its outcome stands
        logger.warning(
            "Call result discarded; job claim was taken over",
            extra={"job_id": str(job.id), "attempt": attempt},
        )
        return ProcessJobResult(ProcessOutcome.SKIPPED, job.id, attempt, reason=CLAIM_LOST_REASON)

    async def _handle_failure(
        self,
        job: QueueJob,
        outcome: CallOutcome,
        finished: datetime,
    ) -> ProcessJobResult:
        error = outcome.error or "call_failed"
        attempt = job.attempt

        if attempt >= job.max_attempts:
            message = f"{MAX_RETRIES_REASON}: {error}"
            failed = await self._jobs.transition_job(
                job.id,
                expected=[JobStatus.PROCESSING],
                expected_attempt=attempt,
                status=JobStatus.FAILED,
                error_message=message,
                completed_at=finished,
            )
            if failed is None:
                return self._claim_lost(job, attempt)
            logger.warning(
                "Pharmacy call failed permanently",
                extra={"job_id": str(job.id), "attempt": attempt, "error": error},
            )
            return ProcessJobResult(ProcessOutcome.FAILED, job.id, attempt, reason=message)

        next_attempt = attempt + 1
        delay = delay_for_attempt(next_attempt)

        # Persist retry_scheduled before publishing so an early delivery is not
        # mistaken for a duplicate of the in-flight attempt.
        scheduled = await self._jobs.transition_job(
            job.id,
            expected=[JobStatus.PROCESSING],
            expected_attempt=attempt,
            status=JobStatus.RETRY_SCHEDULED,
            attempt=next_attempt,
            scheduled_for=finished + timedelta(seconds=delay),
            error_message=error,
        )
        if scheduled is None:
            return self._claim_lost(job, attempt)
        try:
            message_id = await self._dispatcher.schedule(
                ProcessJobPayload(
                    search_id=job.search_id,
                    pharmacy_id=job.pharmacy_id,
                    attempt=next_attempt,
                ),
                delay,
            )
        except Exception:
            logger.exception(
                "Failed to schedule retry",
                extra={"job_id": str(job.id), "next_attempt": next_attempt},
            )
            await self._jobs.transition_job(
                job.id,
                expected=[JobStatus.RETRY_SCHEDULED],
                expected_attempt=next_attempt,
                status=JobStatus.FAILED,
                scheduled_for=None,
                error_message=RETRY_SCHEDULE_FAILED_REASON,
                completed_at=finished,
            )
            return ProcessJobResult(
                ProcessOutcome.FAILED, job.id, next_attempt, reason=RETRY_SCHEDULE_FAILED_REASON
            )

        await self._jobs.update_job(job.id, dispatcher_message_id=message_id)
        logger.info(
            "Pharmacy call failed; retry scheduled",
            extra={
                "job_id": str(job.id),
                "error": error,
                "next_attempt": next_attempt,
                "delay_seconds": delay,
            },
        )
        return ProcessJobResult(
            ProcessOutcome.RETRY_SCHEDULED,
            job.id,
            next_attempt,
            reason=error,
            retry_in_seconds=delay,
        )

    # ------------------------------------------------------------------
    # CompleteSearch
    # ------------------------------------------------------------------

    async def complete_search(self, search_id: UUID) -> Search:
        """Operator override: mark the search completed.

        Jobs are left alone; in-flight and already-scheduled invocations still
        run to their own terminal state.
        """
        now = self._clock()
        updated = await self._searches.set_status(
            search_id, SearchStatus.COMPLETED, completed_at=now
        )
        if not updated:
            raise SearchNotFoundError(
                message=f"Search {search_id} not found",
                details={"search_id": str(search_id)},
            )
        logger.info("Search marked completed", extra={"search_id": str(search_id)})
        search = await self._searches.get(search_id)
        if search is None:
            raise SearchNotFoundError(
                message=f"Search {search_id} not found",
                details={"search_id": str(search_id)},
            )
        return search
