"""
Job store: persistence facade over queue jobs and call records.

Every method runs in its own short transaction so that no database
transaction is held open across a phone call.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any, NamedTuple
from uuid import UUID

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pharmacall.jobs.models import (
    MAX_ATTEMPTS,
    CallProvider,
    CallRecord,
    CallRecordStatus,
    JobStatus,
    QueueJob,
)
from pharmacall.shared.database import utcnow
from pharmacall.shared.logging import get_logger

logger = get_logger(__name__)

TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED)


@dataclass(frozen=True)
class NewJob:
    """Fields denormalized onto a job when the calling phase starts."""

    search_id: UUID
    pharmacy_id: str
    pharmacy_name: str
    pharmacy_phone: str
    pharmacy_address: str
    medication_name: str
    dosage: str | None
    user_id: str
    max_attempts: int = MAX_ATTEMPTS


class UpsertedJob(NamedTuple):
    job: QueueJob
    created: bool


class JobStore:
    """Create/read/update/query access to ``queue_jobs`` and ``calls``."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def upsert_jobs(self, batch: Sequence[NewJob]) -> list[UpsertedJob]:
        """Insert one job per (search_id, pharmacy_id), reusing existing rows.

        A concurrent insert of the same pair loses on the unique constraint and
        falls back to reading the winner's row.
        """
        results: list[UpsertedJob] = []
        async with self._session_factory.begin() as session:
            for new in batch:
                existing = await self._find(session, new.search_id, new.pharmacy_id)
                if existing is not None:
                    results.append(UpsertedJob(existing, False))
                    continue

                job = QueueJob(
                    search_id=new.search_id,
                    pharmacy_id=new.pharmacy_id,
                    pharmacy_name=new.pharmacy_name,
                    pharmacy_phone=new.pharmacy_phone,
                    pharmacy_address=new.pharmacy_address,
                    medication_name=new.medication_name,
                    dosage=new.dosage,
                    user_id=new.user_id,
                    status=JobStatus.PENDING,
                    attempt=1,
                    max_attempts=new.max_attempts,
                )
                try:
                    async with session.begin_nested():
                        session.add(job)
                        await session.flush()
                except IntegrityError:
                    existing = await self._find(session, new.search_id, new.pharmacy_id)
                    if existing is None:
                        raise
                    results.append(UpsertedJob(existing, False))
                    continue
                results.append(UpsertedJob(job, True))
        return results

    async def create_jobs(self, batch: Sequence[NewJob]) -> list[QueueJob]:
        return [item.job for item in await self.upsert_jobs(batch)]

    async def get_job(self, search_id: UUID, pharmacy_id: str) -> QueueJob | None:
        async with self._session_factory() as session:
            return await self._find(session, search_id, pharmacy_id)

    async def get_job_by_id(self, job_id: UUID) -> QueueJob | None:
        async with self._session_factory() as session:
            return await session.get(QueueJob, job_id)

    async def list_jobs_for_search(self, search_id: UUID) -> list[QueueJob]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(QueueJob)
                .where(QueueJob.search_id == search_id)
                .order_by(QueueJob.created_at, QueueJob.pharmacy_id)
            )
            return list(result.scalars().all())

    async def list_jobs_created_since(self, since: datetime) -> list[QueueJob]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(QueueJob).where(QueueJob.created_at >= since)
            )
            return list(result.scalars().all())

    async def update_job(self, job_id: UUID, **patch: Any) -> QueueJob | None:
        """Patch a non-terminal job.

        Terminal jobs are immutable; patching one is a no-op returning None.
        """
        return await self.transition_job(
            job_id,
            expected=[s for s in JobStatus if s not in TERMINAL_STATUSES],
            **patch,
        )

    async def transition_job(
        self,
        job_id: UUID,
        expected: Iterable[JobStatus],
        expected_attempt: int | None = None,
        **patch: Any,
    ) -> QueueJob | None:
        """Conditionally update a job whose current status is in ``expected``.

        Returns:
            The refreshed job, or None if the pre-state did not match.
        """
        conditions = [QueueJob.id == job_id, QueueJob.status.in_(list(expected))]
        if expected_attempt is not None:
            conditions.append(QueueJob.attempt == expected_attempt)
        return await self._conditional_update(job_id, and_(*conditions), patch)

    async def claim_job(
        self,
        job_id: UUID,
        attempt: int,
        now: datetime,
        stale_before: datetime,
    ) -> QueueJob | None:
        """Move a job into ``processing`` for ``attempt``.

        Succeeds from ``pending``/``retry_scheduled``, or from a ``processing``
        claim that started before ``stale_before``. Exactly one of several
        concurrent deliveries wins.
        """
        condition = and_(
            QueueJob.id == job_id,
            QueueJob.attempt <= attempt,
            attempt <= QueueJob.max_attempts,
            or_(
                QueueJob.status.in_([JobStatus.PENDING, JobStatus.RETRY_SCHEDULED]),
                and_(
                    QueueJob.status == JobStatus.PROCESSING,
                    or_(QueueJob.started_at.is_(None), QueueJob.started_at < stale_before),
                ),
            ),
        )
        return await self._conditional_update(
            job_id,
            condition,
            {
                "status": JobStatus.PROCESSING,
                "attempt": attempt,
                "started_at": now,
                "scheduled_for": None,
            },
        )

    async def _conditional_update(
        self,
        job_id: UUID,
        condition: Any,
        patch: dict[str, Any],
    ) -> QueueJob | None:
        values = dict(patch)
        values.setdefault("updated_at", utcnow())
        async with self._session_factory.begin() as session:
            result = await session.execute(
                update(QueueJob)
                .where(condition)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if (result.rowcount or 0) == 0:
                return None
            return await session.get(QueueJob, job_id, populate_existing=True)

    @staticmethod
    async def _find(session: AsyncSession, search_id: UUID, pharmacy_id: str) -> QueueJob | None:
        result = await session.execute(
            select(QueueJob).where(
                QueueJob.search_id == search_id,
                QueueJob.pharmacy_id == pharmacy_id,
            )
        )
        return result.scalar_one_or_none()

    # ------------------------------------------------------------------
    # Call records
    # ------------------------------------------------------------------

    async def create_call_record(self, job: QueueJob, provider: CallProvider) -> CallRecord:
        record = CallRecord(
            search_id=job.search_id,
            job_id=job.id,
            pharmacy_id=job.pharmacy_id,
            pharmacy_phone=job.pharmacy_phone,
            attempt=job.attempt,
            call_provider=provider,
            status=CallRecordStatus.INITIATED,
        )
        async with self._session_factory.begin() as session:
            session.add(record)
            await session.flush()
            await session.refresh(record)
        return record

    async def update_call_record(self, record_id: UUID, **patch: Any) -> CallRecord | None:
        async with self._session_factory.begin() as session:
            record = await session.get(CallRecord, record_id)
            if record is None:
                return None
            for key, value in patch.items():
                setattr(record, key, value)
            await session.flush()
            await session.refresh(record)
            return record

    async def get_call_record_by_provider_id(self, provider_call_id: str) -> CallRecord | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(CallRecord)
                .where(CallRecord.provider_call_id == provider_call_id)
                .order_by(CallRecord.created_at.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def list_call_records_for_job(self, job_id: UUID) -> list[CallRecord]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(CallRecord)
                .where(CallRecord.job_id == job_id)
                .order_by(CallRecord.created_at)
            )
            return list(result.scalars().all())

    async def list_call_records_for_jobs(self, job_ids: Sequence[UUID]) -> list[CallRecord]:
        if not job_ids:
            return []
        async with self._session_factory() as session:
            result = await session.execute(
                select(CallRecord).where(CallRecord.job_id.in_(list(job_ids)))
            )
            return list(result.scalars().all())
