"""
Per-pharmacy call cooldown.

A single marker per pharmacy id is shared by every search: calling a
pharmacy for one search blocks calls to it from any other search for the
cooldown period. The marker remembers which job placed the call so that a
job's own retries are not vetoed by its previous attempt.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pharmacall.jobs.models import PharmacyLastCalled
from pharmacall.shared.database import utcnow
from pharmacall.shared.logging import get_logger

logger = get_logger(__name__)

DEFAULT_COOLDOWN = timedelta(hours=1)


class RateGuard:
    """Advisory cooldown backed by the ``pharmacy_last_called`` table."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cooldown: timedelta = DEFAULT_COOLDOWN,
    ) -> None:
        self._session_factory = session_factory
        self._cooldown = cooldown

    @property
    def cooldown(self) -> timedelta:
        return self._cooldown

    async def last_called(self, pharmacy_id: str) -> PharmacyLastCalled | None:
        async with self._session_factory() as session:
            return await session.get(PharmacyLastCalled, pharmacy_id)

    async def can_call_now(
        self,
        pharmacy_id: str,
        job_id: UUID | None = None,
        now: datetime | None = None,
    ) -> bool:
        """False if another job called this pharmacy less than ``cooldown`` ago."""
        now = now or utcnow()
        marker = await self.last_called(pharmacy_id)
        if marker is None:
            return True
        if job_id is not None and marker.last_job_id == job_id:
            return True
        return now - marker.last_called_at >= self._cooldown

    async def record_call_attempt(
        self,
        pharmacy_id: str,
        timestamp: datetime,
        job_id: UUID | None = None,
    ) -> None:
        """Overwrite the marker (last write wins)."""
        async with self._session_factory.begin() as session:
            marker = await session.get(PharmacyLastCalled, pharmacy_id)
            if marker is None:
                session.add(
                    PharmacyLastCalled(
                        pharmacy_id=pharmacy_id,
                        last_called_at=timestamp,
                        last_job_id=job_id,
                    )
                )
            else:
                marker.last_called_at = timestamp
                marker.last_job_id = job_id

    async def try_reserve(self, pharmacy_id: str, job_id: UUID, now: datetime) -> bool:
        """Atomically take the marker for ``job_id`` if the pharmacy is callable.

        Compare-and-set: the write only lands when the marker is absent,
        expired, or already owned by the same job.

        Returns:
            True if this job now holds the marker.
        """
        expires_before = now - self._cooldown
        async with self._session_factory.begin() as session:
            result = await session.execute(
                update(PharmacyLastCalled)
                .where(
                    and_(
                        PharmacyLastCalled.pharmacy_id == pharmacy_id,
                        or_(
                            PharmacyLastCalled.last_called_at <= expires_before,
                            PharmacyLastCalled.last_job_id == job_id,
                        ),
                    )
                )
                .values(last_called_at=now, last_job_id=job_id, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if (result.rowcount or 0) > 0:
                return True

            exists = (
                await session.execute(
                    select(PharmacyLastCalled.pharmacy_id).where(
                        PharmacyLastCalled.pharmacy_id == pharmacy_id
                    )
                )
            ).scalar_one_or_none()
            if exists is not None:
                logger.info(
                    "Rate guard reservation refused",
                    extra={"pharmacy_id": pharmacy_id, "job_id": str(job_id)},
                )
                return False

        # No marker yet: first insert wins, a concurrent loser sees IntegrityError.
        try:
            async with self._session_factory.begin() as session:
                session.add(
                    PharmacyLastCalled(
                        pharmacy_id=pharmacy_id,
                        last_called_at=now,
                        last_job_id=job_id,
                    )
                )
        except IntegrityError:
            logger.info(
                "Rate guard reservation lost insert race",
                extra={"pharmacy_id": pharmacy_id, "job_id": str(job_id)},
            )
            return False
        return True
