"""
SQLAlchemy models for queue jobs, call records and rate-limit markers.
"""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import Enum as SQLEnum
from sqlalchemy import Float, ForeignKey, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

import pharmacall.searches.models  # noqa: F401  (registers "searches" for the FK)
from pharmacall.shared.database import Base, JSONType, UTCDateTime, utcnow

MAX_ATTEMPTS = 3


def _enum_values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class JobStatus(str, Enum):
    """Queue job lifecycle status."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRY_SCHEDULED = "retry_scheduled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class CallRecordStatus(str, Enum):
    """Status of one realized phone call."""

    INITIATED = "initiated"
    RINGING = "ringing"
    ANSWERED = "answered"
    COMPLETED = "completed"
    FAILED = "failed"


class CallProvider(str, Enum):
    VAPI = "vapi"
    MOCK = "mock"


class QueueJob(Base):
    """One "call this pharmacy for this search" unit of work."""

    __tablename__ = "queue_jobs"
    __table_args__ = (
        UniqueConstraint("search_id", "pharmacy_id", name="uq_queue_jobs_search_pharmacy"),
    )

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    search_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("searches.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    pharmacy_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    pharmacy_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    pharmacy_phone: Mapped[str] = mapped_column(String(50), nullable=False, default="")
    pharmacy_address: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    medication_name: Mapped[str] = mapped_column(String(255), nullable=False)
    dosage: Mapped[str | None] = mapped_column(String(100), nullable=True)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[JobStatus] = mapped_column(
        SQLEnum(
            JobStatus,
            name="job_status",
            native_enum=False,
            length=32,
            values_callable=_enum_values,
        ),
        nullable=False,
        default=JobStatus.PENDING,
        index=True,
    )
    attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=MAX_ATTEMPTS)
    scheduled_for: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    result_data: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    dispatcher_message_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    def __repr__(self) -> str:
        return (
            f"<QueueJob(id={self.id}, pharmacy={self.pharmacy_id}, "
            f"status={self.status}, attempt={self.attempt})>"
        )


class CallRecord(Base):
    """One realized phone-call attempt for a job."""

    __tablename__ = "calls"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    search_id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), nullable=False, index=True)
    job_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("queue_jobs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    pharmacy_id: Mapped[str] = mapped_column(String(255), nullable=False)
    pharmacy_phone: Mapped[str] = mapped_column(String(50), nullable=False, default="")
    attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    call_provider: Mapped[CallProvider] = mapped_column(
        SQLEnum(
            CallProvider,
            name="call_provider",
            native_enum=False,
            length=16,
            values_callable=_enum_values,
        ),
        nullable=False,
    )
    status: Mapped[CallRecordStatus] = mapped_column(
        SQLEnum(
            CallRecordStatus,
            name="call_record_status",
            native_enum=False,
            length=16,
            values_callable=_enum_values,
        ),
        nullable=False,
        default=CallRecordStatus.INITIATED,
    )
    answered_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    ended_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    duration_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)
    transcript: Mapped[str | None] = mapped_column(Text, nullable=True)
    extracted_data: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    confidence_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    provider_call_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    def __repr__(self) -> str:
        return f"<CallRecord(id={self.id}, job={self.job_id}, status={self.status})>"


class PharmacyLastCalled(Base):
    """Global per-pharmacy cooldown marker, shared across searches."""

    __tablename__ = "pharmacy_last_called"

    pharmacy_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    last_called_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    last_job_id: Mapped[UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )
