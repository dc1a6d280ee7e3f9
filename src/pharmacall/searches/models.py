"""
SQLAlchemy model for medication searches.
"""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import Enum as SQLEnum
from sqlalchemy import Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from pharmacall.shared.database import Base, JSONType, UTCDateTime, utcnow


class SearchStatus(str, Enum):
    """Search lifecycle status as seen by the calling subsystem."""

    PENDING_PAYMENT = "pending_payment"
    PAYMENT_COMPLETED = "payment_completed"
    CALLING_IN_PROGRESS = "calling_in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class Search(Base):
    """A paid medication search and its selected pharmacies."""

    __tablename__ = "searches"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    medication_name: Mapped[str] = mapped_column(String(255), nullable=False)
    dosage: Mapped[str | None] = mapped_column(String(100), nullable=True)
    zipcode: Mapped[str | None] = mapped_column(String(20), nullable=True)
    radius: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status: Mapped[SearchStatus] = mapped_column(
        SQLEnum(
            SearchStatus,
            name="search_status",
            native_enum=False,
            length=32,
            values_callable=lambda e: [m.value for m in e],
        ),
        nullable=False,
        default=SearchStatus.PAYMENT_COMPLETED,
    )
    # "metadata" is reserved on declarative classes
    search_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        JSONType,
        nullable=False,
        default=dict,
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    def __repr__(self) -> str:
        return f"<Search(id={self.id}, medication={self.medication_name}, status={self.status})>"
