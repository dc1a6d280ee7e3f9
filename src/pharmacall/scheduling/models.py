from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any
from uuid import UUID

from pharmacall.scheduling.time_policy import DEFAULT_TIMEZONE, resolve_timezone


@dataclass(frozen=True)
class SchedulerSettings:
    """Runtime knobs for scheduler behavior."""

    timezone: str = DEFAULT_TIMEZONE
    stale_processing_after: timedelta = timedelta(minutes=10)

    def __post_init__(self) -> None:
        resolve_timezone(self.timezone)
        if self.stale_processing_after <= timedelta(0):
            raise ValueError("stale_processing_after must be positive")


@dataclass(frozen=True)
class StartCallingResult:
    """Summary returned after StartCalling."""

    search_id: UUID
    jobs_created: int = 0
    jobs_enqueued: int = 0
    jobs_failed: int = 0
    jobs_skipped: int = 0
    delay_seconds: int = 0
    scheduled_for: datetime | None = None
    job_ids: list[UUID] = field(default_factory=list)


class ProcessOutcome(str, Enum):
    """What one ProcessJob invocation did."""

    SKIPPED = "skipped"
    RATE_LIMITED = "rate_limited"
    RESCHEDULED = "rescheduled"
    COMPLETED = "completed"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"


@dataclass(frozen=True)
class ProcessJobResult:
    """Summary returned after ProcessJob."""

    outcome: ProcessOutcome
    job_id: UUID
    attempt: int
    reason: str | None = None
    retry_in_seconds: int | None = None
    result: dict[str, Any] | None = None
