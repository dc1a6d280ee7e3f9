"""
Delayed task dispatcher interface.
"""

from __future__ import annotations

from typing import Protocol
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

PROCESS_JOB_PATH = "/api/tasks/process-pharmacy-call"


class ProcessJobPayload(BaseModel):
    """Identifies one job invocation: (search, pharmacy, attempt)."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    search_id: UUID = Field(alias="searchId")
    pharmacy_id: str = Field(alias="pharmacyId", min_length=1)
    attempt: int = Field(default=1, ge=1)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


class TaskDispatcher(Protocol):
    """Publish-with-delay primitive; delivery is at-least-once."""

    async def schedule(self, payload: ProcessJobPayload, delay_seconds: int) -> str:
        """Invoke job processing for ``payload`` after ``delay_seconds``.

        Returns:
            Dispatcher message id.

        Raises:
            DispatchError: if the publish call fails.
        """
        ...

    async def aclose(self) -> None: ...
