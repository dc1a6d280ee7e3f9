"""
Pytest configuration and shared fixtures.

Database tests run against a throwaway SQLite file through aiosqlite; every
test gets a fresh schema.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from uuid import uuid4

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pharmacall.dispatch.interface import ProcessJobPayload
from pharmacall.jobs.models import CallProvider, QueueJob
from pharmacall.jobs.store import JobStore
from pharmacall.scheduling.rate_guard import RateGuard
from pharmacall.searches.models import Search, SearchStatus
from pharmacall.searches.repository import SearchRepository
from pharmacall.shared.database import DatabaseManager
from pharmacall.shared.exceptions import DispatchError
from pharmacall.voice.outcome import CallOutcome, ExtractedData

# Monday 2025-01-06 10:00 America/New_York (EST, UTC-5)
IN_WINDOW = datetime(2025, 1, 6, 15, 0, tzinfo=timezone.utc)
# Saturday 2025-01-04 10:00 America/New_York
WEEKEND = datetime(2025, 1, 4, 15, 0, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def db(tmp_path: Path) -> AsyncGenerator[DatabaseManager, None]:
    manager = DatabaseManager(f"sqlite+aiosqlite:///{tmp_path / 'pharmacall.db'}")
    await manager.create_all()
    yield manager
    await manager.close()


@pytest.fixture
def session_factory(db: DatabaseManager) -> async_sessionmaker[AsyncSession]:
    return db.session_factory


@pytest.fixture
def searches(session_factory: async_sessionmaker[AsyncSession]) -> SearchRepository:
    return SearchRepository(session_factory)


@pytest.fixture
def job_store(session_factory: async_sessionmaker[AsyncSession]) -> JobStore:
    return JobStore(session_factory)


@pytest.fixture
def rate_guard(session_factory: async_sessionmaker[AsyncSession]) -> RateGuard:
    return RateGuard(session_factory)


def pharmacy(pharmacy_id: str, name: str | None = None) -> dict[str, Any]:
    return {
        "id": pharmacy_id,
        "name": name or f"Pharmacy {pharmacy_id}",
        "phone": "+15555550100",
        "address": "1 Main St",
    }


@pytest.fixture
def make_search(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Any]:
    """Insert a paid search selecting the given pharmacy ids."""

    async def _make(*pharmacy_ids: str, medication: str = "Amoxicillin") -> Search:
        search = Search(
            id=uuid4(),
            user_id="user-1",
            medication_name=medication,
            dosage="500mg",
            zipcode="10001",
            radius=5,
            status=SearchStatus.PAYMENT_COMPLETED,
            search_metadata={"selected_pharmacies": [pharmacy(pid) for pid in pharmacy_ids]},
        )
        async with session_factory.begin() as session:
            session.add(search)
        return search

    return _make


class RecordingDispatcher:
    """Records scheduled invocations; can be told to fail."""

    def __init__(self) -> None:
        self.scheduled: list[tuple[ProcessJobPayload, int]] = []
        self.fail_for: set[str] = set()
        self.fail_all = False
        self.closed = False

    async def schedule(self, payload: ProcessJobPayload, delay_seconds: int) -> str:
        if self.fail_all or payload.pharmacy_id in self.fail_for:
            raise DispatchError(message="publish failed")
        self.scheduled.append((payload, delay_seconds))
        return f"msg-{len(self.scheduled)}"

    async def aclose(self) -> None:
        self.closed = True


@dataclass
class ScriptedExecutor:
    """Returns queued outcomes in order; success by default."""

    outcomes: list[CallOutcome] = field(default_factory=list)
    calls: list[QueueJob] = field(default_factory=list)
    provider: CallProvider = CallProvider.MOCK
    on_execute: Callable[[QueueJob], Any] | None = None

    async def execute(self, job: QueueJob, on_placed: Any = None) -> CallOutcome:
        self.calls.append(job)
        if on_placed is not None:
            await on_placed(f"call-{len(self.calls)}")
        if self.on_execute is not None:
            await self.on_execute(job)
        if self.outcomes:
            return self.outcomes.pop(0)
        return success_outcome()


def success_outcome(availability: bool = True, price: float | None = 42.5) -> CallOutcome:
    return CallOutcome(
        success=True,
        duration_seconds=75,
        transcript="Yes we have it in stock for $42.50",
        extracted_data=ExtractedData(availability=availability, price=price, notes="In stock"),
        confidence_score=0.9,
    )


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def executor() -> ScriptedExecutor:
    return ScriptedExecutor()
