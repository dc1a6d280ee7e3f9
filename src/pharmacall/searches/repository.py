"""
Repository for searches.

The search row is owned by the web application; this subsystem only reads
the selected pharmacies and writes the search status and manual results.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pharmacall.searches.models import Search, SearchStatus
from pharmacall.shared.database import utcnow
from pharmacall.shared.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class SelectedPharmacy:
    """One pharmacy picked by the user for a search."""

    id: str
    name: str
    phone: str
    address: str = ""

    @classmethod
    def from_metadata(cls, raw: dict[str, Any]) -> SelectedPharmacy | None:
        pharmacy_id = raw.get("id") or raw.get("place_id")
        if not pharmacy_id:
            return None
        return cls(
            id=str(pharmacy_id),
            name=str(raw.get("name") or ""),
            phone=str(raw.get("phone") or raw.get("phone_number") or ""),
            address=str(raw.get("address") or raw.get("vicinity") or ""),
        )


class SearchRepository:
    """Short-transaction access to the ``searches`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get(self, search_id: UUID) -> Search | None:
        async with self._session_factory() as session:
            return await session.get(Search, search_id)

    @staticmethod
    def selected_pharmacies(search: Search) -> list[SelectedPharmacy]:
        """Parse ``metadata.selected_pharmacies``, dropping entries without an id."""
        raw_list = (search.search_metadata or {}).get("selected_pharmacies") or []
        pharmacies: list[SelectedPharmacy] = []
        seen: set[str] = set()
        for raw in raw_list:
            if not isinstance(raw, dict):
                continue
            pharmacy = SelectedPharmacy.from_metadata(raw)
            if pharmacy is None:
                logger.warning(
                    "Selected pharmacy without id ignored",
                    extra={"search_id": str(search.id)},
                )
                continue
            if pharmacy.id in seen:
                continue
            seen.add(pharmacy.id)
            pharmacies.append(pharmacy)
        return pharmacies

    async def set_status(
        self,
        search_id: UUID,
        status: SearchStatus,
        completed_at: datetime | None = None,
    ) -> bool:
        """Update search status.

        Returns:
            True if a row was updated.
        """
        values: dict[str, Any] = {"status": status, "updated_at": utcnow()}
        if completed_at is not None:
            values["completed_at"] = completed_at
        async with self._session_factory.begin() as session:
            result = await session.execute(
                update(Search).where(Search.id == search_id).values(**values)
            )
            return (result.rowcount or 0) > 0

    async def record_pharmacy_result(
        self,
        search_id: UUID,
        pharmacy_id: str,
        result: dict[str, Any],
        now: datetime,
    ) -> Search | None:
        """Store a manual result under ``metadata.pharmacy_results`` and complete the search."""
        async with self._session_factory.begin() as session:
            search = (
                await session.execute(
                    select(Search).where(Search.id == search_id).with_for_update()
                )
            ).scalar_one_or_none()
            if search is None:
                return None

            metadata = dict(search.search_metadata or {})
            results = dict(metadata.get("pharmacy_results") or {})
            results[pharmacy_id] = result
            metadata["pharmacy_results"] = results

            # reassign so the JSON column is flagged dirty
            search.search_metadata = metadata
            search.status = SearchStatus.COMPLETED
            search.completed_at = now
            await session.flush()
            await session.refresh(search)
            return search
