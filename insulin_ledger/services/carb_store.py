"""Carbohydrate store.

Carb entries are edited by superseding and removed by tombstoning, so
incremental consumers observe every change.
"""

from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from insulin_ledger.config import settings
from insulin_ledger.logging_config import get_logger
from insulin_ledger.models.carb import CarbEntryRecord
from insulin_ledger.schemas.carb import NewCarbEntry
from insulin_ledger.schemas.query_anchor import QueryAnchor
from insulin_ledger.services.critical_event_log import CriticalEventLogExporter
from insulin_ledger.services.ledger import Ledger, QueryResult

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _carb_fields(entry: NewCarbEntry) -> dict[str, object]:
    return {
        "start_date": entry.date,
        "grams": entry.grams,
        "food_type": entry.food_type,
        "absorption_time_seconds": (
            entry.absorption_time.total_seconds()
            if entry.absorption_time is not None
            else None
        ),
    }


class CarbStore:
    """Ledger of carbohydrate entries."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        *,
        cache_length: timedelta | None = None,
        provenance_identifier: str | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.cache_length = cache_length or timedelta(hours=settings.cache_length_hours)
        self.clock = clock
        self.ledger: Ledger[CarbEntryRecord] = Ledger(
            CarbEntryRecord,
            session_maker,
            name="carb_entries",
            provenance_identifier=provenance_identifier,
        )
        self.exporter = CriticalEventLogExporter(self.ledger, "Carbs.json")

    async def open(self) -> None:
        await self.ledger.open()

    async def add_carb_entry(self, entry: NewCarbEntry) -> CarbEntryRecord:
        record = await self.ledger.insert(
            CarbEntryRecord(
                sync_identifier=entry.sync_identifier,
                sync_version=entry.sync_version,
                **_carb_fields(entry),
            )
        )
        logger.info("Added carb entry", grams=entry.grams, date=entry.date.isoformat())
        return record

    async def replace_carb_entry(
        self, old: CarbEntryRecord, new: NewCarbEntry
    ) -> CarbEntryRecord:
        """Supersede ``old`` with the values of ``new``."""
        record = await self.ledger.supersede(old, **_carb_fields(new))
        logger.info(
            "Replaced carb entry",
            sync_identifier=record.sync_identifier,
            sync_version=record.sync_version,
        )
        return record

    async def delete_carb_entry(self, record: CarbEntryRecord) -> CarbEntryRecord:
        deleted = await self.ledger.tombstone(record)
        logger.info("Deleted carb entry", sync_identifier=record.sync_identifier)
        return deleted

    async def get_carb_entries(
        self, start: datetime | None = None, end: datetime | None = None
    ) -> list[CarbEntryRecord]:
        """Active entries with ``start <= date <= end``, oldest first."""
        criteria = []
        if start is not None:
            criteria.append(CarbEntryRecord.start_date >= start)
        if end is not None:
            criteria.append(CarbEntryRecord.start_date <= end)
        return await self.ledger.fetch(*criteria)

    async def purge_cached(self, before: datetime | None = None) -> int:
        before = before or self.clock() - self.cache_length
        return await self.ledger.purge(before)

    async def execute_carb_query(
        self, anchor: QueryAnchor | None, limit: int
    ) -> QueryResult[CarbEntryRecord]:
        return await self.ledger.execute_query(anchor, limit)
