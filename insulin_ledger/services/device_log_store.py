"""Device log store.

Persists device communication history. Unlike the other stores, rows
expire: anything older than the maximum entry age is physically removed.
"""

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Final

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from insulin_ledger.config import settings
from insulin_ledger.logging_config import get_logger
from insulin_ledger.models.device_log import DeviceLogEntryRecord, DeviceLogEntryType
from insulin_ledger.schemas.query_anchor import QueryAnchor
from insulin_ledger.services.critical_event_log import CriticalEventLogExporter
from insulin_ledger.services.ledger import Ledger, QueryResult

logger = get_logger(__name__)

# Device logs are kept at least this long regardless of configuration
MINIMUM_MAX_ENTRY_AGE: Final[timedelta] = timedelta(days=7)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class DeviceLogStore:
    """Ledger of device log entries with age-based expiry."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        *,
        max_entry_age: timedelta | None = None,
        provenance_identifier: str | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        configured = max_entry_age or timedelta(days=settings.device_log_max_entry_age_days)
        self.max_entry_age = max(configured, MINIMUM_MAX_ENTRY_AGE)
        self.clock = clock
        self.ledger: Ledger[DeviceLogEntryRecord] = Ledger(
            DeviceLogEntryRecord,
            session_maker,
            name="device_log_entries",
            provenance_identifier=provenance_identifier,
        )
        self.exporter = CriticalEventLogExporter(self.ledger, "DeviceLog.json")

    async def open(self) -> None:
        await self.ledger.open()

    async def log(
        self,
        manager_identifier: str,
        device_identifier: str | None,
        entry_type: DeviceLogEntryType,
        message: str,
        date: datetime | None = None,
    ) -> DeviceLogEntryRecord:
        return await self.ledger.insert(
            DeviceLogEntryRecord(
                start_date=date or self.clock(),
                manager_identifier=manager_identifier,
                device_identifier=device_identifier,
                entry_type=entry_type,
                message=message,
            )
        )

    async def get_log_entries(
        self, start: datetime, end: datetime | None = None
    ) -> list[DeviceLogEntryRecord]:
        """Entries with ``start <= date < end``, oldest first.

        Expired entries are purged after reading.
        """
        criteria = [DeviceLogEntryRecord.start_date >= start]
        if end is not None:
            criteria.append(DeviceLogEntryRecord.start_date < end)
        entries = await self.ledger.fetch(*criteria)
        await self.purge_expired()
        return entries

    async def purge_expired(self) -> int:
        """Remove entries older than the maximum entry age."""
        cutoff = self.clock() - self.max_entry_age
        count = await self.ledger.purge(cutoff)
        if count:
            logger.info("Expired device log entries", count=count, cutoff=cutoff.isoformat())
        return count

    async def execute_device_log_query(
        self, anchor: QueryAnchor | None, limit: int
    ) -> QueryResult[DeviceLogEntryRecord]:
        return await self.ledger.execute_query(anchor, limit)
