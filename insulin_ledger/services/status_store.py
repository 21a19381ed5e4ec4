"""Status store: point-in-time device and loop status snapshots."""

from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from insulin_ledger.logging_config import get_logger
from insulin_ledger.models.status import StatusRecord
from insulin_ledger.schemas.query_anchor import QueryAnchor
from insulin_ledger.services.critical_event_log import CriticalEventLogExporter
from insulin_ledger.services.ledger import Ledger, QueryResult

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class StatusStore:
    """Ledger of status snapshots."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        *,
        provenance_identifier: str | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.clock = clock
        self.ledger: Ledger[StatusRecord] = Ledger(
            StatusRecord,
            session_maker,
            name="status_records",
            provenance_identifier=provenance_identifier,
        )
        self.exporter = CriticalEventLogExporter(self.ledger, "Status.json")

    async def open(self) -> None:
        await self.ledger.open()

    async def add_status(
        self,
        status_type: str,
        payload: dict[str, Any],
        date: datetime | None = None,
    ) -> StatusRecord:
        record = await self.ledger.insert(
            StatusRecord(
                start_date=date or self.clock(),
                status_type=status_type,
                payload=payload,
            )
        )
        logger.debug("Stored status", status_type=status_type)
        return record

    async def get_statuses(
        self, start: datetime | None = None, end: datetime | None = None
    ) -> list[StatusRecord]:
        criteria = []
        if start is not None:
            criteria.append(StatusRecord.start_date >= start)
        if end is not None:
            criteria.append(StatusRecord.start_date <= end)
        return await self.ledger.fetch(*criteria)

    async def execute_status_query(
        self, anchor: QueryAnchor | None, limit: int
    ) -> QueryResult[StatusRecord]:
        return await self.ledger.execute_query(anchor, limit)
