"""Glucose store."""

from collections.abc import Callable, Sequence
from datetime import UTC, datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from insulin_ledger.config import settings
from insulin_ledger.logging_config import get_logger
from insulin_ledger.models.glucose import GlucoseSampleRecord
from insulin_ledger.schemas.glucose import NewGlucoseSample
from insulin_ledger.schemas.query_anchor import QueryAnchor
from insulin_ledger.services.critical_event_log import CriticalEventLogExporter
from insulin_ledger.services.ledger import Ledger, QueryResult

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class GlucoseStore:
    """Ledger of glucose samples, de-duplicated by sync identifier."""

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
        self.ledger: Ledger[GlucoseSampleRecord] = Ledger(
            GlucoseSampleRecord,
            session_maker,
            name="glucose_samples",
            provenance_identifier=provenance_identifier,
        )
        self.exporter = CriticalEventLogExporter(self.ledger, "Glucose.json")

    async def open(self) -> None:
        await self.ledger.open()

    async def add_glucose_samples(
        self, samples: Sequence[NewGlucoseSample]
    ) -> list[GlucoseSampleRecord]:
        """Store samples not seen before.

        Samples whose sync identifier is already stored, or repeated
        within the batch, are skipped.
        """
        identifiers = [s.sync_identifier for s in samples if s.sync_identifier]
        async with self.ledger.transaction() as txn:
            known: set[str] = set()
            if identifiers:
                stored = await self.ledger.fetch(
                    GlucoseSampleRecord.sync_identifier.in_(identifiers)
                )
                known = {r.sync_identifier for r in stored if r.sync_identifier}

            records = []
            for sample in samples:
                if sample.sync_identifier is not None:
                    if sample.sync_identifier in known:
                        continue
                    known.add(sample.sync_identifier)
                records.append(
                    txn.insert(
                        GlucoseSampleRecord(
                            start_date=sample.date,
                            value_mgdl=sample.value_mgdl,
                            is_display_only=sample.is_display_only,
                            was_user_entered=sample.was_user_entered,
                            device=sample.device,
                            sync_identifier=sample.sync_identifier,
                            sync_version=sample.sync_version,
                        )
                    )
                )

        logger.info(
            "Stored glucose samples", received=len(samples), inserted=len(records)
        )
        return records

    async def get_glucose_samples(
        self, start: datetime | None = None, end: datetime | None = None
    ) -> list[GlucoseSampleRecord]:
        """Active samples with ``start <= date <= end``, oldest first."""
        criteria = []
        if start is not None:
            criteria.append(GlucoseSampleRecord.start_date >= start)
        if end is not None:
            criteria.append(GlucoseSampleRecord.start_date <= end)
        return await self.ledger.fetch(*criteria)

    async def latest_glucose(self) -> GlucoseSampleRecord | None:
        """Most recent active sample."""
        return await self.ledger.latest()

    async def purge_cached(self, before: datetime | None = None) -> int:
        """Remove samples older than the cache length."""
        before = before or self.clock() - self.cache_length
        return await self.ledger.purge(before)

    async def execute_glucose_query(
        self, anchor: QueryAnchor | None, limit: int
    ) -> QueryResult[GlucoseSampleRecord]:
        return await self.ledger.execute_query(anchor, limit)
