"""Dose store.

Keeps two ledgers: the raw pump events as reported, and the normalized
insulin deliveries derived from them (reconciled, overlaid with the
basal schedule and annotated with scheduled rates). Every pump history
read re-normalizes the recent window and brings the delivery ledger in
line with it: new doses are inserted, changed ones superseded, and ones
no longer produced tombstoned.

A third ledger holds reservoir readings, the dose source for pumps that
only report their reservoir level.
"""

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Final

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from insulin_ledger.config import settings
from insulin_ledger.core.dosing.annotation import annotated
from insulin_ledger.core.dosing.constants import RESERVOIR_CONTINUITY_INTERVAL
from insulin_ledger.core.dosing.enums import DoseType, PumpEventType
from insulin_ledger.core.dosing.insulin_activity import (
    InsulinValue,
    insulin_on_board,
    insulin_on_board_at,
    to_basal_relative_doses,
    total_delivery,
)
from insulin_ledger.core.dosing.insulin_models import InsulinModelProvider
from insulin_ledger.core.dosing.models import DoseEntry, appended_union
from insulin_ledger.core.dosing.overlay import overlay_basal
from insulin_ledger.core.dosing.reconciliation import extended_open_suspend, reconciled
from insulin_ledger.core.dosing.reservoir import is_continuous, reservoir_dose_entries
from insulin_ledger.core.schedule import BasalRateSchedule, filter_date_range
from insulin_ledger.logging_config import correlation_scope, get_logger
from insulin_ledger.models.insulin_delivery import InsulinDeliveryRecord
from insulin_ledger.models.pump_event import PumpEventRecord
from insulin_ledger.models.reservoir import ReservoirValueRecord
from insulin_ledger.schemas.pump_event import NewPumpEvent
from insulin_ledger.schemas.query_anchor import QueryAnchor
from insulin_ledger.schemas.reservoir import NewReservoirValue
from insulin_ledger.services.critical_event_log import CriticalEventLogExporter
from insulin_ledger.services.ledger import Ledger, QueryResult

logger = get_logger(__name__)

# Pump events that open or close an interval on the basal timeline
_BASAL_TIMELINE_DOSE_TYPES: Final = (
    DoseType.basal,
    DoseType.temp_basal,
    DoseType.suspend,
    DoseType.resume,
)


@dataclass(frozen=True)
class ReservoirAddResult:
    """Outcome of ``DoseStore.add_reservoir_value``."""

    value: ReservoirValueRecord | None  # None when the reading was a duplicate
    previous_value: ReservoirValueRecord | None
    are_values_continuous: bool


def _utcnow() -> datetime:
    return datetime.now(UTC)


class DoseStore:
    """Pump event and insulin delivery ledgers with IOB queries."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        *,
        basal_schedule: BasalRateSchedule | None = None,
        insulin_model_provider: InsulinModelProvider | None = None,
        delivery_increment: float | None = None,
        cache_length: timedelta | None = None,
        reconciliation_window: timedelta | None = None,
        reconciliation_freshness: timedelta | None = None,
        provenance_identifier: str | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.basal_schedule = basal_schedule
        self.insulin_model_provider = insulin_model_provider or InsulinModelProvider()
        self.delivery_increment = delivery_increment
        self.cache_length = cache_length or timedelta(hours=settings.cache_length_hours)
        self.reconciliation_window = reconciliation_window or timedelta(
            hours=settings.pump_event_reconciliation_window_hours
        )
        self.reconciliation_freshness = reconciliation_freshness or timedelta(
            minutes=settings.reconciliation_freshness_minutes
        )
        self.clock = clock
        self.last_pump_events_reconciliation: datetime | None = None

        self.pump_event_ledger: Ledger[PumpEventRecord] = Ledger(
            PumpEventRecord,
            session_maker,
            name="pump_events",
            provenance_identifier=provenance_identifier,
        )
        self.dose_ledger: Ledger[InsulinDeliveryRecord] = Ledger(
            InsulinDeliveryRecord,
            session_maker,
            name="insulin_deliveries",
            provenance_identifier=provenance_identifier,
        )
        self.reservoir_ledger: Ledger[ReservoirValueRecord] = Ledger(
            ReservoirValueRecord,
            session_maker,
            name="reservoir_values",
            provenance_identifier=provenance_identifier,
        )
        self.pump_event_exporter = CriticalEventLogExporter(
            self.pump_event_ledger, "PumpEvents.json"
        )
        self.dose_exporter = CriticalEventLogExporter(self.dose_ledger, "Doses.json")

    async def open(self) -> None:
        await self.pump_event_ledger.open()
        await self.dose_ledger.open()
        await self.reservoir_ledger.open()

    # ── Pump events ──

    async def add_pump_events(
        self, events: Sequence[NewPumpEvent], last_reconciliation: datetime
    ) -> list[PumpEventRecord]:
        """Store a pump history read and refresh the normalized doses.

        Events already stored (same date and raw payload) are skipped.
        Previously stored mutable events are tombstoned first: the pump
        reports their current state again in every read.

        Args:
            events: Events from the read, in any order.
            last_reconciliation: When the read completed.

        Returns:
            The newly stored event rows.
        """
        with correlation_scope("pump-events"):
            unique: dict[tuple[float, bytes], NewPumpEvent] = {}
            for event in events:
                unique.setdefault(event.dedupe_key, event)

            async with self.pump_event_ledger.transaction() as txn:
                dates = [event.date for event in unique.values()]
                stored = list(
                    (
                        await txn.session.scalars(
                            select(PumpEventRecord).where(
                                PumpEventRecord.is_active.is_(True),
                                or_(
                                    PumpEventRecord.is_mutable.is_(True),
                                    PumpEventRecord.start_date.in_(dates),
                                ),
                            )
                        )
                    ).all()
                )
                replaced = 0
                for record in stored:
                    if record.is_mutable:
                        await txn.tombstone(record)
                        replaced += 1
                existing_keys = {
                    (record.start_date.timestamp(), record.raw)
                    for record in stored
                    if not record.is_mutable
                }
                inserted = [
                    txn.insert(self._pump_event_record(event))
                    for key, event in unique.items()
                    if key not in existing_keys
                ]

            if (
                self.last_pump_events_reconciliation is None
                or last_reconciliation > self.last_pump_events_reconciliation
            ):
                self.last_pump_events_reconciliation = last_reconciliation

            logger.info(
                "Stored pump events",
                received=len(events),
                inserted=len(inserted),
                replaced_mutable=replaced,
            )
            await self.sync_normalized_doses()
            return inserted

    @staticmethod
    def _pump_event_record(event: NewPumpEvent) -> PumpEventRecord:
        dose = event.dose
        return PumpEventRecord(
            start_date=event.date,
            raw=event.raw,
            title=event.title,
            event_type=event.type,
            is_mutable=event.is_mutable,
            sync_identifier=(dose.sync_identifier if dose else None)
            or event.raw.hex(),
            sync_version=dose.sync_version if dose else 1,
            dose_type=dose.type if dose else None,
            dose_start_date=dose.start_date if dose else None,
            dose_end_date=dose.end_date if dose else None,
            dose_value=dose.value if dose else None,
            dose_unit=dose.unit if dose else None,
            dose_delivered_units=dose.delivered_units if dose else None,
            automatic=dose.automatic if dose else None,
            was_programmed_by_pump_ui=dose.was_programmed_by_pump_ui if dose else False,
            insulin_type=dose.insulin_type if dose else None,
        )

    async def get_pump_event_doses(self, start: datetime) -> list[DoseEntry]:
        """Doses of active pump events still running at or after ``start``."""
        records = await self.pump_event_ledger.fetch(
            PumpEventRecord.dose_type.is_not(None),
            PumpEventRecord.dose_end_date >= start,
        )
        if (running := await self._suspend_running_at(start)) is not None:
            records.insert(0, running)
        doses = [dose for record in records if (dose := record.to_dose_entry())]
        doses.sort(key=lambda dose: dose.start_date)
        return doses

    async def _suspend_running_at(self, date: datetime) -> PumpEventRecord | None:
        """The open-ended suspend started before ``date`` and not yet resumed."""
        latest = await self.pump_event_ledger.latest(
            PumpEventRecord.dose_type.in_(_BASAL_TIMELINE_DOSE_TYPES),
            PumpEventRecord.dose_start_date < date,
        )
        if (
            latest is None
            or latest.dose_type != DoseType.suspend
            or latest.dose_end_date != latest.dose_start_date
        ):
            return None
        return latest

    async def purge_pump_events(self, before: datetime | None = None) -> int:
        """Remove pump events older than the cache length."""
        before = before or self.clock() - self.cache_length
        return await self.pump_event_ledger.purge(before)

    async def delete_pump_event(self, record: PumpEventRecord) -> PumpEventRecord:
        """Tombstone one pump event and re-derive the doses around it."""
        deleted = await self.pump_event_ledger.tombstone(record)
        logger.info("Deleted pump event", sync_identifier=record.sync_identifier)
        await self.sync_normalized_doses(
            since=record.dose_start_date or record.start_date,
            removed_identifier=record.sync_identifier,
        )
        return deleted

    async def delete_all_pump_events(self) -> int:
        """Tombstone every pump event.

        Doses already derived from them are synchronized one last time
        and then kept as history.
        """
        await self.sync_normalized_doses()
        async with self.pump_event_ledger.transaction() as txn:
            records = await self.pump_event_ledger.fetch()
            for record in records:
                await txn.tombstone(record)
        self.last_pump_events_reconciliation = None
        logger.info("Deleted all pump events", count=len(records))
        return len(records)

    async def reset_pump_data(self) -> None:
        """Drop all cached pump events and reservoir readings."""
        logger.info("Resetting all cached pump data")
        await self.delete_all_pump_events()
        await self.delete_all_reservoir_values()

    # ── Normalization ──

    def normalize(
        self, doses: Sequence[DoseEntry], end: datetime | None = None
    ) -> list[DoseEntry]:
        """Run the reconcile, overlay and annotate stages over ``doses``."""
        result = reconciled(doses, delivery_increment=self.delivery_increment)
        if not result:
            return result

        last_reconciliation = self.last_pump_events_reconciliation or self.clock()
        result = extended_open_suspend(result, last_reconciliation)
        if self.basal_schedule is None:
            return result

        end = end or last_reconciliation
        start = min(dose.start_date for dose in result)
        timeline_end = max(end, max(dose.end_date for dose in result))
        timeline = self.basal_schedule.between(start, timeline_end)
        result = overlay_basal(
            result,
            timeline,
            end_date=end,
            last_pump_events_reconciliation=last_reconciliation,
            freshness_window=self.reconciliation_freshness,
        )
        return annotated(result, timeline)

    async def _normalized_window(self) -> list[DoseEntry]:
        reference = self.last_pump_events_reconciliation or self.clock()
        raw = await self.get_pump_event_doses(reference - self.reconciliation_window)
        return self.normalize(raw)

    async def sync_normalized_doses(
        self,
        since: datetime | None = None,
        removed_identifier: str | None = None,
    ) -> None:
        """Bring stored pump-derived doses in line with the pump history.

        Args:
            since: Also reconcile stored doses from this date on, even
                where no pump event remains. Clamped to the
                reconciliation window.
            removed_identifier: Sync identifier of a deleted pump event;
                doses derived from it are tombstoned wherever they start.
        """
        normalized = await self._normalized_window()
        window_starts = [dose.start_date for dose in normalized]
        if since is not None:
            reference = self.last_pump_events_reconciliation or self.clock()
            window_starts.append(max(since, reference - self.reconciliation_window))
        if not window_starts and removed_identifier is None:
            return

        finalized = {
            dose.sync_identifier: dose
            for dose in normalized
            if not dose.is_mutable and dose.sync_identifier is not None
        }

        inserted = superseded = tombstoned = 0
        async with self.dose_ledger.transaction() as txn:
            stored: list[InsulinDeliveryRecord] = []
            if window_starts:
                stored = await self.dose_ledger.fetch(
                    InsulinDeliveryRecord.from_pump_events.is_(True),
                    InsulinDeliveryRecord.start_date >= min(window_starts),
                )
            if removed_identifier is not None:
                known = {record.uuid for record in stored}
                derived = await self.dose_ledger.fetch(
                    InsulinDeliveryRecord.from_pump_events.is_(True),
                    or_(
                        InsulinDeliveryRecord.sync_identifier == removed_identifier,
                        InsulinDeliveryRecord.sync_identifier.startswith(
                            f"{removed_identifier} ", autoescape=True
                        ),
                    ),
                )
                stored.extend(record for record in derived if record.uuid not in known)
            stored_by_id = {record.sync_identifier: record for record in stored}

            for record in stored:
                if record.sync_identifier not in finalized:
                    await txn.tombstone(record)
                    tombstoned += 1

            for sync_identifier, dose in finalized.items():
                record = stored_by_id.get(sync_identifier)
                if record is None:
                    txn.insert(InsulinDeliveryRecord.from_dose(dose))
                    inserted += 1
                elif not record.matches(dose):
                    await txn.supersede(record, **InsulinDeliveryRecord.fields_from_dose(dose))
                    superseded += 1

        logger.info(
            "Synchronized normalized doses",
            inserted=inserted,
            superseded=superseded,
            tombstoned=tombstoned,
        )

    # ── Doses ──

    async def add_doses(self, doses: Sequence[DoseEntry]) -> list[InsulinDeliveryRecord]:
        """Store manually entered doses; identical sync identifiers are skipped."""
        identifiers = [dose.sync_identifier for dose in doses if dose.sync_identifier]
        async with self.dose_ledger.transaction() as txn:
            known: set[str | None] = set()
            if identifiers:
                stored = await self.dose_ledger.fetch(
                    InsulinDeliveryRecord.sync_identifier.in_(identifiers)
                )
                known = {record.sync_identifier for record in stored}
            records = []
            for dose in doses:
                if dose.sync_identifier is not None and dose.sync_identifier in known:
                    continue
                known.add(dose.sync_identifier)
                records.append(
                    txn.insert(
                        InsulinDeliveryRecord.from_dose(
                            dose.with_resolved_delivery(self.delivery_increment),
                            from_pump_events=False,
                        )
                    )
                )
        logger.info("Stored manual doses", received=len(doses), inserted=len(records))
        return records

    async def delete_dose(self, record: InsulinDeliveryRecord) -> InsulinDeliveryRecord:
        """Tombstone a stored dose."""
        deleted = await self.dose_ledger.tombstone(record)
        logger.info("Deleted dose", sync_identifier=record.sync_identifier)
        return deleted

    async def get_manually_entered_doses(self, since: datetime) -> list[DoseEntry]:
        """Manually entered doses starting at or after ``since``, newest first."""
        records = await self.dose_ledger.fetch(
            InsulinDeliveryRecord.from_pump_events.is_(False),
            InsulinDeliveryRecord.start_date >= since,
            descending=True,
        )
        return [record.to_dose_entry() for record in records]

    async def delete_all_manually_entered_doses(self) -> int:
        """Tombstone every manually entered dose; pump-derived doses are kept."""
        async with self.dose_ledger.transaction() as txn:
            records = await self.dose_ledger.fetch(
                InsulinDeliveryRecord.from_pump_events.is_(False)
            )
            for record in records:
                await txn.tombstone(record)
        logger.info("Deleted all manually entered doses", count=len(records))
        return len(records)

    # ── Reservoir ──

    async def add_reservoir_value(self, value: NewReservoirValue) -> ReservoirAddResult:
        """Store a reservoir reading.

        A reading identical to the latest one is ignored. A reading dated
        before the latest one, or at the same date with another volume,
        invalidates the stored history: every stored reading is
        tombstoned before the new one is inserted.
        """
        previous = await self.reservoir_ledger.latest()
        if (
            previous is not None
            and previous.start_date == value.date
            and previous.unit_volume == value.unit_volume
        ):
            logger.warning("Ignored duplicate reservoir value", date=value.date.isoformat())
            return ReservoirAddResult(
                value=None,
                previous_value=previous,
                are_values_continuous=await self.are_reservoir_values_continuous(),
            )
        reset = previous is not None and previous.start_date >= value.date

        async with self.reservoir_ledger.transaction() as txn:
            if reset:
                logger.error(
                    "Inconsistent reservoir value, resetting",
                    volume=value.unit_volume,
                    date=value.date.isoformat(),
                    previous_volume=previous.unit_volume,
                    previous_date=previous.start_date.isoformat(),
                )
                for record in await self.reservoir_ledger.fetch():
                    await txn.tombstone(record)
                previous = None
            record = txn.insert(
                ReservoirValueRecord(start_date=value.date, unit_volume=value.unit_volume)
            )

        await self.reservoir_ledger.purge(self.clock() - self.cache_length)
        return ReservoirAddResult(
            value=record,
            previous_value=previous,
            are_values_continuous=await self.are_reservoir_values_continuous(),
        )

    async def get_reservoir_values(
        self, since: datetime, limit: int | None = None
    ) -> list[ReservoirValueRecord]:
        """Readings at or after ``since``, newest first."""
        return await self.reservoir_ledger.fetch(
            ReservoirValueRecord.start_date >= since, limit=limit, descending=True
        )

    async def delete_reservoir_value(
        self, record: ReservoirValueRecord
    ) -> ReservoirValueRecord:
        deleted = await self.reservoir_ledger.tombstone(record)
        logger.info("Deleted reservoir value", date=record.start_date.isoformat())
        return deleted

    async def delete_all_reservoir_values(self) -> int:
        async with self.reservoir_ledger.transaction() as txn:
            records = await self.reservoir_ledger.fetch()
            for record in records:
                await txn.tombstone(record)
        logger.info("Deleted all reservoir values", count=len(records))
        return len(records)

    async def are_reservoir_values_continuous(self, at: datetime | None = None) -> bool:
        """Whether recent readings are reliable enough to derive doses from.

        Readings must be continuous over the longest insulin effect
        duration before ``at``, and no prime may fall inside that span.
        """
        at = at or self.clock()
        start = at - self._longest_effect_duration()
        values = await self.reservoir_ledger.fetch(
            ReservoirValueRecord.start_date >= start - RESERVOIR_CONTINUITY_INTERVAL
        )
        if not is_continuous(values, start, at):
            return False
        prime = await self.pump_event_ledger.latest(
            PumpEventRecord.event_type == PumpEventType.prime,
            PumpEventRecord.start_date >= values[0].start_date,
        )
        return prime is None

    async def get_normalized_reservoir_dose_entries(
        self, start: datetime, end: datetime | None = None
    ) -> list[DoseEntry]:
        """Doses derived from reservoir readings, annotated with scheduled rates."""
        values = await self.reservoir_ledger.fetch(ReservoirValueRecord.start_date >= start)
        doses = reservoir_dose_entries(values)
        if self.basal_schedule is not None and doses:
            timeline = self.basal_schedule.between(doses[0].start_date, doses[-1].end_date)
            doses = annotated(doses, timeline)
        return filter_date_range(doses, start, end)

    async def get_normalized_dose_entries(
        self, start: datetime, end: datetime | None = None
    ) -> list[DoseEntry]:
        """Stored doses plus the live, not yet finalized edge of the timeline."""
        criteria = [InsulinDeliveryRecord.end_date >= start]
        if end is not None:
            criteria.append(InsulinDeliveryRecord.start_date <= end)
        stored = [record.to_dose_entry() for record in await self.dose_ledger.fetch(*criteria)]

        live = [dose for dose in await self._normalized_window() if dose.is_mutable]
        doses = appended_union(stored, live)
        doses.sort(key=lambda dose: dose.start_date)
        return filter_date_range(doses, start, end)

    # ── Insulin on board ──

    def _longest_effect_duration(self) -> timedelta:
        return self.insulin_model_provider.longest_effect_duration

    async def get_insulin_on_board_values(
        self, start: datetime, end: datetime | None = None
    ) -> list[InsulinValue]:
        """IOB samples from ``start`` to ``end`` (or the last dose's effect end)."""
        doses = await self.get_normalized_dose_entries(
            start - self._longest_effect_duration(), end
        )
        relative = to_basal_relative_doses(doses, self.insulin_model_provider)
        timeline = insulin_on_board(relative, start=start, end=end)
        return list(timeline)

    async def insulin_on_board(self, at: datetime | None = None) -> float:
        """Total IOB at ``at`` (default now)."""
        at = at or self.clock()
        doses = await self.get_normalized_dose_entries(
            at - self._longest_effect_duration(), at
        )
        relative = to_basal_relative_doses(doses, self.insulin_model_provider)
        return insulin_on_board_at(relative, at)

    async def get_total_units_delivered(self, since: datetime) -> float:
        """Units delivered from ``since`` until now."""
        doses = await self.get_normalized_dose_entries(since, self.clock())
        return total_delivery(dose.trimmed(start=since) for dose in doses)

    # ── Sync ──

    async def execute_pump_query(
        self, anchor: QueryAnchor | None, limit: int
    ) -> QueryResult[PumpEventRecord]:
        return await self.pump_event_ledger.execute_query(anchor, limit)

    async def execute_dose_query(
        self, anchor: QueryAnchor | None, limit: int
    ) -> QueryResult[InsulinDeliveryRecord]:
        return await self.dose_ledger.execute_query(anchor, limit)
