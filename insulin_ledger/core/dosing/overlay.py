"""Basal overlay.

Fills the parts of a reconciled timeline that no pump report covers with
entries synthesized from the basal-rate schedule.
"""

from collections.abc import Iterable, Sequence
from datetime import UTC, datetime, timedelta

from insulin_ledger.core.dosing.constants import (
    BASAL_SCHEDULE_SYNC_PREFIX,
    DEFAULT_RECONCILIATION_FRESHNESS,
)
from insulin_ledger.core.dosing.enums import DoseType, DoseUnit
from insulin_ledger.core.dosing.models import DoseEntry
from insulin_ledger.core.schedule import AbsoluteScheduleValue


def _iso(date: datetime) -> str:
    return date.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def scheduled_basal_sync_identifier(start: datetime, end: datetime) -> str:
    """Stable identifier of a synthesized entry, derived from its interval."""
    return f"{BASAL_SCHEDULE_SYNC_PREFIX} {_iso(start)} {_iso(end)}"


def _scheduled_entries(
    basal_timeline: Sequence[AbsoluteScheduleValue],
    start: datetime,
    end: datetime,
    last_pump_events_reconciliation: datetime,
) -> Iterable[DoseEntry]:
    for segment in basal_timeline:
        entry_start = max(start, segment.start_date)
        entry_end = min(end, segment.end_date)
        if entry_end <= entry_start:
            continue
        entry = DoseEntry(
            type=DoseType.basal,
            start_date=entry_start,
            end_date=entry_end,
            value=segment.value,
            unit=DoseUnit.units_per_hour,
            scheduled_basal_rate=segment.value,
            sync_identifier=scheduled_basal_sync_identifier(entry_start, entry_end),
            automatic=True,
            is_mutable=True,
        )
        # Fills behind the last full history read are final
        if entry_end < last_pump_events_reconciliation:
            entry = entry.with_resolved_delivery()
        yield entry


def overlay_basal(
    doses: Iterable[DoseEntry],
    basal_timeline: Sequence[AbsoluteScheduleValue],
    end_date: datetime | None,
    last_pump_events_reconciliation: datetime,
    gap_patch_interval: timedelta = timedelta(0),
    freshness_window: timedelta | None = DEFAULT_RECONCILIATION_FRESHNESS,
) -> list[DoseEntry]:
    """Fill unreported basal intervals with the scheduled rate.

    Args:
        doses: Reconciled entries in ascending start order.
        basal_timeline: Scheduled rates over the window of interest.
            Filling starts at the first segment's start.
        end_date: Fill the trailing interval up to this date.
        last_pump_events_reconciliation: When the pump history was last
            read in full. Synthesized entries ending at or after it stay
            mutable.
        gap_patch_interval: Gaps no longer than this are closed by moving
            the next entry's start back instead of synthesizing a basal.
        freshness_window: The trailing fill stops this long after
            ``last_pump_events_reconciliation``. ``None`` fills to
            ``end_date`` unconditionally.

    Returns:
        The input entries plus synthesized scheduled-basal entries.

    Raises:
        ValueError: If a resume is present; reconciliation absorbs them.
    """
    if not basal_timeline:
        return list(doses)

    entries: list[DoseEntry] = []
    last_date = basal_timeline[0].start_date
    suspended = False

    for dose in doses:
        match dose.type:
            case DoseType.bolus:
                entries.append(dose)
            case DoseType.resume:
                msg = "resume entries must be reconciled before overlaying basal"
                raise ValueError(msg)
            case DoseType.basal | DoseType.temp_basal | DoseType.suspend:
                if dose.start_date - last_date > gap_patch_interval:
                    entries.extend(
                        _scheduled_entries(
                            basal_timeline,
                            last_date,
                            dose.start_date,
                            last_pump_events_reconciliation,
                        )
                    )
                elif last_date < dose.start_date:
                    dose = dose.model_copy(update={"start_date": last_date})
                entries.append(dose)
                last_date = max(last_date, dose.end_date)
                # A suspend still in progress covers everything after it
                suspended = dose.type == DoseType.suspend and dose.is_mutable

    if end_date is not None and end_date > last_date and not suspended:
        fill_end = end_date
        if freshness_window is not None:
            fill_end = min(fill_end, last_pump_events_reconciliation + freshness_window)
        entries.extend(
            _scheduled_entries(
                basal_timeline, last_date, fill_end, last_pump_events_reconciliation
            )
        )

    return entries
