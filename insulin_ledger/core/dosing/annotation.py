"""Schedule-boundary annotation.

Splits basal-like entries at every basal-schedule change they straddle
and tags each piece with the scheduled rate in effect over it, so net
basal (actual minus scheduled) can be computed per piece.
"""

from collections.abc import Iterable, Sequence
from datetime import datetime

from insulin_ledger.core.dosing.enums import DoseUnit
from insulin_ledger.core.dosing.models import DoseEntry
from insulin_ledger.core.schedule import AbsoluteScheduleValue, filter_date_range


def _rate_at(
    segments: Sequence[AbsoluteScheduleValue], date: datetime
) -> float | None:
    for segment in segments:
        if segment.start_date <= date < segment.end_date:
            return segment.value
    return None


def _apportioned(total: float, fractions: Sequence[float]) -> list[float]:
    """Split ``total`` by ``fractions``; the last share absorbs rounding."""
    shares = [total * fraction for fraction in fractions[:-1]]
    shares.append(total - sum(shares))
    return shares


def annotate_dose(
    dose: DoseEntry, basal_timeline: Sequence[AbsoluteScheduleValue]
) -> list[DoseEntry]:
    """Split one entry at the schedule boundaries inside it."""
    if not dose.type.is_basal_like or dose.duration.total_seconds() <= 0:
        return [dose]

    segments = filter_date_range(basal_timeline, dose.start_date, dose.end_date)
    if not segments:
        return [dose]

    boundaries = sorted(
        {
            boundary
            for segment in segments
            for boundary in (segment.start_date, segment.end_date)
            if dose.start_date < boundary < dose.end_date
        }
    )
    edges = [dose.start_date, *boundaries, dose.end_date]
    total_seconds = dose.duration.total_seconds()
    fractions = [
        (end - start).total_seconds() / total_seconds
        for start, end in zip(edges, edges[1:])
    ]

    values = (
        _apportioned(dose.value, fractions)
        if dose.unit == DoseUnit.units
        else [dose.value] * len(fractions)
    )
    delivered = (
        _apportioned(dose.delivered_units, fractions)
        if dose.delivered_units is not None
        else [None] * len(fractions)
    )

    count = len(fractions)
    pieces: list[DoseEntry] = []
    for index, (start, end) in enumerate(zip(edges, edges[1:])):
        rate = _rate_at(segments, start)
        sync_identifier = dose.sync_identifier
        if sync_identifier is not None and count > 1:
            sync_identifier = f"{sync_identifier} {index + 1}/{count}"
        pieces.append(
            dose.model_copy(
                update={
                    "start_date": start,
                    "end_date": end,
                    "value": values[index],
                    "delivered_units": delivered[index],
                    "scheduled_basal_rate": (
                        rate if rate is not None else dose.scheduled_basal_rate
                    ),
                    "sync_identifier": sync_identifier,
                }
            )
        )
    return pieces


def annotated(
    doses: Iterable[DoseEntry], basal_timeline: Sequence[AbsoluteScheduleValue]
) -> list[DoseEntry]:
    """Annotate every entry; boluses pass through unchanged."""
    result: list[DoseEntry] = []
    for dose in doses:
        result.extend(annotate_dose(dose, basal_timeline))
    return result
