"""Reservoir-derived doses.

Pumps that do not report a full delivery history can still be dosed by
differencing consecutive reservoir readings: every plausible drop in
volume becomes one temp basal entry spanning the two readings.
"""

from collections.abc import Iterable, Sequence
from datetime import datetime, timedelta
from typing import Protocol

from insulin_ledger.core.dosing.constants import (
    MAXIMUM_RESERVOIR_DROP_PER_MINUTE,
    RESERVOIR_CONTINUITY_INTERVAL,
    RESERVOIR_RISE_TOLERANCE,
)
from insulin_ledger.core.dosing.enums import DoseType, DoseUnit
from insulin_ledger.core.dosing.models import DoseEntry


class ReservoirReading(Protocol):
    start_date: datetime
    unit_volume: float


def reservoir_dose_entries(values: Iterable[ReservoirReading]) -> list[DoseEntry]:
    """Doses implied by chronologically ordered reservoir readings.

    Pairs whose drop is negative (a refill) or faster than
    ``MAXIMUM_RESERVOIR_DROP_PER_MINUTE`` produce no entry.
    """
    doses: list[DoseEntry] = []
    previous: ReservoirReading | None = None
    for value in values:
        if previous is not None:
            drop = previous.unit_volume - value.unit_volume
            minutes = (value.start_date - previous.start_date).total_seconds() / 60
            if minutes > 0 and 0 <= drop <= MAXIMUM_RESERVOIR_DROP_PER_MINUTE * minutes:
                doses.append(
                    DoseEntry(
                        type=DoseType.temp_basal,
                        start_date=previous.start_date,
                        end_date=value.start_date,
                        value=drop,
                        unit=DoseUnit.units,
                        delivered_units=drop,
                    )
                )
        previous = value
    return doses


def is_continuous(
    values: Sequence[ReservoirReading],
    start: datetime | None,
    end: datetime,
    maximum_interval: timedelta = RESERVOIR_CONTINUITY_INTERVAL,
) -> bool:
    """Whether chronological readings can be trusted over ``[start, end]``.

    The first reading must be at or before ``start``. Within the range no
    reading may be 0 U, rise by more than ``RESERVOIR_RISE_TOLERANCE``
    over its predecessor (a rewind and prime), or follow it by more than
    ``maximum_interval``.
    """
    if not values:
        return False

    first = values[0]
    start = start or first.start_date
    if first.start_date > start:
        return False

    last = first
    for value in values:
        if start <= value.start_date <= end:
            if value.unit_volume <= 0:
                return False
            if value.unit_volume > last.unit_volume + RESERVOIR_RISE_TOLERANCE:
                return False
            if value.start_date - last.start_date > maximum_interval:
                return False
        last = value
    return True
