"""Insulin activity (IOB) integration.

Convolves a normalized dose timeline with per-dose activity models to
produce insulin-on-board samples on a fixed time grid.
"""

import math
from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from insulin_ledger.core.dosing.constants import (
    BOLUS_DURATION_TOLERANCE,
    DEFAULT_IOB_DELTA,
)
from insulin_ledger.core.dosing.enums import BasalRelativeDoseKind, DoseType
from insulin_ledger.core.dosing.insulin_models import InsulinModel, InsulinModelProvider
from insulin_ledger.core.dosing.models import BasalRelativeDose, DoseEntry

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


@dataclass(frozen=True)
class InsulinValue:
    """Insulin on board at an instant, in units."""

    start_date: datetime
    value: float


def to_basal_relative_doses(
    doses: Iterable[DoseEntry], provider: InsulinModelProvider | None = None
) -> list[BasalRelativeDose]:
    """Convert annotated entries into the integrator's view.

    An unannotated scheduled basal is assumed to match its schedule; an
    unannotated temp basal or suspend is measured against zero. Resumes
    carry no insulin and are skipped.
    """
    provider = provider or InsulinModelProvider()
    relative: list[BasalRelativeDose] = []
    for dose in doses:
        model = provider.model(dose.insulin_type)
        match dose.type:
            case DoseType.bolus:
                relative.append(
                    BasalRelativeDose(
                        kind=BasalRelativeDoseKind.bolus,
                        start_date=dose.start_date,
                        end_date=dose.end_date,
                        volume=dose.volume,
                        insulin_model=model,
                    )
                )
            case DoseType.basal | DoseType.temp_basal | DoseType.suspend:
                scheduled = dose.scheduled_basal_rate
                if scheduled is None:
                    scheduled = dose.units_per_hour if dose.type == DoseType.basal else 0.0
                relative.append(
                    BasalRelativeDose(
                        kind=BasalRelativeDoseKind.basal,
                        start_date=dose.start_date,
                        end_date=dose.end_date,
                        volume=dose.volume,
                        insulin_model=model,
                        scheduled_rate=scheduled,
                    )
                )
            case DoseType.resume:
                continue
    return relative


def _continuous_delivery_fraction(
    model: InsulinModel, time: float, duration: float, delta: float
) -> float:
    """Remaining fraction of a dose spread evenly over ``duration`` seconds."""
    fraction = 0.0
    dose_offset = 0.0
    limit = min(math.floor((time + model.delay.total_seconds()) / delta) * delta, duration)
    while True:
        if duration > 0:
            segment = max(0.0, min(dose_offset + delta, duration) - dose_offset) / duration
        else:
            segment = 1.0
        fraction += segment * model.percent_effect_remaining(
            timedelta(seconds=time - dose_offset)
        )
        dose_offset += delta
        if dose_offset > limit:
            return fraction


def dose_insulin_on_board(
    dose: BasalRelativeDose, at: datetime, delta: timedelta = DEFAULT_IOB_DELTA
) -> float:
    """Units of ``dose`` still active at ``at``."""
    elapsed = at - dose.start_date
    if elapsed < timedelta(0):
        return 0.0
    if dose.duration <= delta * BOLUS_DURATION_TOLERANCE:
        return dose.net_volume * dose.insulin_model.percent_effect_remaining(elapsed)
    return dose.net_volume * _continuous_delivery_fraction(
        dose.insulin_model,
        elapsed.total_seconds(),
        dose.duration.total_seconds(),
        delta.total_seconds(),
    )


def _floor_to_grid(date: datetime, delta: timedelta) -> datetime:
    step = delta.total_seconds()
    offset = (date - _EPOCH).total_seconds()
    return _EPOCH + timedelta(seconds=math.floor(offset / step) * step)


def _ceil_to_grid(date: datetime, delta: timedelta) -> datetime:
    step = delta.total_seconds()
    offset = (date - _EPOCH).total_seconds()
    return _EPOCH + timedelta(seconds=math.ceil(offset / step) * step)


class InsulinOnBoardTimeline:
    """Lazily computed IOB samples over a bounded window.

    Iterating computes samples on demand; every iteration starts over
    from the first sample, so the timeline can be consumed repeatedly.
    """

    def __init__(
        self,
        doses: Sequence[BasalRelativeDose],
        *,
        delta: timedelta = DEFAULT_IOB_DELTA,
        start: datetime | None = None,
        end: datetime | None = None,
    ):
        if delta <= timedelta(0):
            msg = "delta must be positive"
            raise ValueError(msg)
        self.doses = tuple(doses)
        self.delta = delta
        if self.doses:
            earliest = min(dose.start_date for dose in self.doses)
            latest = max(dose.effect_end_date for dose in self.doses)
            self.start_date: datetime | None = _floor_to_grid(start or earliest, delta)
            self.end_date: datetime | None = _ceil_to_grid(end or latest, delta)
        else:
            self.start_date = self.end_date = None

    def __iter__(self) -> Iterator[InsulinValue]:
        if self.start_date is None or self.end_date is None:
            return
        date = self.start_date
        while date <= self.end_date:
            value = sum(dose_insulin_on_board(dose, date, self.delta) for dose in self.doses)
            yield InsulinValue(start_date=date, value=value)
            date += self.delta

    def __len__(self) -> int:
        if self.start_date is None or self.end_date is None:
            return 0
        return int((self.end_date - self.start_date) / self.delta) + 1


def insulin_on_board(
    doses: Sequence[BasalRelativeDose],
    *,
    delta: timedelta = DEFAULT_IOB_DELTA,
    start: datetime | None = None,
    end: datetime | None = None,
) -> InsulinOnBoardTimeline:
    """IOB timeline from the earliest dose start to the last dose's effect end.

    Args:
        doses: Basal-relative doses, in any order.
        delta: Sample spacing; samples fall on whole multiples of it.
        start: Override the first sample (rounded down to the grid).
        end: Override the last sample (rounded up to the grid).
    """
    return InsulinOnBoardTimeline(doses, delta=delta, start=start, end=end)


def insulin_on_board_at(
    doses: Iterable[BasalRelativeDose],
    at: datetime,
    delta: timedelta = DEFAULT_IOB_DELTA,
) -> float:
    """Total IOB at a single instant."""
    return sum(dose_insulin_on_board(dose, at, delta) for dose in doses)


def total_delivery(doses: Iterable[DoseEntry]) -> float:
    """Units delivered, using programmed units where delivery is unknown."""
    return sum(dose.volume for dose in doses if dose.type != DoseType.resume)
