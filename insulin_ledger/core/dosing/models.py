"""Dose data model.

``DoseEntry`` is immutable: every pipeline stage returns new entries
instead of editing the ones it was given.
"""

import math
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Self

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field, model_validator

from insulin_ledger.core.dosing.constants import (
    DELIVERY_INCREMENT_EPSILON,
    SECONDS_PER_HOUR,
)
from insulin_ledger.core.dosing.enums import (
    BasalRelativeDoseKind,
    DoseType,
    DoseUnit,
    InsulinType,
)

if TYPE_CHECKING:
    from insulin_ledger.core.dosing.insulin_models import InsulinModel


class DoseEntry(BaseModel):
    """One interval of insulin delivery, actual or scheduled."""

    model_config = ConfigDict(frozen=True)

    type: DoseType
    start_date: AwareDatetime
    end_date: AwareDatetime
    value: float = Field(ge=0)
    unit: DoseUnit
    delivered_units: float | None = None
    scheduled_basal_rate: float | None = Field(default=None, ge=0)
    sync_identifier: str | None = None
    sync_version: int = Field(default=1, ge=1)
    is_mutable: bool = False
    automatic: bool | None = None
    was_programmed_by_pump_ui: bool = False
    insulin_type: InsulinType | None = None
    description: str | None = None

    @model_validator(mode="after")
    def check_interval(self) -> Self:
        """A dose can never end before it starts."""
        if self.end_date < self.start_date:
            msg = (
                f"end_date {self.end_date.isoformat()} precedes "
                f"start_date {self.start_date.isoformat()}"
            )
            raise ValueError(msg)
        return self

    @property
    def duration(self) -> timedelta:
        return self.end_date - self.start_date

    @property
    def hours(self) -> float:
        return self.duration.total_seconds() / SECONDS_PER_HOUR

    @property
    def programmed_units(self) -> float:
        """Units the pump was asked to deliver over the whole interval."""
        match self.unit:
            case DoseUnit.units:
                return self.value
            case DoseUnit.units_per_hour:
                return self.value * self.hours

    @property
    def units_per_hour(self) -> float:
        match self.unit:
            case DoseUnit.units:
                hours = self.hours
                return self.value / hours if hours > 0 else 0.0
            case DoseUnit.units_per_hour:
                return self.value

    @property
    def volume(self) -> float:
        """Delivered units when known, otherwise programmed units."""
        if self.delivered_units is not None:
            return self.delivered_units
        return self.programmed_units

    @property
    def net_basal_units(self) -> float:
        """Units delivered above (or below) the scheduled basal rate.

        Boluses and resumes are not basal delivery and report 0.
        """
        if not self.type.is_basal_like or self.hours <= 0:
            return 0.0
        scheduled = self.scheduled_basal_rate or 0.0
        return self.volume - scheduled * self.hours

    def trimmed(
        self, start: datetime | None = None, end: datetime | None = None
    ) -> Self:
        """This entry clipped to ``[start, end]``.

        Absolute quantities (``unit == units`` values and any reported
        ``delivered_units``) are scaled by the fraction of the original
        duration that remains.
        """
        new_start = max(self.start_date, start) if start is not None else self.start_date
        new_end = min(self.end_date, end) if end is not None else self.end_date
        new_end = max(new_end, new_start)

        total_seconds = self.duration.total_seconds()
        if total_seconds <= 0 or (
            new_start == self.start_date and new_end == self.end_date
        ):
            return self.model_copy(update={"start_date": new_start, "end_date": new_end})

        fraction = (new_end - new_start).total_seconds() / total_seconds
        update: dict[str, object] = {"start_date": new_start, "end_date": new_end}
        if self.unit == DoseUnit.units:
            update["value"] = self.value * fraction
        if self.delivered_units is not None:
            update["delivered_units"] = self.delivered_units * fraction
        return self.model_copy(update=update)

    def with_resolved_delivery(self, delivery_increment: float | None = None) -> Self:
        """A finalized copy with ``delivered_units`` computed when not reported.

        When ``delivery_increment`` is given, temp basal delivery is rounded
        down to whole pump increments.
        """
        delivered = self.delivered_units
        if delivered is None:
            match self.type:
                case DoseType.bolus:
                    delivered = self.programmed_units
                case DoseType.suspend | DoseType.resume:
                    delivered = 0.0
                case DoseType.temp_basal if delivery_increment:
                    increments = math.floor(
                        self.programmed_units / delivery_increment
                        + DELIVERY_INCREMENT_EPSILON
                    )
                    delivered = increments * delivery_increment
                case DoseType.basal | DoseType.temp_basal:
                    delivered = self.programmed_units
        return self.model_copy(update={"delivered_units": delivered, "is_mutable": False})

    def __str__(self) -> str:
        return (
            f"{self.type} {self.start_date.isoformat()}-{self.end_date.isoformat()} "
            f"{self.value:g} {self.unit}"
        )


def appended_union(existing: Sequence[DoseEntry], new: Iterable[DoseEntry]) -> list[DoseEntry]:
    """``existing`` followed by every entry of ``new`` with an unseen sync identifier.

    Entries without a sync identifier are always appended.
    """
    seen = {dose.sync_identifier for dose in existing if dose.sync_identifier}
    union = list(existing)
    for dose in new:
        if dose.sync_identifier is not None:
            if dose.sync_identifier in seen:
                continue
            seen.add(dose.sync_identifier)
        union.append(dose)
    return union


@dataclass(frozen=True)
class BasalRelativeDose:
    """Read-only view of a dose used for activity integration."""

    kind: BasalRelativeDoseKind
    start_date: datetime
    end_date: datetime
    volume: float
    insulin_model: "InsulinModel"
    scheduled_rate: float = 0.0

    @property
    def duration(self) -> timedelta:
        return self.end_date - self.start_date

    @property
    def hours(self) -> float:
        return self.duration.total_seconds() / SECONDS_PER_HOUR

    @property
    def net_volume(self) -> float:
        """Insulin above the scheduled rate; 0 for a dose matching schedule."""
        match self.kind:
            case BasalRelativeDoseKind.bolus:
                return self.volume
            case BasalRelativeDoseKind.basal:
                return self.volume - self.scheduled_rate * self.hours

    @property
    def effect_end_date(self) -> datetime:
        return self.end_date + self.insulin_model.effect_duration
