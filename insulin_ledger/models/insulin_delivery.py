"""Normalized insulin delivery model.

Rows hold finalized, reconciled, schedule-annotated doses. Pump-derived
rows are rewritten (superseded or tombstoned) as newer pump history
arrives; manually entered rows are only changed explicitly.
"""

from datetime import datetime

from sqlalchemy import Boolean, Float, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from insulin_ledger.core.dosing.enums import DoseType, DoseUnit, InsulinType
from insulin_ledger.core.dosing.models import DoseEntry
from insulin_ledger.models.base import Base, CachedRecordMixin, UTCDateTime, str_enum


# Columns compared when deciding whether a stored dose needs superseding
DOSE_FIELDS = (
    "dose_type",
    "start_date",
    "end_date",
    "value",
    "unit",
    "delivered_units",
    "scheduled_basal_rate",
    "automatic",
    "was_programmed_by_pump_ui",
    "insulin_type",
    "description",
)


class InsulinDeliveryRecord(Base, CachedRecordMixin):
    """A normalized dose."""

    __tablename__ = "insulin_deliveries"

    __table_args__ = (
        Index("ix_insulin_deliveries_active_start", "is_active", "start_date"),
    )

    dose_type: Mapped[DoseType] = mapped_column(
        str_enum(DoseType, "dosetype"),
        nullable=False,
    )

    end_date: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
    )

    value: Mapped[float] = mapped_column(
        Float,
        nullable=False,
    )

    unit: Mapped[DoseUnit] = mapped_column(
        str_enum(DoseUnit, "doseunit"),
        nullable=False,
    )

    delivered_units: Mapped[float | None] = mapped_column(
        Float,
        nullable=True,
    )

    scheduled_basal_rate: Mapped[float | None] = mapped_column(
        Float,
        nullable=True,
    )

    automatic: Mapped[bool | None] = mapped_column(
        Boolean,
        nullable=True,
    )

    was_programmed_by_pump_ui: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )

    insulin_type: Mapped[InsulinType | None] = mapped_column(
        str_enum(InsulinType, "insulintype"),
        nullable=True,
    )

    description: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )

    # Rewritten from pump history on every normalization pass
    from_pump_events: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
    )

    @staticmethod
    def fields_from_dose(dose: DoseEntry) -> dict[str, object]:
        """Column values describing ``dose``."""
        return {
            "dose_type": dose.type,
            "start_date": dose.start_date,
            "end_date": dose.end_date,
            "value": dose.value,
            "unit": dose.unit,
            "delivered_units": dose.delivered_units,
            "scheduled_basal_rate": dose.scheduled_basal_rate,
            "automatic": dose.automatic,
            "was_programmed_by_pump_ui": dose.was_programmed_by_pump_ui,
            "insulin_type": dose.insulin_type,
            "description": dose.description,
        }

    @classmethod
    def from_dose(
        cls, dose: DoseEntry, *, from_pump_events: bool = True
    ) -> "InsulinDeliveryRecord":
        return cls(
            sync_identifier=dose.sync_identifier,
            sync_version=dose.sync_version,
            from_pump_events=from_pump_events,
            **cls.fields_from_dose(dose),
        )

    def matches(self, dose: DoseEntry) -> bool:
        """Whether this row already stores exactly ``dose``."""
        fields = self.fields_from_dose(dose)
        return all(getattr(self, name) == fields[name] for name in DOSE_FIELDS)

    def to_dose_entry(self) -> DoseEntry:
        return DoseEntry(
            type=self.dose_type,
            start_date=self.start_date,
            end_date=self.end_date,
            value=self.value,
            unit=self.unit,
            delivered_units=self.delivered_units,
            scheduled_basal_rate=self.scheduled_basal_rate,
            sync_identifier=self.sync_identifier,
            sync_version=self.sync_version,
            is_mutable=False,
            automatic=self.automatic,
            was_programmed_by_pump_ui=self.was_programmed_by_pump_ui,
            insulin_type=self.insulin_type,
            description=self.description,
        )

    def __repr__(self) -> str:
        return (
            f"<InsulinDeliveryRecord(type={self.dose_type}, start={self.start_date}, "
            f"end={self.end_date}, value={self.value}, counter={self.modification_counter}, "
            f"active={self.is_active})>"
        )
