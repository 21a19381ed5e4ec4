"""Raw pump event model.

One row per event reported by a pump integration, with the event's
dose (if it carries one) flattened into nullable columns. The raw
payload plus the event date identify an event for de-duplication.
"""

from datetime import datetime

from sqlalchemy import Boolean, Float, Index, LargeBinary, String
from sqlalchemy.orm import Mapped, mapped_column

from insulin_ledger.core.dosing.enums import DoseType, DoseUnit, InsulinType, PumpEventType
from insulin_ledger.core.dosing.models import DoseEntry
from insulin_ledger.models.base import Base, CachedRecordMixin, UTCDateTime, str_enum


class PumpEventRecord(Base, CachedRecordMixin):
    """A pump history event as reported, before reconciliation."""

    __tablename__ = "pump_events"

    __table_args__ = (
        # De-duplication lookups by (date, raw payload)
        Index("ix_pump_events_start_date_active", "start_date", "is_active"),
    )

    raw: Mapped[bytes] = mapped_column(
        LargeBinary,
        nullable=False,
    )

    title: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )

    event_type: Mapped[PumpEventType | None] = mapped_column(
        str_enum(PumpEventType, "pumpeventtype"),
        nullable=True,
    )

    # Still in progress on the pump; replaced on the next history read
    is_mutable: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )

    # Dose carried by the event
    dose_type: Mapped[DoseType | None] = mapped_column(
        str_enum(DoseType, "dosetype"),
        nullable=True,
    )

    dose_start_date: Mapped[datetime | None] = mapped_column(
        UTCDateTime,
        nullable=True,
    )

    dose_end_date: Mapped[datetime | None] = mapped_column(
        UTCDateTime,
        nullable=True,
    )

    dose_value: Mapped[float | None] = mapped_column(
        Float,
        nullable=True,
    )

    dose_unit: Mapped[DoseUnit | None] = mapped_column(
        str_enum(DoseUnit, "doseunit"),
        nullable=True,
    )

    dose_delivered_units: Mapped[float | None] = mapped_column(
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

    def to_dose_entry(self) -> DoseEntry | None:
        """The event's dose, or ``None`` for events without one."""
        if (
            self.dose_type is None
            or self.dose_start_date is None
            or self.dose_end_date is None
            or self.dose_value is None
            or self.dose_unit is None
        ):
            return None
        return DoseEntry(
            type=self.dose_type,
            start_date=self.dose_start_date,
            end_date=self.dose_end_date,
            value=self.dose_value,
            unit=self.dose_unit,
            delivered_units=self.dose_delivered_units,
            sync_identifier=self.sync_identifier,
            sync_version=self.sync_version,
            is_mutable=self.is_mutable,
            automatic=self.automatic,
            was_programmed_by_pump_ui=self.was_programmed_by_pump_ui,
            insulin_type=self.insulin_type,
            description=self.title,
        )

    def __repr__(self) -> str:
        return (
            f"<PumpEventRecord(date={self.start_date}, title={self.title!r}, "
            f"dose_type={self.dose_type}, counter={self.modification_counter}, "
            f"active={self.is_active})>"
        )
