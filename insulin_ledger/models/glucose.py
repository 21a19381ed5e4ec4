"""Glucose sample model."""

from sqlalchemy import Boolean, Float, String
from sqlalchemy.orm import Mapped, mapped_column

from insulin_ledger.core.quantity import Quantity, QuantityUnit
from insulin_ledger.models.base import Base, CachedRecordMixin


class GlucoseSampleRecord(Base, CachedRecordMixin):
    """A CGM reading or fingerstick, stored in mg/dL."""

    __tablename__ = "glucose_samples"

    value_mgdl: Mapped[float] = mapped_column(
        Float,
        nullable=False,
    )

    # Shown to the user but excluded from dosing (e.g. sensor warmup)
    is_display_only: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )

    was_user_entered: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )

    device: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )

    @property
    def quantity(self) -> Quantity:
        return Quantity(value=self.value_mgdl, unit=QuantityUnit.milligrams_per_deciliter)

    def __repr__(self) -> str:
        return f"<GlucoseSampleRecord(date={self.start_date}, mgdl={self.value_mgdl})>"
