"""Reservoir reading model."""

from sqlalchemy import Float
from sqlalchemy.orm import Mapped, mapped_column

from insulin_ledger.models.base import Base, CachedRecordMixin


class ReservoirValueRecord(Base, CachedRecordMixin):
    """A reservoir level at ``start_date``.

    Consecutive readings are differenced into doses for pumps that do not
    report a full delivery history.
    """

    __tablename__ = "reservoir_values"

    unit_volume: Mapped[float] = mapped_column(
        Float,
        nullable=False,
    )

    def __repr__(self) -> str:
        return (
            f"<ReservoirValueRecord(date={self.start_date}, volume={self.unit_volume}, "
            f"counter={self.modification_counter}, active={self.is_active})>"
        )
