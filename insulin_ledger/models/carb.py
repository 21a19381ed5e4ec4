"""Carbohydrate entry model."""

from sqlalchemy import Float, String
from sqlalchemy.orm import Mapped, mapped_column

from insulin_ledger.models.base import Base, CachedRecordMixin


class CarbEntryRecord(Base, CachedRecordMixin):
    """A carbohydrate entry.

    Edits supersede the row with a new version; deletions tombstone it.
    """

    __tablename__ = "carb_entries"

    grams: Mapped[float] = mapped_column(
        Float,
        nullable=False,
    )

    food_type: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )

    # Expected absorption time in seconds; None uses the algorithm default
    absorption_time_seconds: Mapped[float | None] = mapped_column(
        Float,
        nullable=True,
    )

    def __repr__(self) -> str:
        return (
            f"<CarbEntryRecord(date={self.start_date}, grams={self.grams}, "
            f"version={self.sync_version}, active={self.is_active})>"
        )
