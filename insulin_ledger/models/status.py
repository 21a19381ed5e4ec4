"""Status snapshot model."""

from typing import Any

from sqlalchemy import JSON, String
from sqlalchemy.orm import Mapped, mapped_column

from insulin_ledger.models.base import Base, CachedRecordMixin


class StatusRecord(Base, CachedRecordMixin):
    """A point-in-time snapshot of device or loop status."""

    __tablename__ = "status_records"

    status_type: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )

    payload: Mapped[dict[str, Any]] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
    )

    def __repr__(self) -> str:
        return f"<StatusRecord(date={self.start_date}, type={self.status_type!r})>"
