"""Device communication log model."""

import enum

from sqlalchemy import Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from insulin_ledger.models.base import Base, CachedRecordMixin, str_enum


class DeviceLogEntryType(str, enum.Enum):
    """Direction or nature of a device log entry."""

    SEND = "send"
    RECEIVE = "receive"
    ERROR = "error"
    DELEGATE = "delegate"
    DELEGATE_RESPONSE = "delegate_response"
    CONNECTION = "connection"


class DeviceLogEntryRecord(Base, CachedRecordMixin):
    """One line of device communication history."""

    __tablename__ = "device_log_entries"

    __table_args__ = (
        Index("ix_device_log_entries_device_start", "device_identifier", "start_date"),
    )

    entry_type: Mapped[DeviceLogEntryType] = mapped_column(
        str_enum(DeviceLogEntryType, "devicelogentrytype"),
        nullable=False,
    )

    manager_identifier: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )

    device_identifier: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )

    message: Mapped[str] = mapped_column(
        Text,
        nullable=False,
    )

    def __repr__(self) -> str:
        return (
            f"<DeviceLogEntryRecord(date={self.start_date}, type={self.entry_type}, "
            f"device={self.device_identifier!r})>"
        )
