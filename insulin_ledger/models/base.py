"""Declarative base and the cached-record envelope shared by every ledger."""

import base64
import enum
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any, ClassVar
from uuid import UUID, uuid4

from sqlalchemy import BigInteger, Boolean, DateTime, Enum, Integer, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


class UTCDateTime(TypeDecorator[datetime]):
    """Timezone-aware datetime stored as UTC.

    SQLite drops tzinfo; values are normalized to UTC on the way in and
    re-tagged as UTC on the way out so comparisons stay aware.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            msg = "naive datetimes cannot be stored"
            raise ValueError(msg)
        return value.astimezone(UTC)

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


def utcnow() -> datetime:
    return datetime.now(UTC)


def format_export_date(value: datetime) -> str:
    """Fixed millisecond-precision UTC timestamp, e.g. 2024-01-02T03:04:05.678Z."""
    value = value.astimezone(UTC)
    return f"{value:%Y-%m-%dT%H:%M:%S}.{value.microsecond // 1000:03d}Z"


def _export_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return format_export_date(value)
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, bytes):
        return base64.b64encode(value).decode("ascii")
    if isinstance(value, Decimal):
        return float(value)
    return value


def str_enum(enum_class: type[enum.Enum], name: str) -> Enum:
    """String-backed enum column storing member values."""
    return Enum(
        enum_class,
        name=name,
        native_enum=False,
        values_callable=lambda e: [member.value for member in e],
    )


class Base(DeclarativeBase):
    pass


class UploadState(str, enum.Enum):
    """Remote upload progress of a cached record."""

    NOT_UPLOADED = "not_uploaded"
    UPLOADING = "uploading"
    UPLOADED = "uploaded"


class TimestampMixin:
    """Row bookkeeping timestamps."""

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=utcnow,
        nullable=False,
    )

    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )


class CachedRecordMixin(TimestampMixin):
    """Immutable envelope every ledger row carries.

    ``modification_counter`` is assigned by the owning ledger on insert
    and on every tombstone/supersede; it is unique and strictly
    increasing within one table.
    """

    uuid: Mapped[UUID] = mapped_column(
        primary_key=True,
        default=uuid4,
    )

    start_date: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        index=True,
    )

    created_by_current_app: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
    )

    provenance_identifier: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )

    sync_identifier: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        index=True,
    )

    sync_version: Mapped[int] = mapped_column(
        Integer,
        default=1,
        nullable=False,
    )

    is_active: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
    )

    upload_state: Mapped[UploadState] = mapped_column(
        str_enum(UploadState, "uploadstate"),
        default=UploadState.NOT_UPLOADED,
        nullable=False,
    )

    modification_counter: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        unique=True,
        index=True,
    )

    # Columns not carried over when a record is superseded
    ENVELOPE_RESET_COLUMNS: ClassVar[frozenset[str]] = frozenset(
        {
            "uuid",
            "modification_counter",
            "is_active",
            "sync_version",
            "upload_state",
            "created_at",
            "updated_at",
        }
    )

    # Columns left out of critical event log exports
    EXPORT_EXCLUDED_COLUMNS: ClassVar[frozenset[str]] = frozenset({"created_at", "updated_at"})

    def column_values(self) -> dict[str, Any]:
        """Current value of every mapped column, keyed by attribute name."""
        return {
            column.key: getattr(self, column.key)
            for column in self.__table__.columns  # type: ignore[attr-defined]
        }

    def as_export_dict(self) -> dict[str, Any]:
        """JSON-ready representation used by the critical event log."""
        return {
            key: _export_value(value)
            for key, value in self.column_values().items()
            if key not in self.EXPORT_EXCLUDED_COLUMNS
        }
