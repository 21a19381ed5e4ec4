"""Critical event log export.

Streams a ledger's rows over a date range to a byte sink as one JSON
array: objects ordered by start date, keys sorted, dates in fixed
millisecond-precision UTC. Exports are cancellable through the
``ExportProgress`` token passed in by the caller.
"""

import json
from datetime import datetime, timedelta
from typing import Final, Protocol

from sqlalchemy import and_, or_, select
from sqlalchemy.exc import SQLAlchemyError

from insulin_ledger.config import settings
from insulin_ledger.logging_config import get_logger
from insulin_ledger.services.ledger import Ledger, PersistenceError, RecordT

logger = get_logger(__name__)

# Rows fetched per round trip while exporting
EXPORT_FETCH_LIMIT: Final[int] = 250

# Progress units reported per exported row
EXPORT_PROGRESS_UNIT_COUNT_PER_ROW: Final[int] = 1


class CriticalEventLogError(Exception):
    """Base exception for critical event log exports."""

    pass


class CriticalEventLogCancelledError(CriticalEventLogError):
    """The export was cancelled through its progress token."""

    pass


class ByteSink(Protocol):
    """Anything that accepts bytes, such as a binary file or ``io.BytesIO``."""

    def write(self, data: bytes, /) -> object: ...


class ExportProgress:
    """Progress and cancellation token shared by an export and its caller."""

    def __init__(self, total_unit_count: int = 0):
        self.total_unit_count = total_unit_count
        self.completed_unit_count = 0
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    @property
    def fraction_completed(self) -> float:
        if self.total_unit_count <= 0:
            return 1.0 if self.completed_unit_count else 0.0
        return min(1.0, self.completed_unit_count / self.total_unit_count)


class CriticalEventLogExporter:
    """Exports one ledger's rows to the critical event log."""

    def __init__(
        self,
        ledger: Ledger[RecordT],
        export_name: str,
        *,
        row_cost: timedelta | None = None,
    ):
        self.ledger = ledger
        self.export_name = export_name
        self.row_cost = row_cost or timedelta(milliseconds=settings.export_row_cost_ms)

    def _range(self, start: datetime, end: datetime | None):
        model = self.ledger.model
        criteria = [model.start_date >= start]
        if end is not None:
            criteria.append(model.start_date < end)
        return criteria

    async def export_progress_total_unit_count(
        self, start: datetime, end: datetime | None = None
    ) -> int:
        """Progress units an export of ``[start, end)`` will report."""
        rows = await self.ledger.count(*self._range(start, end))
        return rows * EXPORT_PROGRESS_UNIT_COUNT_PER_ROW

    async def export_estimated_duration(
        self, start: datetime, end: datetime | None = None
    ) -> timedelta:
        """Rough time an export of ``[start, end)`` will take."""
        rows = await self.ledger.count(*self._range(start, end))
        return self.row_cost * rows

    async def export(
        self,
        start: datetime,
        end: datetime | None,
        sink: ByteSink,
        progress: ExportProgress,
    ) -> int:
        """Write rows with ``start <= start_date < end`` to ``sink``.

        Returns:
            Number of rows written.

        Raises:
            CriticalEventLogCancelledError: ``progress`` was cancelled. The
                sink holds only fully written rows.
            PersistenceError: Rows could not be read.
        """
        if progress.is_cancelled:
            raise CriticalEventLogCancelledError(f"{self.export_name} export cancelled")

        model = self.ledger.model
        criteria = self._range(start, end)
        sink.write(b"[")

        written = 0
        last_key: tuple[datetime, int] | None = None
        while True:
            if progress.is_cancelled:
                raise CriticalEventLogCancelledError(f"{self.export_name} export cancelled")

            statement = select(model).where(*criteria)
            if last_key is not None:
                last_date, last_counter = last_key
                statement = statement.where(
                    or_(
                        model.start_date > last_date,
                        and_(
                            model.start_date == last_date,
                            model.modification_counter > last_counter,
                        ),
                    )
                )
            statement = statement.order_by(
                model.start_date, model.modification_counter
            ).limit(EXPORT_FETCH_LIMIT)

            try:
                async with self.ledger.session() as session:
                    rows = list((await session.scalars(statement)).all())
            except SQLAlchemyError as e:
                logger.error(
                    "Critical event log export failed",
                    export_name=self.export_name,
                    error=str(e),
                )
                msg = f"Failed to read {self.export_name} rows: {e}"
                raise PersistenceError(msg) from e

            for row in rows:
                if progress.is_cancelled:
                    raise CriticalEventLogCancelledError(
                        f"{self.export_name} export cancelled"
                    )
                encoded = json.dumps(
                    row.as_export_dict(), sort_keys=True, separators=(",", ":")
                ).encode("utf-8")
                sink.write(encoded if written == 0 else b"," + encoded)
                written += 1
                progress.completed_unit_count += EXPORT_PROGRESS_UNIT_COUNT_PER_ROW

            if len(rows) < EXPORT_FETCH_LIMIT:
                break
            last_key = (rows[-1].start_date, rows[-1].modification_counter)

        sink.write(b"]")
        logger.info(
            "Critical event log exported",
            export_name=self.export_name,
            rows=written,
        )
        return written
