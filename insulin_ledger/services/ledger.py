"""Incremental, tombstone-aware ledger.

One ``Ledger`` owns one table of cached records. It hands out strictly
increasing modification counters, never rewrites history in place (an
update inserts a new version and tombstones the old one), and lets
remote consumers read incrementally from a ``QueryAnchor``.

Mutations for one ledger run one at a time, in submission order, under
the ledger's lock. Each committed mutation fires a single coalesced
change notification. Queries open their own session and never take the
lock, so they read a consistent committed snapshot.
"""

import asyncio
from collections.abc import AsyncIterator, Callable, Iterable, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Generic, TypeVar
from uuid import uuid4

from sqlalchemy import ColumnElement, delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from insulin_ledger.config import settings
from insulin_ledger.logging_config import get_logger
from insulin_ledger.models.base import CachedRecordMixin, UploadState
from insulin_ledger.schemas.query_anchor import QueryAnchor

logger = get_logger(__name__)

RecordT = TypeVar("RecordT", bound=CachedRecordMixin)

LedgerObserver = Callable[["Ledger[Any]"], None]


class LedgerError(Exception):
    """Base exception for ledger operations."""

    pass


class PersistenceError(LedgerError):
    """The underlying store was unavailable or a write failed."""

    pass


class StaleRecordError(LedgerError):
    """A tombstone or supersede targeted a record that is no longer active."""

    pass


@dataclass(frozen=True)
class QuerySuccess(Generic[RecordT]):
    """Rows after an anchor and the anchor to resume from."""

    anchor: QueryAnchor
    records: list[RecordT] = field(default_factory=list)


@dataclass(frozen=True)
class QueryFailure:
    """A query that could not be served."""

    error: LedgerError


QueryResult = QuerySuccess[RecordT] | QueryFailure


class LedgerTransaction(Generic[RecordT]):
    """Mutations staged inside one ``Ledger.transaction()`` block.

    Everything staged here commits together and produces at most one
    change notification.
    """

    def __init__(self, ledger: "Ledger[RecordT]", session: AsyncSession):
        self._ledger = ledger
        self.session = session
        self.changed = False

    def insert(self, record: RecordT) -> RecordT:
        """Stage ``record`` with the next modification counter."""
        record.modification_counter = self._ledger._next_counter()
        if record.provenance_identifier is None:
            record.provenance_identifier = self._ledger.provenance_identifier
        if record.is_active is None:
            record.is_active = True
        if record.upload_state is None:
            record.upload_state = UploadState.NOT_UPLOADED
        self.session.add(record)
        self.changed = True
        return record

    def insert_many(self, records: Iterable[RecordT]) -> list[RecordT]:
        return [self.insert(record) for record in records]

    async def _load_active(self, record: RecordT) -> RecordT:
        current = await self.session.get(self._ledger.model, record.uuid)
        if current is None or not current.is_active:
            msg = f"{self._ledger.name} record {record.uuid} is not active"
            raise StaleRecordError(msg)
        return current

    async def tombstone(self, record: RecordT) -> RecordT:
        """Mark ``record`` inactive under a fresh counter."""
        current = await self._load_active(record)
        current.is_active = False
        current.modification_counter = self._ledger._next_counter()
        self.changed = True
        return current

    async def supersede(self, record: RecordT, **new_fields: Any) -> RecordT:
        """Replace ``record`` with a new version carrying ``new_fields``.

        The old row is tombstoned first, so the new version always has
        the larger counter.

        Returns:
            The new, active version.
        """
        current = await self._load_active(record)
        values = {
            key: value
            for key, value in current.column_values().items()
            if key not in CachedRecordMixin.ENVELOPE_RESET_COLUMNS
        }
        values.update(new_fields)
        sync_version = current.sync_version + 1

        await self.tombstone(current)
        replacement = self._ledger.model(
            **values,
            uuid=uuid4(),
            sync_version=sync_version,
            is_active=True,
            upload_state=UploadState.NOT_UPLOADED,
        )
        return self.insert(replacement)

    async def purge(self, *criteria: ColumnElement[bool]) -> int:
        """Physically delete rows matching ``criteria``. Retention only."""
        result = await self.session.execute(delete(self._ledger.model).where(*criteria))
        if result.rowcount:
            self.changed = True
        return result.rowcount or 0


class Ledger(Generic[RecordT]):
    """Persistent ledger over one cached-record table."""

    def __init__(
        self,
        model: type[RecordT],
        session_maker: async_sessionmaker[AsyncSession],
        *,
        name: str | None = None,
        provenance_identifier: str | None = None,
    ):
        self.model = model
        self.name = name or model.__tablename__  # type: ignore[attr-defined]
        self.provenance_identifier = provenance_identifier or settings.provenance_identifier
        self._session_maker = session_maker
        self._lock = asyncio.Lock()
        self._counter: int | None = None
        self._observers: list[LedgerObserver] = []

    # ── Lifecycle ──

    @property
    def is_open(self) -> bool:
        return self._counter is not None

    @property
    def modification_counter(self) -> int:
        """Highest counter handed out so far."""
        if self._counter is None:
            msg = f"{self.name} ledger has not been opened"
            raise LedgerError(msg)
        return self._counter

    async def open(self) -> None:
        """Initialize the counter from the highest persisted counter."""
        async with self._lock:
            await self._open_locked()

    async def _open_locked(self) -> None:
        if self._counter is not None:
            return
        try:
            async with self._session_maker() as session:
                persisted = await session.scalar(
                    select(func.max(self.model.modification_counter))
                )
        except SQLAlchemyError as e:
            logger.error("Failed to open ledger", ledger=self.name, error=str(e))
            msg = f"Failed to open {self.name} ledger: {e}"
            raise PersistenceError(msg) from e
        self._counter = persisted or 0
        logger.debug("Ledger opened", ledger=self.name, counter=self._counter)

    def _next_counter(self) -> int:
        self._counter = self.modification_counter + 1
        return self._counter

    # ── Notification ──

    def add_observer(self, observer: LedgerObserver) -> None:
        """Call ``observer(ledger)`` once after each committed mutation."""
        self._observers.append(observer)

    def remove_observer(self, observer: LedgerObserver) -> None:
        self._observers.remove(observer)

    def _notify(self) -> None:
        for observer in list(self._observers):
            observer(self)

    # ── Mutation ──

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[LedgerTransaction[RecordT]]:
        """Stage mutations that commit atomically, in submission order.

        On failure the transaction is rolled back, counters handed out
        inside it are reclaimed and ``PersistenceError`` is raised.
        """
        async with self._lock:
            await self._open_locked()
            counter_before = self._counter
            async with self._session_maker() as session:
                txn = LedgerTransaction(self, session)
                try:
                    yield txn
                    await session.commit()
                except SQLAlchemyError as e:
                    await session.rollback()
                    self._counter = counter_before
                    logger.error("Ledger commit failed", ledger=self.name, error=str(e))
                    msg = f"Failed to commit {self.name} ledger changes: {e}"
                    raise PersistenceError(msg) from e
                except BaseException:
                    await session.rollback()
                    self._counter = counter_before
                    raise
            if txn.changed:
                self._notify()

    async def insert(self, record: RecordT) -> RecordT:
        async with self.transaction() as txn:
            return txn.insert(record)

    async def insert_many(self, records: Sequence[RecordT]) -> list[RecordT]:
        if not records:
            return []
        async with self.transaction() as txn:
            return txn.insert_many(records)

    async def supersede(self, record: RecordT, **new_fields: Any) -> RecordT:
        async with self.transaction() as txn:
            return await txn.supersede(record, **new_fields)

    async def tombstone(self, record: RecordT) -> RecordT:
        async with self.transaction() as txn:
            return await txn.tombstone(record)

    async def purge(self, before: datetime) -> int:
        """Physically remove rows that started before ``before``."""
        async with self.transaction() as txn:
            count = await txn.purge(self.model.start_date < before)
        if count:
            logger.info("Purged ledger rows", ledger=self.name, count=count)
        return count

    # ── Reads ──

    async def fetch(
        self,
        *criteria: ColumnElement[bool],
        active_only: bool = True,
        limit: int | None = None,
        descending: bool = False,
    ) -> list[RecordT]:
        """Rows matching ``criteria`` ordered by start date, then counter.

        ``descending`` returns the newest rows first.
        """
        statement = select(self.model).where(*criteria)
        if active_only:
            statement = statement.where(self.model.is_active.is_(True))
        order = [self.model.start_date, self.model.modification_counter]
        if descending:
            order = [column.desc() for column in order]
        statement = statement.order_by(*order)
        if limit is not None:
            statement = statement.limit(limit)
        try:
            async with self._session_maker() as session:
                return list((await session.scalars(statement)).all())
        except SQLAlchemyError as e:
            logger.error("Ledger read failed", ledger=self.name, error=str(e))
            msg = f"Failed to read {self.name} ledger: {e}"
            raise PersistenceError(msg) from e

    async def latest(self, *criteria: ColumnElement[bool]) -> RecordT | None:
        """Most recent active row matching ``criteria``."""
        statement = (
            select(self.model)
            .where(self.model.is_active.is_(True), *criteria)
            .order_by(
                self.model.start_date.desc(), self.model.modification_counter.desc()
            )
            .limit(1)
        )
        try:
            async with self._session_maker() as session:
                return await session.scalar(statement)
        except SQLAlchemyError as e:
            logger.error("Ledger read failed", ledger=self.name, error=str(e))
            msg = f"Failed to read {self.name} ledger: {e}"
            raise PersistenceError(msg) from e

    async def count(self, *criteria: ColumnElement[bool]) -> int:
        statement = select(func.count()).select_from(self.model).where(*criteria)
        try:
            async with self._session_maker() as session:
                return int(await session.scalar(statement) or 0)
        except SQLAlchemyError as e:
            logger.error("Ledger count failed", ledger=self.name, error=str(e))
            msg = f"Failed to count {self.name} ledger rows: {e}"
            raise PersistenceError(msg) from e

    def session(self) -> AsyncSession:
        """A new session on this ledger's database, for read-only use."""
        return self._session_maker()

    async def execute_query(
        self, anchor: QueryAnchor | None, limit: int
    ) -> QueryResult[RecordT]:
        """Rows changed since ``anchor``, oldest change first.

        Inactive rows are included so consumers observe deletions and
        superseded versions. Failures are returned, not raised.
        """
        anchor = anchor or QueryAnchor()
        if limit <= 0:
            return QuerySuccess(anchor=anchor, records=[])

        statement = (
            select(self.model)
            .where(self.model.modification_counter > anchor.modification_counter)
            .order_by(self.model.modification_counter)
            .limit(limit)
        )
        try:
            async with self._session_maker() as session:
                records = list((await session.scalars(statement)).all())
        except SQLAlchemyError as e:
            logger.error(
                "Ledger query failed",
                ledger=self.name,
                anchor=anchor.modification_counter,
                error=str(e),
            )
            msg = f"Failed to query {self.name} ledger: {e}"
            return QueryFailure(error=PersistenceError(msg))

        if records:
            anchor = QueryAnchor(modification_counter=records[-1].modification_counter)
        return QuerySuccess(anchor=anchor, records=records)
