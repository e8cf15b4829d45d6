from __future__ import annotations

from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .database import Database, QueueRow, as_utc
from .exceptions import OrderingUnavailable, QueueEntryNotFound, QueueStoreUnavailable
from .logger import setup_logger
from .types import ACTIVE_STATUSES, CheckInResult, QueueEntry, QueueStatus

_ACTIVE = [status.value for status in ACTIVE_STATUSES]


def _entry(row: QueueRow) -> QueueEntry:
    return QueueEntry(
        id=row.id,
        clinic_id=row.clinic_id,
        identity_id=row.identity_id,
        display_name=row.display_name,
        short_code=row.short_code,
        status=QueueStatus(row.status),
        check_in_time=as_utc(row.check_in_time),
        notes=row.notes,
    )


def fifo_key(entry: QueueEntry) -> tuple:
    return (entry.check_in_time, entry.id)


class QueueStore:
    """Durable clinic queue backed by SQLAlchemy."""

    def __init__(self, db: Database):
        self.db = db

    def create_or_get_active(
        self,
        clinic_id: str,
        identity_id: str,
        display_name: str,
        short_code: str,
        check_in_time: datetime,
    ) -> CheckInResult:
        try:
            with self.db.session() as session:
                existing = self._active_row(session, clinic_id, identity_id)
                if existing is not None:
                    return CheckInResult(entry_id=existing.id, created=False)

                row = QueueRow(
                    clinic_id=clinic_id,
                    identity_id=identity_id,
                    display_name=display_name,
                    short_code=short_code,
                    status=QueueStatus.WAITING.value,
                    check_in_time=check_in_time,
                )
                session.add(row)
                try:
                    session.commit()
                except IntegrityError:
                    # Another writer won the partial unique index.
                    session.rollback()
                    existing = self._active_row(session, clinic_id, identity_id)
                    if existing is None:
                        raise
                    return CheckInResult(entry_id=existing.id, created=False)
                return CheckInResult(entry_id=row.id, created=True)
        except SQLAlchemyError as exc:
            raise QueueStoreUnavailable(f"Failed to check in {identity_id} at {clinic_id}: {exc}") from exc

    def get(self, entry_id: str) -> Optional[QueueEntry]:
        try:
            with self.db.session() as session:
                row = session.get(QueueRow, entry_id)
                return _entry(row) if row is not None else None
        except SQLAlchemyError as exc:
            raise QueueStoreUnavailable(f"Failed to load queue entry {entry_id}: {exc}") from exc

    def find_active(self, clinic_id: str, identity_id: str) -> Optional[QueueEntry]:
        try:
            with self.db.session() as session:
                row = self._active_row(session, clinic_id, identity_id)
                return _entry(row) if row is not None else None
        except SQLAlchemyError as exc:
            raise QueueStoreUnavailable(f"Failed to query active entry for {identity_id}: {exc}") from exc

    def transition(
        self,
        entry_id: str,
        status: QueueStatus,
        notes: Optional[str],
        validate: Callable[[QueueEntry, QueueStatus], None],
    ) -> QueueEntry:
        """Validate and apply a status change in one transaction."""
        try:
            with self.db.session() as session:
                row = session.get(QueueRow, entry_id, with_for_update=True)
                if row is None:
                    raise QueueEntryNotFound(f"Queue entry {entry_id} does not exist.")
                validate(_entry(row), status)
                row.status = status.value
                if notes is not None:
                    row.notes = notes
                session.commit()
                return _entry(row)
        except SQLAlchemyError as exc:
            raise QueueStoreUnavailable(f"Failed to update queue entry {entry_id}: {exc}") from exc

    def list_active(self, clinic_id: str, ordered: bool = True) -> List[QueueEntry]:
        stmt = select(QueueRow).where(QueueRow.clinic_id == clinic_id, QueueRow.status.in_(_ACTIVE))
        if ordered:
            stmt = stmt.order_by(QueueRow.check_in_time.asc(), QueueRow.id.asc())
        try:
            with self.db.session() as session:
                return [_entry(row) for row in session.scalars(stmt).all()]
        except SQLAlchemyError as exc:
            if ordered:
                raise OrderingUnavailable(f"Ordered queue query failed for {clinic_id}: {exc}") from exc
            raise QueueStoreUnavailable(f"Queue query failed for {clinic_id}: {exc}") from exc

    @staticmethod
    def _active_row(session, clinic_id: str, identity_id: str) -> Optional[QueueRow]:
        return session.scalar(
            select(QueueRow)
            .where(
                QueueRow.clinic_id == clinic_id,
                QueueRow.identity_id == identity_id,
                QueueRow.status.in_(_ACTIVE),
            )
            .order_by(QueueRow.check_in_time.asc())
            .limit(1)
        )


class ActiveQueueQuery:
    """Active entries of one clinic, earliest arrival first.

    Tries the store's sorted query and, when ordering is unavailable, fetches
    unordered and sorts locally.
    """

    def __init__(self, store: QueueStore, clinic_id: str):
        self.store = store
        self.clinic_id = clinic_id
        self.fallback_used = False
        self.logger = setup_logger(self.__class__.__name__)

    def fetch(self) -> List[QueueEntry]:
        try:
            entries = self.store.list_active(self.clinic_id, ordered=True)
            self.fallback_used = False
            return entries
        except OrderingUnavailable as exc:
            if not self.fallback_used:
                self.logger.warning("Sorted queue query unavailable for %s, sorting locally: %s", self.clinic_id, exc)
            self.fallback_used = True

        return sorted(self.store.list_active(self.clinic_id, ordered=False), key=fifo_key)
