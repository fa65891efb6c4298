"""Queue store: the persistence boundary of the queue engine.

All reads and writes of clinics and queue entries go through
:class:`SqlQueueStore`.  The public methods are coroutines; the blocking
SQLModel session work runs in a worker thread and is bounded by a timeout.
A timed-out or failed call surfaces as :class:`StoreUnavailableError` and
is never retried here.  Writes that touch several rows run in one
transaction.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from datetime import datetime
from typing import Iterable, List, Optional, Sequence

from sqlalchemy import delete, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, col, create_engine, or_, select

from errors import QueueError, StoreConflictError, StoreUnavailableError
from models import ACTIVE_STATUSES, Clinic, QueueEntry, QueueStatus

logger = logging.getLogger(__name__)


def build_engine(url: str) -> Engine:
    """Create an engine for ``url``.

    SQLite connections are shared with worker threads, and an in-memory
    database keeps a single connection so every session sees the same data.
    """
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)
    return create_engine(url, pool_pre_ping=True)


def init_db(engine: Engine) -> None:
    """Create tables if they do not exist."""
    SQLModel.metadata.create_all(engine)


class SqlQueueStore:
    def __init__(self, engine: Engine, timeout: float = 5.0) -> None:
        self._engine = engine
        self._timeout = timeout
        # One session at a time: SQLite allows a single writer.
        self._lock = threading.Lock()

    async def _run(self, fn, *args):
        deadline = time.monotonic() + self._timeout
        work = asyncio.ensure_future(asyncio.to_thread(self._call, deadline, fn, *args))
        try:
            return await asyncio.wait_for(asyncio.shield(work), self._timeout)
        except asyncio.TimeoutError:
            logger.error("Store call %s timed out after %.1fs", fn.__name__, self._timeout)
            # A worker thread cannot be interrupted; the caller keeps its
            # clinic lock until the call has settled one way or the other.
            try:
                await work
            except QueueError as e:
                logger.warning("Timed-out store call %s then failed: %s", fn.__name__, e)
            raise StoreUnavailableError("The queue store did not answer in time") from None

    def _call(self, deadline: float, fn, *args):
        if not self._lock.acquire(timeout=max(0.0, deadline - time.monotonic())):
            logger.error("Store call %s gave up waiting for the store", fn.__name__)
            raise StoreUnavailableError("The queue store did not answer in time")
        try:
            with Session(self._engine, expire_on_commit=False) as session:
                return fn(session, *args)
        except IntegrityError as e:
            raise StoreConflictError("Concurrent update on the queue store") from e
        except SQLAlchemyError as e:
            logger.error("Store call %s failed: %s", fn.__name__, e)
            raise StoreUnavailableError("The queue store is unavailable") from e
        finally:
            self._lock.release()

    # ----- clinics -----

    async def get_clinic(self, clinic_id: str) -> Optional[Clinic]:
        return await self._run(_get_clinic, clinic_id)

    async def list_clinics(self, active_only: bool = True) -> List[Clinic]:
        return await self._run(_list_clinics, active_only)

    async def add_clinic(self, clinic: Clinic) -> Clinic:
        return await self._run(_add, clinic)

    async def set_doctor_presence(self, clinic_id: str, present: bool) -> Optional[Clinic]:
        return await self._run(_set_doctor_presence, clinic_id, present)

    # ----- queue entries -----

    async def get_entry(self, entry_id: str) -> Optional[QueueEntry]:
        return await self._run(_get_entry, entry_id)

    async def list_active(self, clinic_id: str) -> List[QueueEntry]:
        """Active entries of a clinic ordered by position."""
        return await self._run(_list_active, clinic_id)

    async def find_active_by_phone(
        self, clinic_id: str, phone: str, since: datetime
    ) -> Optional[QueueEntry]:
        return await self._run(_find_active_by_phone, clinic_id, phone, since)

    async def list_since(
        self, clinic_id: str, since: datetime, statuses: Optional[Iterable[QueueStatus]] = None
    ) -> List[QueueEntry]:
        """Entries that arrived or finished since ``since``."""
        return await self._run(_list_since, clinic_id, since, tuple(statuses or ()))

    async def apply(self, entries: Sequence[QueueEntry]) -> None:
        """Insert or update ``entries`` in one transaction."""
        if entries:
            await self._run(_apply, list(entries))

    async def delete_entry(self, entry_id: str, moved: Sequence[QueueEntry] = ()) -> bool:
        """Delete an entry and write the renumbered survivors atomically."""
        return await self._run(_delete_entry, entry_id, list(moved))

    async def bulk_transition(
        self, clinic_id: str, statuses: Iterable[QueueStatus], new_status: QueueStatus
    ) -> int:
        return await self._run(_bulk_transition, clinic_id, tuple(statuses), new_status)

    async def delete_by_status(self, clinic_id: str, status: QueueStatus) -> int:
        return await self._run(_delete_by_status, clinic_id, status)


def _get_clinic(session: Session, clinic_id: str) -> Optional[Clinic]:
    return session.get(Clinic, clinic_id)


def _list_clinics(session: Session, active_only: bool) -> List[Clinic]:
    statement = select(Clinic)
    if active_only:
        statement = statement.where(col(Clinic.is_active).is_(True))
    return list(session.exec(statement.order_by(Clinic.name)))


def _add(session: Session, row):
    session.add(row)
    session.commit()
    session.refresh(row)
    return row


def _set_doctor_presence(session: Session, clinic_id: str, present: bool) -> Optional[Clinic]:
    clinic = session.get(Clinic, clinic_id)
    if clinic is None:
        return None
    clinic.is_doctor_present = present
    return _add(session, clinic)


def _get_entry(session: Session, entry_id: str) -> Optional[QueueEntry]:
    return session.get(QueueEntry, entry_id)


def _list_active(session: Session, clinic_id: str) -> List[QueueEntry]:
    statement = (
        select(QueueEntry)
        .where(QueueEntry.clinic_id == clinic_id)
        .where(col(QueueEntry.status).in_(list(ACTIVE_STATUSES)))
        .order_by(col(QueueEntry.position), col(QueueEntry.arrived_at))
    )
    return list(session.exec(statement))


def _find_active_by_phone(
    session: Session, clinic_id: str, phone: str, since: datetime
) -> Optional[QueueEntry]:
    statement = (
        select(QueueEntry)
        .where(QueueEntry.clinic_id == clinic_id)
        .where(QueueEntry.patient_phone == phone)
        .where(col(QueueEntry.status).in_(list(ACTIVE_STATUSES)))
        .where(QueueEntry.arrived_at >= since)
    )
    return session.exec(statement).first()


def _list_since(
    session: Session, clinic_id: str, since: datetime, statuses: tuple
) -> List[QueueEntry]:
    statement = (
        select(QueueEntry)
        .where(QueueEntry.clinic_id == clinic_id)
        .where(or_(QueueEntry.arrived_at >= since, col(QueueEntry.completed_at) >= since))
    )
    if statuses:
        statement = statement.where(col(QueueEntry.status).in_(list(statuses)))
    return list(session.exec(statement.order_by(col(QueueEntry.arrived_at))))


def _apply(session: Session, entries: List[QueueEntry]) -> None:
    for entry in entries:
        session.merge(entry)
    session.commit()


def _delete_entry(session: Session, entry_id: str, moved: List[QueueEntry]) -> bool:
    entry = session.get(QueueEntry, entry_id)
    if entry is None:
        return False
    session.delete(entry)
    for survivor in moved:
        session.merge(survivor)
    session.commit()
    return True


def _bulk_transition(
    session: Session, clinic_id: str, statuses: tuple, new_status: QueueStatus
) -> int:
    result = session.connection().execute(
        update(QueueEntry)
        .where(col(QueueEntry.clinic_id) == clinic_id)
        .where(col(QueueEntry.status).in_(list(statuses)))
        .values(status=new_status)
    )
    session.commit()
    return result.rowcount


def _delete_by_status(session: Session, clinic_id: str, status: QueueStatus) -> int:
    result = session.connection().execute(
        delete(QueueEntry)
        .where(col(QueueEntry.clinic_id) == clinic_id)
        .where(col(QueueEntry.status) == status)
    )
    session.commit()
    return result.rowcount
