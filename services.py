"""Queue operations for a clinic.

:class:`QueueService` is the only writer of queue entries.  Every mutating
operation runs under a per-clinic ``asyncio.Lock`` and goes through the
same steps:

1. validate the input (no store access on bad input);
2. read the active queue, rearrange it with :mod:`positions`, renumber it
   and write back what moved, in one store transaction;
3. notify patients who came within the clinic's ``notify_at_position``;
4. drop the clinic's ``queue:`` and ``stats:`` cache keys;
5. broadcast the new snapshot while still holding the lock, so clients see
   updates in the order they were written.

An error in steps 1-2 aborts before anything is invalidated or broadcast.
A store conflict is retried once, never more.

Calling the next patient while another is in consultation is refused with
``CONFLICT``; :meth:`QueueService.advance` is the explicit "finish the
current patient and call the next one" action.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple
from zoneinfo import ZoneInfo

import positions
from cache import invalidate_clinic
from errors import (
    AlreadyCheckedInError,
    ConflictError,
    EmptyQueueError,
    InvalidStateError,
    NotFoundError,
    StoreConflictError,
    ValidationError,
)
from models import ACTIVE_STATUSES, CheckInMethod, Clinic, QueueEntry, QueueStatus, utcnow
from schemas import PatientStatus
from stats import start_of_day

logger = logging.getLogger(__name__)

_WAITING = (QueueStatus.WAITING, QueueStatus.NOTIFIED)
_PHONE_CHARS = re.compile(r"^[\d\s+().-]+$")


def format_phone(phone: Optional[str], country_code: str = "216", local_digits: int = 8) -> str:
    """Normalize a phone number to ``+<country><local>``.

    Local numbers get ``country_code`` prepended.  Anything that does not
    reduce to exactly ``local_digits`` local digits is rejected.
    """
    raw = (phone or "").strip()
    if not raw or not _PHONE_CHARS.match(raw):
        raise ValidationError("Invalid phone number")
    digits = re.sub(r"\D", "", raw)
    if digits.startswith("00"):
        digits = digits[2:]
    if len(digits) == local_digits and not raw.startswith("+"):
        return f"+{country_code}{digits}"
    if len(digits) == len(country_code) + local_digits and digits.startswith(country_code):
        return f"+{digits}"
    raise ValidationError("Invalid phone number")


def to_utc_naive(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class ClinicLocks:
    """One ``asyncio.Lock`` per clinic, created on first use."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}

    def __call__(self, clinic_id: str) -> asyncio.Lock:
        lock = self._locks.get(clinic_id)
        if lock is None:
            lock = self._locks[clinic_id] = asyncio.Lock()
        return lock


@dataclass
class _Change:
    result: Any = None
    dirty: bool = True
    departed: List[QueueEntry] = field(default_factory=list)


class QueueService:
    def __init__(
        self,
        store,
        cache,
        broadcaster,
        directory,
        *,
        clock=utcnow,
        tz: str = "Africa/Tunis",
        phone_country_code: str = "216",
        phone_local_digits: int = 8,
        locks: Optional[ClinicLocks] = None,
    ) -> None:
        self._store = store
        self._cache = cache
        self._broadcaster = broadcaster
        self._directory = directory
        self._clock = clock
        self._tz = ZoneInfo(tz)
        self._phone = (phone_country_code, phone_local_digits)
        self._locks = locks or ClinicLocks()

    def today_start(self) -> datetime:
        return start_of_day(self._clock(), self._tz)

    def lock(self, clinic_id: str) -> asyncio.Lock:
        """The lock every mutation of ``clinic_id`` holds."""
        return self._locks(clinic_id)

    # ----- plumbing -----

    async def _mutate(self, clinic_id: str, operation, *args) -> Any:
        async with self._locks(clinic_id):
            try:
                change = await operation(*args)
            except StoreConflictError:
                logger.warning("Store conflict on clinic %s in %s, retrying once", clinic_id, operation.__name__)
                change = await operation(*args)
            if change.dirty:
                await invalidate_clinic(self._cache, clinic_id)
                await self._broadcaster.publish_queue(clinic_id, change.departed)
        return change.result

    def _plan(
        self,
        clinic: Clinic,
        before: Sequence[QueueEntry],
        order: Sequence[QueueEntry],
        touched: Sequence[QueueEntry] = (),
    ) -> Tuple[List[QueueEntry], List[QueueEntry]]:
        """Renumber ``order`` and work out which rows must be written.

        ``touched`` are entries whose fields changed besides position; those
        no longer in ``order`` (finished patients) are written as they are.
        """
        now = self._clock()
        order = positions.recompute(order)
        dirty_ids = {entry.id for entry in touched}
        for entry in positions.notify_candidates(order, clinic.notify_at_position):
            entry.status = QueueStatus.NOTIFIED
            entry.notified_at = now
            dirty_ids.add(entry.id)
            logger.info("Notified %s in clinic %s (position %d)", entry.id, clinic.id, entry.position)

        writes: Dict[str, QueueEntry] = {entry.id: entry for entry in positions.changed(before, order)}
        for entry in order:
            if entry.id in dirty_ids:
                writes[entry.id] = entry
        active_ids = {entry.id for entry in order}
        finished = [entry for entry in touched if entry.id not in active_ids]
        return order, list(writes.values()) + finished

    async def _write(self, clinic, before, order, touched=()) -> List[QueueEntry]:
        order, writes = self._plan(clinic, before, order, touched)
        await self._store.apply(writes)
        return order

    async def _require_active(
        self, clinic_id: str, active: Sequence[QueueEntry], entry_id: str
    ) -> QueueEntry:
        index = positions.index_of(active, entry_id)
        if index is not None:
            return active[index]
        stored = await self._store.get_entry(entry_id)
        if stored is None or stored.clinic_id != clinic_id:
            raise NotFoundError("Queue entry not found")
        raise InvalidStateError(f"Queue entry is already {stored.status.value}")

    @staticmethod
    def _replace(order: Sequence[QueueEntry], entry: QueueEntry) -> List[QueueEntry]:
        return [entry if item.id == entry.id else item for item in order]

    # ----- reads -----

    async def get_queue(self, clinic_id: str) -> Dict[str, Any]:
        """The dashboard snapshot ``{queue, stats}``."""
        await self._directory.get(clinic_id)
        return await self._broadcaster.snapshot(clinic_id)

    async def get_patient_status(self, entry_id: str) -> PatientStatus:
        entry = await self._store.get_entry(entry_id)
        if entry is None:
            raise NotFoundError("Queue entry not found")
        clinic = await self._directory.get(entry.clinic_id)
        if entry.status == QueueStatus.IN_CONSULTATION:
            estimated: Optional[int] = 0
        elif entry.is_active:
            estimated = entry.position * clinic.avg_consultation_mins
        else:
            estimated = None
        return PatientStatus(
            **entry.model_dump(),
            estimated_wait_mins=estimated,
            avg_consultation_mins=clinic.avg_consultation_mins,
            clinic_name=clinic.name,
            doctor_name=clinic.doctor_name,
            is_doctor_present=clinic.is_doctor_present,
        )

    # ----- check-in -----

    async def add_patient(
        self,
        clinic_id: str,
        phone: str,
        name: Optional[str] = None,
        check_in_method: CheckInMethod = CheckInMethod.MANUAL,
        *,
        arrived_at: Optional[datetime] = None,
        priority: bool = False,
    ) -> QueueEntry:
        """Check a patient in at the end of the queue.

        ``arrived_at`` back-dates a manual entry; it is placed by arrival
        time among the waiting patients.  ``priority`` puts the patient
        first in line behind the current consultation.  A phone that already
        has an active entry today raises :class:`AlreadyCheckedInError`.
        """
        formatted = format_phone(phone, *self._phone)
        try:
            method = CheckInMethod(check_in_method)
        except ValueError:
            raise ValidationError(f"Unknown check-in method {check_in_method!r}") from None
        name = (name or "").strip() or None
        return await self._mutate(
            clinic_id, self._add_patient, clinic_id, formatted, name, method, to_utc_naive(arrived_at), priority
        )

    async def _add_patient(self, clinic_id, phone, name, method, arrived_at, priority) -> _Change:
        clinic = await self._directory.get(clinic_id, active_only=True)
        existing = await self._store.find_active_by_phone(clinic_id, phone, self.today_start())
        if existing is not None:
            raise AlreadyCheckedInError("This patient is already in the queue", data=existing)

        before = await self._store.list_active(clinic_id)
        entry = QueueEntry(
            clinic_id=clinic_id,
            patient_phone=phone,
            patient_name=name,
            check_in_method=method,
            position=positions.next_position(before),
            arrived_at=arrived_at or self._clock(),
        )
        if priority:
            order = positions.insert_priority(before, entry)
        else:
            order = positions.insert_by_arrival(before, entry)
        order = await self._write(clinic, before, order)
        created = order[positions.index_of(order, entry.id)]
        logger.info(
            "Added %s to clinic %s at position %d via %s",
            created.id, clinic_id, created.position, method.value,
        )
        return _Change(created)

    # ----- consultation flow -----

    async def call_next(self, clinic_id: str) -> QueueEntry:
        """Move the first waiting patient into consultation."""
        return await self._mutate(clinic_id, self._call_next, clinic_id)

    async def _call_next(self, clinic_id: str) -> _Change:
        clinic = await self._directory.get(clinic_id)
        before = await self._store.list_active(clinic_id)
        current = next((e for e in before if e.status == QueueStatus.IN_CONSULTATION), None)
        if current is not None:
            raise ConflictError("Complete the patient in consultation before calling the next one")
        order, called = self._promote_first_waiting(before)
        order = await self._write(clinic, before, order, touched=[called])
        logger.info("Called %s in clinic %s", called.id, clinic_id)
        return _Change(order[0])

    def _promote_first_waiting(self, order: Sequence[QueueEntry]) -> Tuple[List[QueueEntry], QueueEntry]:
        waiting = [entry for entry in order if entry.status in _WAITING]
        if not waiting:
            raise EmptyQueueError("No patients waiting")
        called = waiting[0].clone(status=QueueStatus.IN_CONSULTATION, called_at=self._clock())
        return positions.promote_to_head(self._replace(order, called), called.id), called

    async def advance(self, clinic_id: str) -> Optional[QueueEntry]:
        """Complete the current consultation, if any, then call the next patient.

        Returns the patient now in consultation, or ``None`` when finishing
        the current one emptied the queue.
        """
        return await self._mutate(clinic_id, self._advance, clinic_id)

    async def _advance(self, clinic_id: str) -> _Change:
        clinic = await self._directory.get(clinic_id)
        before = await self._store.list_active(clinic_id)
        order = list(before)
        departed: List[QueueEntry] = []
        current = next((e for e in before if e.status == QueueStatus.IN_CONSULTATION), None)
        if current is not None:
            departed.append(current.clone(status=QueueStatus.COMPLETED, completed_at=self._clock()))
            order = [entry for entry in order if entry.id != current.id]

        if not any(entry.status in _WAITING for entry in order):
            if not departed:
                raise EmptyQueueError("No patients waiting")
            await self._write(clinic, before, order, touched=departed)
            logger.info("Completed %s in clinic %s, queue is empty", current.id, clinic_id)
            return _Change(None, departed=departed)

        order, called = self._promote_first_waiting(order)
        order = await self._write(clinic, before, order, touched=departed + [called])
        logger.info("Advanced clinic %s to %s", clinic_id, called.id)
        return _Change(order[0], departed=departed)

    async def complete_current(self, clinic_id: str, entry_id: str) -> QueueEntry:
        return await self._mutate(clinic_id, self._complete_current, clinic_id, entry_id)

    async def _complete_current(self, clinic_id: str, entry_id: str) -> _Change:
        clinic = await self._directory.get(clinic_id)
        before = await self._store.list_active(clinic_id)
        entry = await self._require_active(clinic_id, before, entry_id)
        if entry.status != QueueStatus.IN_CONSULTATION:
            raise InvalidStateError("Queue entry is not in consultation")
        done = entry.clone(status=QueueStatus.COMPLETED, completed_at=self._clock())
        order = [item for item in before if item.id != entry_id]
        await self._write(clinic, before, order, touched=[done])
        logger.info("Completed %s in clinic %s", entry_id, clinic_id)
        return _Change(done, departed=[done])

    async def mark_no_show(self, clinic_id: str, entry_id: str) -> QueueEntry:
        return await self._mutate(clinic_id, self._finish, clinic_id, entry_id, QueueStatus.NO_SHOW)

    async def cancel(self, clinic_id: str, entry_id: str) -> QueueEntry:
        return await self._mutate(clinic_id, self._finish, clinic_id, entry_id, QueueStatus.CANCELLED)

    async def leave(self, entry_id: str) -> QueueEntry:
        """A patient leaves the queue from their own status page."""
        entry = await self._store.get_entry(entry_id)
        if entry is None:
            raise NotFoundError("Queue entry not found")
        return await self.cancel(entry.clinic_id, entry_id)

    async def _finish(self, clinic_id: str, entry_id: str, status: QueueStatus) -> _Change:
        clinic = await self._directory.get(clinic_id)
        before = await self._store.list_active(clinic_id)
        entry = await self._require_active(clinic_id, before, entry_id)
        final = entry.clone(status=status)
        order = [item for item in before if item.id != entry_id]
        await self._write(clinic, before, order, touched=[final])
        logger.info("Marked %s %s in clinic %s", entry_id, status.value, clinic_id)
        return _Change(final, departed=[final])

    async def remove(self, clinic_id: str, entry_id: str) -> None:
        """Delete an entry outright, e.g. one added by mistake."""
        return await self._mutate(clinic_id, self._remove, clinic_id, entry_id)

    async def _remove(self, clinic_id: str, entry_id: str) -> _Change:
        clinic = await self._directory.get(clinic_id)
        entry = await self._store.get_entry(entry_id)
        if entry is None or entry.clinic_id != clinic_id:
            raise NotFoundError("Queue entry not found")
        before = await self._store.list_active(clinic_id)
        order = [item for item in before if item.id != entry_id]
        order, writes = self._plan(clinic, before, order)
        await self._store.delete_entry(entry_id, writes)
        logger.info("Removed %s from clinic %s", entry_id, clinic_id)
        departed = [entry.clone(status=QueueStatus.CANCELLED)] if entry.is_active else []
        return _Change(None, departed=departed)

    # ----- ordering -----

    async def reorder(self, clinic_id: str, entry_id: str, direction: str) -> QueueEntry:
        """Swap an entry with its neighbour; a no-op when already first or last."""
        if direction not in positions.DIRECTIONS:
            raise ValidationError(f"Direction must be one of {', '.join(positions.DIRECTIONS)}")
        return await self._mutate(clinic_id, self._reorder, clinic_id, entry_id, direction)

    async def _reorder(self, clinic_id: str, entry_id: str, direction: str) -> _Change:
        clinic = await self._directory.get(clinic_id)
        before = await self._store.list_active(clinic_id)
        entry = await self._require_movable(clinic_id, before, entry_id)
        order = positions.move(before, entry_id, direction)
        return await self._apply_order(clinic, before, order, entry)

    async def move_to(self, clinic_id: str, entry_id: str, new_position: int) -> QueueEntry:
        """Move an entry to any slot of the queue."""
        return await self._mutate(clinic_id, self._move_to, clinic_id, entry_id, new_position)

    async def _move_to(self, clinic_id: str, entry_id: str, new_position: int) -> _Change:
        clinic = await self._directory.get(clinic_id)
        before = await self._store.list_active(clinic_id)
        entry = await self._require_movable(clinic_id, before, entry_id)
        order = positions.move_to(before, entry_id, new_position)
        return await self._apply_order(clinic, before, order, entry)

    async def _require_movable(self, clinic_id, before, entry_id) -> QueueEntry:
        entry = await self._require_active(clinic_id, before, entry_id)
        if entry.status == QueueStatus.IN_CONSULTATION:
            raise InvalidStateError("The patient in consultation cannot be moved")
        return entry

    async def _apply_order(self, clinic, before, order, entry) -> _Change:
        if [item.id for item in order] == [item.id for item in before]:
            return _Change(entry, dirty=False)
        order = await self._write(clinic, before, order)
        moved = order[positions.index_of(order, entry.id)]
        logger.info("Moved %s to position %d in clinic %s", entry.id, moved.position, clinic.id)
        return _Change(moved)

    # ----- notification -----

    async def notify(self, clinic_id: str, entry_id: str) -> QueueEntry:
        """Tell a patient they are about to be called.

        Only allowed within ``notify_at_position`` places of the front.
        Notifying an already notified patient changes nothing.
        """
        return await self._mutate(clinic_id, self._notify, clinic_id, entry_id)

    async def _notify(self, clinic_id: str, entry_id: str) -> _Change:
        clinic = await self._directory.get(clinic_id)
        before = await self._store.list_active(clinic_id)
        entry = await self._require_active(clinic_id, before, entry_id)
        if entry.status == QueueStatus.NOTIFIED:
            return _Change(entry, dirty=False)
        if entry.status == QueueStatus.IN_CONSULTATION:
            raise InvalidStateError("The patient is already in consultation")
        rank = positions.waiting_rank(before, entry_id)
        if rank > clinic.notify_at_position:
            raise InvalidStateError(
                f"Patient is {rank} places from the front; notification starts at {clinic.notify_at_position}"
            )
        notified = entry.clone(status=QueueStatus.NOTIFIED, notified_at=self._clock())
        order = await self._write(clinic, before, self._replace(before, notified), touched=[notified])
        return _Change(order[positions.index_of(order, entry_id)])

    # ----- bulk operations -----

    async def clear_queue(self, clinic_id: str) -> int:
        """Cancel every active entry; returns how many were cleared."""
        return await self._mutate(clinic_id, self._clear_queue, clinic_id)

    async def _clear_queue(self, clinic_id: str) -> _Change:
        await self._directory.get(clinic_id)
        before = await self._store.list_active(clinic_id)
        count = await self._store.bulk_transition(clinic_id, ACTIVE_STATUSES, QueueStatus.CANCELLED)
        logger.info("Cleared %d entries from clinic %s", count, clinic_id)
        departed = [entry.clone(status=QueueStatus.CANCELLED) for entry in before]
        return _Change(count, departed=departed)

    async def reset_stats(self, clinic_id: str) -> int:
        """Delete completed entries so the day's counters start over."""
        return await self._mutate(clinic_id, self._reset_stats, clinic_id)

    async def _reset_stats(self, clinic_id: str) -> _Change:
        await self._directory.get(clinic_id)
        count = await self._store.delete_by_status(clinic_id, QueueStatus.COMPLETED)
        logger.info("Reset stats for clinic %s (%d completed entries removed)", clinic_id, count)
        return _Change(count)

    async def set_doctor_presence(self, clinic_id: str, present: bool) -> Clinic:
        return await self._mutate(clinic_id, self._set_doctor_presence, clinic_id, present)

    async def _set_doctor_presence(self, clinic_id: str, present: bool) -> _Change:
        clinic = await self._directory.set_doctor_presence(clinic_id, present)
        await self._broadcaster.publish_presence(clinic_id, present)
        logger.info("Doctor %s in clinic %s", "present" if present else "absent", clinic_id)
        return _Change(clinic)
