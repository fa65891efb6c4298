import asyncio
from datetime import timedelta

import pytest

from broadcast import clinic_room, patient_room, patients_room
from conftest import drain, phone
from errors import (
    AlreadyCheckedInError,
    ConflictError,
    EmptyQueueError,
    InvalidStateError,
    NotFoundError,
    StoreConflictError,
    StoreUnavailableError,
    ValidationError,
)
from models import CheckInMethod, QueueEntry, QueueStatus
from services import format_phone


def positions_of(system, clinic_id):
    return [e.position for e in system.active(clinic_id)]


def order_of(system, clinic_id):
    return [e.id for e in system.active(clinic_id)]


# --- phone numbers ---

@pytest.mark.parametrize(
    "raw",
    ["20123456", "20 123 456", "+216 20 123 456", "0021620123456", "216-20-123-456"],
)
def test_format_phone_accepts_local_and_international(raw):
    assert format_phone(raw) == "+21620123456"


@pytest.mark.parametrize("raw", ["", "   ", "2012345", "abc12345", "+33 6 12 34 56 78", None])
def test_format_phone_rejects_malformed(raw):
    with pytest.raises(ValidationError):
        format_phone(raw)


# --- add_patient ---

def test_add_patient_appends_with_contiguous_positions(system, clinic):
    first = system.add(clinic.id, phone(1), "Amira")
    second = system.add(clinic.id, phone(2))
    third = system.add(clinic.id, phone(3), "  ")

    assert (first.position, second.position, third.position) == (1, 2, 3)
    assert first.patient_phone == "+21620000001"
    assert first.patient_name == "Amira"
    assert third.patient_name is None
    assert first.check_in_method == CheckInMethod.MANUAL
    assert positions_of(system, clinic.id) == [1, 2, 3]


def test_add_patient_notifies_entries_near_the_front(system, clinic):
    for n in range(3):
        system.add(clinic.id, phone(n))
    statuses = [e.status for e in system.active(clinic.id)]
    assert statuses == [QueueStatus.NOTIFIED, QueueStatus.NOTIFIED, QueueStatus.WAITING]
    assert system.active(clinic.id)[0].notified_at == system.clock()


def test_invalid_phone_is_rejected_without_writing(system, clinic):
    with pytest.raises(ValidationError):
        system.add(clinic.id, "12-ab")
    assert system.active(clinic.id) == []


def test_unknown_check_in_method(system, clinic):
    with pytest.raises(ValidationError):
        system.add(clinic.id, phone(1), check_in_method="CARRIER_PIGEON")


def test_add_patient_to_unknown_or_inactive_clinic(system):
    with pytest.raises(NotFoundError):
        system.add("missing", phone(1))
    closed = system.clinic(name="Closed", is_active=False)
    with pytest.raises(NotFoundError):
        system.add(closed.id, phone(1))


def test_duplicate_check_in_returns_existing_entry(system, clinic):
    first = system.add(clinic.id, phone(1))
    with pytest.raises(AlreadyCheckedInError) as excinfo:
        system.add(clinic.id, "+216 2000 0001")
    assert excinfo.value.code == "ALREADY_CHECKED_IN"
    assert excinfo.value.data.id == first.id
    assert len(system.active(clinic.id)) == 1


def test_same_phone_can_return_after_leaving(system, clinic):
    first = system.add(clinic.id, phone(1))
    system.run(system.service.cancel(clinic.id, first.id))
    again = system.add(clinic.id, phone(1))
    assert again.id != first.id
    assert again.position == 1


def test_yesterdays_entry_does_not_block_check_in(system, clinic, clock):
    system.add(clinic.id, phone(1))
    clock.advance(minutes=24 * 60)
    second = system.add(clinic.id, phone(1))
    assert second.position == 2


def test_backdated_manual_entry_is_placed_by_arrival(system, clinic, clock):
    early = clock()
    clock.advance(minutes=10)
    system.add(clinic.id, phone(1))
    clock.advance(minutes=10)
    system.add(clinic.id, phone(2))
    late_entry = system.add(clinic.id, phone(3), arrived_at=early + timedelta(minutes=5))
    assert late_entry.position == 1
    assert positions_of(system, clinic.id) == [1, 2, 3]


def test_priority_patient_goes_behind_consultation(system, clinic):
    for n in range(3):
        system.add(clinic.id, phone(n))
    current = system.run(system.service.call_next(clinic.id))
    urgent = system.add(clinic.id, phone(9), priority=True)
    assert urgent.position == 2
    assert system.active(clinic.id)[0].id == current.id


def test_concurrent_check_ins_get_distinct_positions(system, clinic):
    async def burst():
        return await asyncio.gather(
            *(system.service.add_patient(clinic.id, phone(n)) for n in range(10))
        )

    entries = system.run(burst())
    assert sorted(e.position for e in entries) == list(range(1, 11))
    assert positions_of(system, clinic.id) == list(range(1, 11))


def test_concurrent_duplicate_check_in_creates_one_entry(system, clinic):
    async def burst():
        return await asyncio.gather(
            system.service.add_patient(clinic.id, phone(1)),
            system.service.add_patient(clinic.id, phone(1)),
            return_exceptions=True,
        )

    results = system.run(burst())
    assert sum(isinstance(r, AlreadyCheckedInError) for r in results) == 1
    assert len(system.active(clinic.id)) == 1


# --- consultation flow ---

def test_call_complete_scenario(system, clinic, clock):
    p1 = system.add(clinic.id, phone(1))
    p2 = system.add(clinic.id, phone(2))
    p3 = system.add(clinic.id, phone(3))

    clock.advance(minutes=5)
    called = system.run(system.service.call_next(clinic.id))
    assert called.id == p1.id
    assert called.status == QueueStatus.IN_CONSULTATION
    assert called.position == 1
    assert called.called_at == clock()

    active = {e.id: e for e in system.active(clinic.id)}
    assert active[p3.id].status == QueueStatus.NOTIFIED

    with pytest.raises(ConflictError):
        system.run(system.service.call_next(clinic.id))

    clock.advance(minutes=12)
    done = system.run(system.service.complete_current(clinic.id, p1.id))
    assert done.status == QueueStatus.COMPLETED
    assert done.completed_at == clock()
    assert order_of(system, clinic.id) == [p2.id, p3.id]
    assert positions_of(system, clinic.id) == [1, 2]


def test_call_next_on_empty_queue(system, clinic):
    with pytest.raises(EmptyQueueError):
        system.run(system.service.call_next(clinic.id))


def test_advance_completes_current_and_calls_next(system, clinic):
    p1 = system.add(clinic.id, phone(1))
    p2 = system.add(clinic.id, phone(2))

    first = system.run(system.service.advance(clinic.id))
    assert first.id == p1.id

    second = system.run(system.service.advance(clinic.id))
    assert second.id == p2.id
    assert second.position == 1
    assert system.run(system.store.get_entry(p1.id)).status == QueueStatus.COMPLETED

    assert system.run(system.service.advance(clinic.id)) is None
    assert system.active(clinic.id) == []
    with pytest.raises(EmptyQueueError):
        system.run(system.service.advance(clinic.id))


def test_complete_requires_consultation(system, clinic):
    waiting = system.add(clinic.id, phone(1))
    with pytest.raises(InvalidStateError):
        system.run(system.service.complete_current(clinic.id, waiting.id))
    with pytest.raises(NotFoundError):
        system.run(system.service.complete_current(clinic.id, "missing"))

    system.run(system.service.call_next(clinic.id))
    system.run(system.service.complete_current(clinic.id, waiting.id))
    with pytest.raises(InvalidStateError):
        system.run(system.service.complete_current(clinic.id, waiting.id))


def test_entry_of_another_clinic_is_not_found(system, clinic):
    other = system.clinic(name="Other")
    entry = system.add(other.id, phone(1))
    with pytest.raises(NotFoundError):
        system.run(system.service.cancel(clinic.id, entry.id))


def test_no_show_closes_the_gap(system, clinic):
    p1 = system.add(clinic.id, phone(1))
    p2 = system.add(clinic.id, phone(2))
    p3 = system.add(clinic.id, phone(3))

    gone = system.run(system.service.mark_no_show(clinic.id, p2.id))
    assert gone.status == QueueStatus.NO_SHOW
    assert order_of(system, clinic.id) == [p1.id, p3.id]
    assert positions_of(system, clinic.id) == [1, 2]


def test_patient_can_leave_from_status_page(system, clinic):
    p1 = system.add(clinic.id, phone(1))
    p2 = system.add(clinic.id, phone(2))
    left = system.run(system.service.leave(p1.id))
    assert left.status == QueueStatus.CANCELLED
    assert system.active(clinic.id)[0].id == p2.id
    assert system.active(clinic.id)[0].position == 1

    with pytest.raises(InvalidStateError):
        system.run(system.service.leave(p1.id))
    with pytest.raises(NotFoundError):
        system.run(system.service.leave("missing"))


def test_remove_deletes_the_row(system, clinic):
    p1 = system.add(clinic.id, phone(1))
    p2 = system.add(clinic.id, phone(2))
    system.run(system.service.remove(clinic.id, p1.id))
    assert system.run(system.store.get_entry(p1.id)) is None
    assert order_of(system, clinic.id) == [p2.id]
    assert positions_of(system, clinic.id) == [1]
    with pytest.raises(NotFoundError):
        system.run(system.service.remove(clinic.id, p1.id))


# --- ordering ---

def test_reorder_swaps_neighbours(system, clinic):
    p1, p2, p3 = (system.add(clinic.id, phone(n)) for n in range(3))
    moved = system.run(system.service.reorder(clinic.id, p3.id, "up"))
    assert moved.position == 2
    assert order_of(system, clinic.id) == [p1.id, p3.id, p2.id]
    assert positions_of(system, clinic.id) == [1, 2, 3]


def test_reorder_at_front_is_a_silent_no_op(system, clinic):
    p1 = system.add(clinic.id, phone(1))
    system.add(clinic.id, phone(2))
    dashboard = system.registry.subscribe(clinic_room(clinic.id))

    result = system.run(system.service.reorder(clinic.id, p1.id, "up"))
    assert result.position == 1
    assert drain(dashboard) == []


def test_reorder_rejects_bad_direction_before_store_access(system, clinic, monkeypatch):
    p1 = system.add(clinic.id, phone(1))

    async def boom(*args):
        raise AssertionError("store must not be read")

    monkeypatch.setattr(system.store, "list_active", boom)
    with pytest.raises(ValidationError):
        system.run(system.service.reorder(clinic.id, p1.id, "left"))


def test_patient_in_consultation_cannot_be_moved(system, clinic):
    p1 = system.add(clinic.id, phone(1))
    p2 = system.add(clinic.id, phone(2))
    system.run(system.service.call_next(clinic.id))
    with pytest.raises(InvalidStateError):
        system.run(system.service.reorder(clinic.id, p1.id, "down"))
    unchanged = system.run(system.service.reorder(clinic.id, p2.id, "up"))
    assert unchanged.position == 2


def test_move_to_any_slot(system, clinic):
    entries = [system.add(clinic.id, phone(n)) for n in range(4)]
    moved = system.run(system.service.move_to(clinic.id, entries[3].id, 1))
    assert moved.position == 1
    assert order_of(system, clinic.id) == [entries[3].id, entries[0].id, entries[1].id, entries[2].id]
    with pytest.raises(ValidationError):
        system.run(system.service.move_to(clinic.id, entries[0].id, 9))


# --- notification ---

def test_notify_within_threshold(system, clinic, clock):
    waiting = QueueEntry(clinic_id=clinic.id, patient_phone="+21620000001", position=1, arrived_at=clock())
    system.run(system.store.apply([waiting]))

    notified = system.run(system.service.notify(clinic.id, waiting.id))
    assert notified.status == QueueStatus.NOTIFIED
    assert notified.notified_at == clock()


def test_notify_is_idempotent(system, clinic):
    p1 = system.add(clinic.id, phone(1))
    before = system.active(clinic.id)[0]
    again = system.run(system.service.notify(clinic.id, p1.id))
    assert again.status == QueueStatus.NOTIFIED
    assert again.notified_at == before.notified_at


def test_notify_out_of_range_or_in_consultation(system, clinic):
    p1, p2, p3 = (system.add(clinic.id, phone(n)) for n in range(3))
    with pytest.raises(InvalidStateError):
        system.run(system.service.notify(clinic.id, p3.id))
    system.run(system.service.call_next(clinic.id))
    with pytest.raises(InvalidStateError):
        system.run(system.service.notify(clinic.id, p1.id))


# --- bulk operations ---

def test_clear_queue_cancels_everything(system, clinic):
    entries = [system.add(clinic.id, phone(n)) for n in range(3)]
    page = system.registry.subscribe(patient_room(entries[0].id))

    assert system.run(system.service.clear_queue(clinic.id)) == 3
    assert system.active(clinic.id) == []
    assert system.run(system.store.get_entry(entries[2].id)).status == QueueStatus.CANCELLED
    assert drain(page)[-1]["data"] == {"position": 0, "status": "CANCELLED"}


def test_reset_stats_drops_completed_entries(system, clinic):
    p1 = system.add(clinic.id, phone(1))
    system.run(system.service.advance(clinic.id))
    system.run(system.service.advance(clinic.id))
    assert system.run(system.stats.get_queue_stats(clinic.id)).seen == 1

    assert system.run(system.service.reset_stats(clinic.id)) == 1
    assert system.run(system.store.get_entry(p1.id)) is None
    assert system.run(system.stats.get_queue_stats(clinic.id)).seen == 0


def test_doctor_presence_is_broadcast_to_patient_pages(system, clinic):
    pages = system.registry.subscribe(patients_room(clinic.id))
    updated = system.run(system.service.set_doctor_presence(clinic.id, True))
    assert updated.is_doctor_present is True
    assert system.run(system.directory.get(clinic.id)).is_doctor_present is True
    assert drain(pages) == [
        {"event": "doctor:presence", "data": {"clinicId": clinic.id, "isDoctorPresent": True}}
    ]
    with pytest.raises(NotFoundError):
        system.run(system.service.set_doctor_presence("missing", True))


# --- patient status ---

def test_patient_status_estimates(system, clinic):
    p1 = system.add(clinic.id, phone(1))
    p2 = system.add(clinic.id, phone(2))

    status = system.run(system.service.get_patient_status(p2.id))
    assert status.estimated_wait_mins == 2 * clinic.avg_consultation_mins
    assert status.clinic_name == clinic.name

    system.run(system.service.call_next(clinic.id))
    assert system.run(system.service.get_patient_status(p1.id)).estimated_wait_mins == 0

    system.run(system.service.complete_current(clinic.id, p1.id))
    finished = system.run(system.service.get_patient_status(p1.id))
    assert finished.status == QueueStatus.COMPLETED
    assert finished.estimated_wait_mins is None

    with pytest.raises(NotFoundError):
        system.run(system.service.get_patient_status("missing"))


# --- store conflicts ---

def test_store_conflict_is_retried_once(system, clinic, monkeypatch):
    original = system.store.apply
    calls = []

    async def flaky(entries):
        calls.append(len(entries))
        if len(calls) == 1:
            raise StoreConflictError("lost the race")
        return await original(entries)

    monkeypatch.setattr(system.store, "apply", flaky)
    entry = system.add(clinic.id, phone(1))
    assert len(calls) == 2
    assert order_of(system, clinic.id) == [entry.id]


def test_repeated_store_conflict_surfaces_without_broadcast(system, clinic, monkeypatch):
    calls = []

    async def always_conflict(entries):
        calls.append(1)
        raise StoreConflictError("lost the race")

    monkeypatch.setattr(system.store, "apply", always_conflict)
    dashboard = system.registry.subscribe(clinic_room(clinic.id))
    with pytest.raises(StoreConflictError):
        system.add(clinic.id, phone(1))
    assert len(calls) == 2
    assert drain(dashboard) == []


# --- invariants over a busy morning ---

def test_positions_stay_contiguous_through_a_session(system, clinic, clock):
    service = system.service
    entries = [system.add(clinic.id, phone(n)) for n in range(6)]
    steps = [
        lambda: service.call_next(clinic.id),
        lambda: service.reorder(clinic.id, entries[4].id, "up"),
        lambda: service.mark_no_show(clinic.id, entries[2].id),
        lambda: service.advance(clinic.id),
        lambda: service.move_to(clinic.id, entries[5].id, 2),
        lambda: service.cancel(clinic.id, entries[3].id),
        lambda: service.remove(clinic.id, entries[1].id),
        lambda: service.add_patient(clinic.id, phone(7)),
        lambda: service.advance(clinic.id),
    ]
    for step in steps:
        clock.advance(minutes=3)
        system.run(step())
        active = system.active(clinic.id)
        assert [e.position for e in active] == list(range(1, len(active) + 1))
        in_consultation = [e for e in active if e.status == QueueStatus.IN_CONSULTATION]
        assert len(in_consultation) <= 1
        if in_consultation:
            assert in_consultation[0].position == 1


def test_store_timeout_surfaces_once_without_broadcast(system, clinic, monkeypatch):
    monkeypatch.setattr(system.store, "_timeout", 0.1)
    attempts = []
    original = system.service._add_patient

    async def counted(*args):
        attempts.append(args)
        return await original(*args)

    monkeypatch.setattr(system.service, "_add_patient", counted)
    dashboard = system.registry.subscribe(clinic_room(clinic.id))

    # another writer holds the store longer than the timeout
    system.store._lock.acquire()
    try:
        with pytest.raises(StoreUnavailableError) as excinfo:
            system.add(clinic.id, phone(1))
    finally:
        system.store._lock.release()

    assert excinfo.value.code == "STORE_UNAVAILABLE"
    assert len(attempts) == 1
    assert drain(dashboard) == []
    assert system.active(clinic.id) == []

    monkeypatch.setattr(system.store, "_timeout", 5)
    assert system.add(clinic.id, phone(2)).position == 1
