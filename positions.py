"""Queue ordering helpers.

Everything here is a pure function over a clinic's active entries in their
intended order.  Nothing touches the database: the queue service reads the
active entries, rearranges them with these helpers, renumbers them with
:func:`recompute` and writes back only what :func:`changed` reports.

Ordering rules:

* new walk-ins go to the tail (arrival order);
* once entries exist they are never re-sorted by time, so manual moves by
  staff stick;
* an entry in consultation is always the head of the sequence and nothing
  is moved or inserted ahead of it.
"""

from __future__ import annotations

from typing import Dict, List, Optional, Sequence

from errors import ValidationError
from models import QueueEntry, QueueStatus

UP = "up"
DOWN = "down"
DIRECTIONS = (UP, DOWN)

_WAITING = (QueueStatus.WAITING, QueueStatus.NOTIFIED)


def recompute(entries: Sequence[QueueEntry]) -> List[QueueEntry]:
    """Return copies of ``entries`` numbered 1..N in the given order."""
    return [entry.clone(position=index) for index, entry in enumerate(entries, start=1)]


def next_position(entries: Sequence[QueueEntry]) -> int:
    return max((entry.position for entry in entries), default=0) + 1


def changed(before: Sequence[QueueEntry], after: Sequence[QueueEntry]) -> List[QueueEntry]:
    """Entries of ``after`` that are new or whose position moved."""
    previous: Dict[str, int] = {entry.id: entry.position for entry in before}
    return [entry for entry in after if previous.get(entry.id) != entry.position]


def _pinned(entries: Sequence[QueueEntry]) -> int:
    # Number of leading slots nobody may be moved into.
    if entries and entries[0].status == QueueStatus.IN_CONSULTATION:
        return 1
    return 0


def index_of(entries: Sequence[QueueEntry], entry_id: str) -> Optional[int]:
    for index, entry in enumerate(entries):
        if entry.id == entry_id:
            return index
    return None


def move(entries: Sequence[QueueEntry], entry_id: str, direction: str) -> List[QueueEntry]:
    """Swap an entry with its neighbour.

    At a boundary (already first or last, or the neighbour is the patient in
    consultation) the order is returned unchanged.
    """
    if direction not in DIRECTIONS:
        raise ValidationError(f"Direction must be one of {', '.join(DIRECTIONS)}")
    order = list(entries)
    index = index_of(order, entry_id)
    if index is None:
        return order
    target = index - 1 if direction == UP else index + 1
    floor = _pinned(order)
    if index < floor or target < floor or target >= len(order):
        return order
    order[index], order[target] = order[target], order[index]
    return order


def move_to(entries: Sequence[QueueEntry], entry_id: str, new_position: int) -> List[QueueEntry]:
    order = list(entries)
    index = index_of(order, entry_id)
    if index is None:
        return order
    if not 1 <= new_position <= len(order):
        raise ValidationError(f"Position must be between 1 and {len(order)}")
    if new_position <= _pinned(order) and index != 0:
        raise ValidationError("Cannot move ahead of the patient in consultation")
    entry = order.pop(index)
    order.insert(new_position - 1, entry)
    return order


def insert_by_arrival(entries: Sequence[QueueEntry], entry: QueueEntry) -> List[QueueEntry]:
    """Place ``entry`` after the last entry that arrived no later than it.

    A patient arriving now lands at the tail.  Back-dated manual entries
    slide forward past later arrivals, but never past the head in
    consultation.
    """
    order = list(entries)
    slot = len(order)
    floor = _pinned(order)
    while slot > floor and order[slot - 1].arrived_at > entry.arrived_at:
        slot -= 1
    order.insert(slot, entry)
    return order


def insert_priority(entries: Sequence[QueueEntry], entry: QueueEntry) -> List[QueueEntry]:
    """Emergency insertion: first in line, right behind the consultation."""
    order = list(entries)
    order.insert(_pinned(order), entry)
    return order


def promote_to_head(entries: Sequence[QueueEntry], entry_id: str) -> List[QueueEntry]:
    order = list(entries)
    index = index_of(order, entry_id)
    if index:
        order.insert(0, order.pop(index))
    return order


def waiting_rank(entries: Sequence[QueueEntry], entry_id: str) -> Optional[int]:
    """1-based rank among entries still waiting to be called."""
    rank = 0
    for entry in entries:
        if entry.status in _WAITING:
            rank += 1
            if entry.id == entry_id:
                return rank
    return None


def notify_candidates(entries: Sequence[QueueEntry], threshold: int) -> List[QueueEntry]:
    """WAITING entries that are within ``threshold`` places of being called."""
    candidates = []
    rank = 0
    for entry in entries:
        if entry.status not in _WAITING:
            continue
        rank += 1
        if rank > threshold:
            break
        if entry.status == QueueStatus.WAITING:
            candidates.append(entry)
    return candidates
