"""Today's queue statistics for a clinic dashboard.

* waiting: entries still waiting to be called.  When the doctor is marked
  absent the entry in consultation is counted as waiting too; this only
  changes the number shown, never the stored status.
* seen: entries completed today.
* avgWait / maxWait: arrival to call, in whole minutes, over today's
  completed entries.
* lastConsultationMins: call to completion of the latest completed entry.
* noShows: entries marked no-show today.

Durations are ``None`` when there is nothing to average, so "no data" is
never shown as "0 minutes".
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List, Optional, Sequence
from zoneinfo import ZoneInfo

from cache import CacheKeys, CacheTTL
from models import TERMINAL_STATUSES, QueueEntry, QueueStatus, utcnow
from schemas import QueueStats

logger = logging.getLogger(__name__)


def start_of_day(now: datetime, tz: ZoneInfo) -> datetime:
    """Local midnight of ``now`` (naive UTC) in ``tz``, as naive UTC."""
    local = now.replace(tzinfo=timezone.utc).astimezone(tz)
    midnight = local.replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight.astimezone(timezone.utc).replace(tzinfo=None)


def _minutes(start: datetime, end: datetime) -> int:
    return max(0, round((end - start).total_seconds() / 60))


def compute_stats(
    active: Sequence[QueueEntry],
    history: Sequence[QueueEntry],
    *,
    doctor_present: bool,
    since: datetime,
) -> QueueStats:
    waiting_statuses = {QueueStatus.WAITING, QueueStatus.NOTIFIED}
    if not doctor_present:
        waiting_statuses.add(QueueStatus.IN_CONSULTATION)
    waiting = sum(1 for entry in active if entry.status in waiting_statuses)

    completed: List[QueueEntry] = [
        entry
        for entry in history
        if entry.status == QueueStatus.COMPLETED and (entry.completed_at or entry.arrived_at) >= since
    ]
    no_shows = sum(
        1 for entry in history if entry.status == QueueStatus.NO_SHOW and entry.arrived_at >= since
    )

    waits = [_minutes(entry.arrived_at, entry.called_at) for entry in completed if entry.called_at]
    avg_wait: Optional[int] = round(sum(waits) / len(waits)) if waits else None
    max_wait: Optional[int] = max(waits) if waits else None

    timed = [entry for entry in completed if entry.called_at and entry.completed_at]
    last_consultation: Optional[int] = None
    if timed:
        last = max(timed, key=lambda entry: entry.completed_at)
        last_consultation = _minutes(last.called_at, last.completed_at)

    return QueueStats(
        waiting=waiting,
        seen=len(completed),
        avg_wait=avg_wait,
        last_consultation_mins=last_consultation,
        no_shows=no_shows,
        max_wait=max_wait,
    )


class StatsService:
    def __init__(
        self,
        store,
        cache,
        directory,
        *,
        clock=utcnow,
        tz: str = "Africa/Tunis",
        ttl: float = CacheTTL.STATS,
    ) -> None:
        self._store = store
        self._cache = cache
        self._directory = directory
        self._clock = clock
        self._tz = ZoneInfo(tz)
        self._ttl = ttl

    def today_start(self) -> datetime:
        return start_of_day(self._clock(), self._tz)

    async def get_queue_stats(self, clinic_id: str) -> QueueStats:
        cached = await self._cache.get(CacheKeys.stats(clinic_id))
        if cached is not None:
            return QueueStats.model_validate(cached)
        return await self.refresh(clinic_id)

    async def refresh(self, clinic_id: str) -> QueueStats:
        """Recompute from the store and overwrite the cached value."""
        clinic = await self._directory.get(clinic_id)
        since = self.today_start()
        active = await self._store.list_active(clinic_id)
        history = await self._store.list_since(clinic_id, since, TERMINAL_STATUSES)
        stats = compute_stats(
            active, history, doctor_present=clinic.is_doctor_present, since=since
        )
        await self._cache.set(CacheKeys.stats(clinic_id), stats.dump(), self._ttl)
        return stats
