#!/usr/bin/env python3
"""
Nightly queue reset

Once a day, at RESET_HOUR in CLINIC_TIMEZONE, every active clinic has its
queue cleared and its doctor marked absent; dashboards and patient pages
are told through ``doctor:presence``.

The worker runs inside the web process when RESET_ENABLED is set, or as a
separate process:

    python reset_worker.py            # loop forever
    python reset_worker.py --once     # reset now and exit

Run standalone with REDIS_URL set so the broadcasts reach the web
processes' clients.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from datetime import datetime, timedelta, timezone
from typing import Dict
from zoneinfo import ZoneInfo

from errors import QueueError
from models import utcnow

logger = logging.getLogger(__name__)


async def run_nightly_reset(directory, queue_service) -> Dict[str, int]:
    """Clear every active clinic's queue and mark its doctor absent.

    Returns the number of entries cleared per clinic id.  A clinic that
    fails is logged and skipped so the others still get reset.
    """
    cleared: Dict[str, int] = {}
    clinics = await directory.list_active()
    logger.info("[Nightly reset] Starting for %d clinic(s)", len(clinics))
    for clinic in clinics:
        try:
            cleared[clinic.id] = await queue_service.clear_queue(clinic.id)
            await queue_service.set_doctor_presence(clinic.id, False)
        except QueueError as e:
            logger.error("[Nightly reset] %s (%s) failed: %s", clinic.name, clinic.id, e)
            continue
        logger.info(
            "[Nightly reset] %s: cleared %d entries, doctor set absent", clinic.name, cleared[clinic.id]
        )
    logger.info("[Nightly reset] Complete. Reset %d clinic(s).", len(cleared))
    return cleared


def seconds_until(hour: int, tz: ZoneInfo, now: datetime) -> float:
    """Seconds from ``now`` (naive UTC) to the next ``hour``:00 local time."""
    local = now.replace(tzinfo=timezone.utc).astimezone(tz)
    target = local.replace(hour=hour, minute=0, second=0, microsecond=0)
    if target <= local:
        target = (target + timedelta(days=1)).replace(hour=hour)
    return (target - local).total_seconds()


class NightlyResetWorker:
    def __init__(self, directory, queue_service, *, hour: int = 0, tz: str = "Africa/Tunis", clock=utcnow):
        self.directory = directory
        self.queue_service = queue_service
        self.hour = hour
        self.tz = ZoneInfo(tz)
        self.clock = clock
        self._task = None

    async def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self.run_forever())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def run_once(self) -> Dict[str, int]:
        return await run_nightly_reset(self.directory, self.queue_service)

    async def run_forever(self) -> None:
        logger.info("Nightly queue reset scheduled at %02d:00 (%s)", self.hour, self.tz.key)
        while True:
            delay = seconds_until(self.hour, self.tz, self.clock())
            await asyncio.sleep(delay)
            try:
                await self.run_once()
            except QueueError as e:
                logger.error("[Nightly reset] Could not list clinics: %s", e)


async def main(once: bool = False) -> None:
    from main import build_components

    components = build_components()
    await components.start()
    worker = NightlyResetWorker(
        components.directory,
        components.queue_service,
        hour=components.settings.RESET_HOUR,
        tz=components.settings.CLINIC_TIMEZONE,
    )
    try:
        if once:
            await worker.run_once()
        else:
            await worker.run_forever()
    finally:
        await components.stop()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    try:
        asyncio.run(main(once="--once" in sys.argv[1:]))
    except KeyboardInterrupt:
        logger.info("Reset worker stopped")
