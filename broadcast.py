"""Real-time fan-out of queue state to dashboards and patient pages.

Rooms:

* ``clinic:{clinic_id}`` - the clinic dashboard, receives ``queue:updated``
  with the full ``{queue, stats}`` snapshot;
* ``clinic:{clinic_id}:patients`` - every patient page of a clinic,
  receives ``doctor:presence``;
* ``patient:{entry_id}`` - one patient page, receives ``patient:called``
  with ``{position, status}``.

Delivery is fire-and-forget.  A publish never raises into the mutation
that triggered it: failures are logged as ``BROADCAST_FAILURE`` and a
client that missed a message catches up on its next resync.  Messages for
one room are queued per subscriber in publish order.

When Redis is configured every message is also published on
``doctorq:{room}`` so other processes (a standalone reset worker, other
web instances) reach the clients connected here through
:class:`RedisRelay`.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from collections import defaultdict
from typing import Any, Dict, Iterable, Optional, Set

from redis.exceptions import RedisError

from cache import CacheKeys, CacheTTL
from errors import BROADCAST_FAILURE, QueueError
from models import QueueEntry
from schemas import PatientUpdate, PresenceUpdate, QueueEntryOut, QueueSnapshot

logger = logging.getLogger(__name__)

QUEUE_UPDATED = "queue:updated"
PATIENT_CALLED = "patient:called"
DOCTOR_PRESENCE = "doctor:presence"

REDIS_PREFIX = "doctorq:"


def clinic_room(clinic_id: str) -> str:
    return f"clinic:{clinic_id}"


def patients_room(clinic_id: str) -> str:
    return f"clinic:{clinic_id}:patients"


def patient_room(entry_id: str) -> str:
    return f"patient:{entry_id}"


class Subscription:
    """One connected client's mailbox.

    The buffer is bounded; when a slow client falls behind the oldest
    message is dropped, since the next snapshot supersedes it anyway.
    """

    def __init__(self, room: str, maxsize: int = 100) -> None:
        self.room = room
        self.dropped = 0
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)

    def deliver(self, message: Optional[Dict[str, Any]]) -> None:
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(message)

    async def get(self) -> Optional[Dict[str, Any]]:
        """Next message, or ``None`` once the registry has shut down."""
        return await self._queue.get()

    def close(self) -> None:
        self.deliver(None)


class ChannelRegistry:
    """Which subscriber is in which room, for this process only.

    Once stopped the registry delivers nothing, and a late subscriber gets
    a subscription that is already closed.
    """

    def __init__(self, buffer: int = 100) -> None:
        self._buffer = buffer
        self._rooms: Dict[str, Set[Subscription]] = defaultdict(set)
        self.closed = False

    async def start(self) -> None:
        self.closed = False

    async def stop(self) -> None:
        self.closed = True
        for subscriptions in self._rooms.values():
            for subscription in subscriptions:
                subscription.close()
        self._rooms.clear()

    def subscribe(self, room: str) -> Subscription:
        subscription = Subscription(room, self._buffer)
        if self.closed:
            subscription.close()
            return subscription
        self._rooms[room].add(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        members = self._rooms.get(subscription.room)
        if members is None:
            return
        members.discard(subscription)
        if not members:
            del self._rooms[subscription.room]

    def subscriber_count(self, room: str) -> int:
        return len(self._rooms.get(room, ()))

    def publish(self, room: str, event: str, payload: Any) -> int:
        """Deliver to every subscriber of ``room``; returns how many."""
        members = self._rooms.get(room)
        if self.closed or not members:
            return 0
        message = {"event": event, "data": payload}
        for subscription in list(members):
            subscription.deliver(message)
        return len(members)


class Broadcaster:
    def __init__(
        self,
        registry: ChannelRegistry,
        store,
        stats,
        cache,
        *,
        redis_client=None,
        ttl: float = CacheTTL.QUEUE,
        origin: Optional[str] = None,
    ) -> None:
        self._registry = registry
        self._store = store
        self._stats = stats
        self._cache = cache
        self._redis = redis_client
        self._ttl = ttl
        self.origin = origin or uuid.uuid4().hex

    async def snapshot(self, clinic_id: str) -> Dict[str, Any]:
        """The ``{queue, stats}`` payload, read through ``queue:{clinic_id}``."""
        cached = await self._cache.get(CacheKeys.queue(clinic_id))
        if cached is not None:
            return cached
        return await self.refresh(clinic_id)

    async def refresh(self, clinic_id: str) -> Dict[str, Any]:
        """Build the snapshot from the store and overwrite the cached one.

        Broadcasts go through here so an older snapshot cached by a
        concurrent reader is never sent.
        """
        entries = await self._store.list_active(clinic_id)
        stats = await self._stats.refresh(clinic_id)
        payload = QueueSnapshot(
            queue=[QueueEntryOut.model_validate(entry) for entry in entries],
            stats=stats,
        ).dump()
        await self._cache.set(CacheKeys.queue(clinic_id), payload, self._ttl)
        return payload

    async def publish_queue(self, clinic_id: str, departed: Iterable[QueueEntry] = ()) -> None:
        """Send the snapshot to the dashboard and each patient its own position.

        ``departed`` are entries that just left the active queue; their pages
        get position 0 with the final status.
        """
        try:
            payload = await self.refresh(clinic_id)
        except QueueError as e:
            logger.warning("%s: no snapshot for clinic %s: %s", BROADCAST_FAILURE, clinic_id, e)
            return
        await self._emit(clinic_room(clinic_id), QUEUE_UPDATED, payload)
        for item in payload["queue"]:
            update = {"position": item["position"], "status": item["status"]}
            await self._emit(patient_room(item["id"]), PATIENT_CALLED, update)
        for entry in departed:
            update = PatientUpdate(position=0, status=entry.status).dump()
            await self._emit(patient_room(entry.id), PATIENT_CALLED, update)

    async def publish_presence(self, clinic_id: str, present: bool) -> None:
        payload = PresenceUpdate(clinic_id=clinic_id, is_doctor_present=present).dump()
        await self._emit(clinic_room(clinic_id), DOCTOR_PRESENCE, payload)
        await self._emit(patients_room(clinic_id), DOCTOR_PRESENCE, payload)

    async def _emit(self, room: str, event: str, payload: Any) -> None:
        try:
            delivered = self._registry.publish(room, event, payload)
        except Exception:
            logger.exception("%s: %s to %s", BROADCAST_FAILURE, event, room)
            return
        if delivered:
            logger.debug("Emitted %s to %s (%d clients)", event, room, delivered)
        else:
            logger.debug("Emitted %s to %s (no clients)", event, room)

        if self._redis is not None:
            envelope = json.dumps({"origin": self.origin, "event": event, "data": payload})
            try:
                await self._redis.publish(REDIS_PREFIX + room, envelope)
            except RedisError as e:
                logger.warning("%s: redis publish %s to %s: %s", BROADCAST_FAILURE, event, room, e)


class RedisRelay:
    """Feed messages published by other processes into the local rooms."""

    def __init__(self, registry: ChannelRegistry, client, origin: str) -> None:
        self._registry = registry
        self._client = client
        self._origin = origin
        self._pubsub = None
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        self._pubsub = self._client.pubsub()
        try:
            await self._pubsub.psubscribe(REDIS_PREFIX + "*")
        except RedisError as e:
            logger.warning("Redis relay disabled: %s", e)
            return
        self._task = asyncio.create_task(self._listen())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._pubsub is not None:
            await self._pubsub.aclose()
            self._pubsub = None

    async def _listen(self) -> None:
        try:
            async for message in self._pubsub.listen():
                if message["type"] != "pmessage":
                    continue
                self.relay(message["channel"], message["data"])
        except RedisError as e:
            logger.error("Redis relay stopped: %s", e)

    def relay(self, channel: str, data: str) -> int:
        try:
            envelope = json.loads(data)
        except ValueError:
            logger.warning("Ignoring malformed relay message on %s", channel)
            return 0
        if envelope.get("origin") == self._origin:
            return 0
        room = channel[len(REDIS_PREFIX):]
        return self._registry.publish(room, envelope["event"], envelope["data"])
