import asyncio
from datetime import datetime, timedelta

import pytest

from broadcast import Broadcaster, ChannelRegistry
from cache import MemoryCache
from directory import ClinicDirectory
from models import Clinic
from services import QueueService
from stats import StatsService
from store import SqlQueueStore, build_engine, init_db

# 09:00 in Tunis
MORNING = datetime(2024, 3, 4, 8, 0)


class FakeClock:
    def __init__(self, start: datetime = MORNING):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, minutes: float = 0, seconds: float = 0) -> None:
        self.now += timedelta(minutes=minutes, seconds=seconds)


class QueueSystem:
    """A full queue engine on an in-memory database, driven from sync tests."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.loop = asyncio.new_event_loop()
        self.engine = build_engine("sqlite://")
        init_db(self.engine)
        self.store = SqlQueueStore(self.engine, timeout=5)
        self.cache = MemoryCache()
        self.directory = ClinicDirectory(self.store, self.cache)
        self.stats = StatsService(self.store, self.cache, self.directory, clock=clock)
        self.registry = ChannelRegistry(buffer=50)
        self.broadcaster = Broadcaster(self.registry, self.store, self.stats, self.cache)
        self.service = QueueService(
            self.store, self.cache, self.broadcaster, self.directory, clock=clock
        )

    def run(self, coro):
        return self.loop.run_until_complete(coro)

    def clinic(self, **fields) -> Clinic:
        fields.setdefault("name", "Cabinet Ben Salah")
        fields.setdefault("doctor_name", "Dr. Ben Salah")
        return self.run(self.directory.create(Clinic(**fields)))

    def add(self, clinic_id: str, phone: str, name=None, **kwargs):
        return self.run(self.service.add_patient(clinic_id, phone, name, **kwargs))

    def active(self, clinic_id: str):
        return self.run(self.store.list_active(clinic_id))

    def close(self) -> None:
        self.loop.run_until_complete(self.registry.stop())
        self.loop.close()
        self.engine.dispose()


def drain(subscription):
    """Messages delivered to ``subscription`` so far."""
    messages = []
    while not subscription._queue.empty():
        messages.append(subscription._queue.get_nowait())
    return messages


def phone(n: int) -> str:
    return f"2{n:07d}"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def system(clock):
    queue_system = QueueSystem(clock)
    yield queue_system
    queue_system.close()


@pytest.fixture
def clinic(system):
    return system.clinic()
