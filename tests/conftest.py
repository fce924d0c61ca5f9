from __future__ import annotations

from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

import pytest

from presencebot.core import Database, GuildTimers, Occupant, PresenceEngine
from presencebot.utils.tz_time import Clock

TZ_NAME = "America/Sao_Paulo"
TZ = ZoneInfo(TZ_NAME)


def at(hour: int, minute: int = 0, second: int = 0, day: int = 6) -> datetime:
    return datetime(2024, 5, day, hour, minute, second, tzinfo=TZ)


class FixedClock(Clock):
    def __init__(self, start: datetime):
        super().__init__(TZ_NAME)
        self.current = start

    def now(self) -> datetime:
        return self.current

    def set(self, dt: datetime):
        self.current = dt

    def advance(self, minutes: int = 0, seconds: int = 0):
        self.current = self.current + timedelta(minutes=minutes, seconds=seconds)


class ManualTimers(GuildTimers):
    """Records scheduled callbacks; tests fire them explicitly."""

    def __init__(self):
        super().__init__()
        self.callbacks = {}
        self.delays = {}

    def schedule(self, key, delay_seconds, callback):
        self.cancel(key)
        self.callbacks[key] = callback
        self.delays[key] = delay_seconds

    def cancel(self, key):
        self.delays.pop(key, None)
        return self.callbacks.pop(key, None) is not None

    def cancel_all(self):
        self.callbacks.clear()
        self.delays.clear()

    def pending(self, key):
        return key in self.callbacks

    async def fire(self, key):
        callback = self.callbacks.pop(key)
        self.delays.pop(key, None)
        await callback()


class FakeOccupancy:
    def __init__(self, rooms: dict[tuple[str, str], list[Occupant]] | None = None,
                 visible_guilds: set[str] | None = None):
        self.rooms = rooms or {}
        self.visible_guilds = visible_guilds
        self.calls = []

    async def list_current_occupants(self, guild_id, room_id):
        self.calls.append((guild_id, room_id))
        if self.visible_guilds is not None and guild_id not in self.visible_guilds:
            return None
        return list(self.rooms.get((guild_id, room_id), []))


@pytest.fixture
async def db():
    database = Database(":memory:")
    await database.connect()
    await database.migrate()
    yield database
    await database.close()


@pytest.fixture
def clock():
    return FixedClock(at(9, 0))


@pytest.fixture
def timers():
    return ManualTimers()


@pytest.fixture
async def engine(db, clock, timers):
    eng = PresenceEngine(db, clock=clock, timers=timers)
    yield eng
    eng.close()
