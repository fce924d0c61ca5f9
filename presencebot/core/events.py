"""
Attendance Events

EventStore: persisted events and per-user participation intervals.
EventScheduler: the active event per guild plus its auto-stop timer.

- One open event per guild
- Auto-stop closes the event at expected_end_at, never at the timer's actual fire time
- Closing an event closes every open participation in the same transaction
- The in-memory index is a cache of the events table (see rebuild_from_store)
"""

from __future__ import annotations
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Iterable

from presencebot.utils.tz_time import Clock, rounded_minutes, seconds_until, to_iso

from .db import Database
from .errors import ConflictError, NotFoundError, StoreError
from .models import Event, Occupant, Participation
from .timers import GuildTimers

logger = logging.getLogger(__name__)

CLOSE_MANUAL = "manual"
CLOSE_AUTO = "auto"
CLOSE_RECOVERY = "recovery"

AUTO_STOP_RETRY_SECONDS = 60

ClosedListener = Callable[[Event, str], Awaitable[None]]


class EventStore:
    def __init__(self, db: Database, clock: Clock):
        self.db = db
        self.clock = clock

    # ---------- Events ----------
    async def create(self, guild_id: str, name: str, room_id: str,
                     started_at: datetime, expected_end_at: datetime) -> Event:
        eid = await self.db.execute(
            """
            INSERT INTO events (guild_id, name, room_id, started_at, expected_end_at)
            VALUES (?,?,?,?,?)
            """,
            (guild_id, name, room_id, to_iso(started_at), to_iso(expected_end_at)),
        )
        return Event(int(eid), guild_id, name, room_id, started_at, expected_end_at)

    async def get(self, event_id: int) -> Event | None:
        row = await self.db.fetchone("SELECT * FROM events WHERE id=?", (event_id,))
        return Event.from_row(row, self.clock.tz) if row else None

    async def open_for_guild(self, guild_id: str) -> Event | None:
        row = await self.db.fetchone(
            """
            SELECT * FROM events
            WHERE guild_id=? AND ended_at IS NULL
            ORDER BY datetime(started_at) ASC, id ASC LIMIT 1
            """,
            (guild_id,),
        )
        return Event.from_row(row, self.clock.tz) if row else None

    async def list_open(self) -> list[Event]:
        rows = await self.db.fetchall(
            "SELECT * FROM events WHERE ended_at IS NULL ORDER BY datetime(started_at) ASC, id ASC"
        )
        return [Event.from_row(r, self.clock.tz) for r in rows]

    async def latest_for_guild(self, guild_id: str) -> Event | None:
        row = await self.db.fetchone(
            "SELECT * FROM events WHERE guild_id=? ORDER BY datetime(started_at) DESC, id DESC LIMIT 1",
            (guild_id,),
        )
        return Event.from_row(row, self.clock.tz) if row else None

    async def finalize(self, event: Event, at: datetime) -> Event:
        """Close the event and all its open participations at `at`, atomically."""
        async with self.db.transaction():
            rows = await self.db.fetchall(
                "SELECT * FROM event_participations WHERE event_id=? AND left_at IS NULL",
                (event.id,),
            )
            updates = []
            for r in rows:
                p = Participation.from_row(r, self.clock.tz)
                updates.append((to_iso(at), max(0, rounded_minutes(p.joined_at, at)), p.id))
            if updates:
                await self.db.executemany(
                    "UPDATE event_participations SET left_at=?, duration_minutes=? WHERE id=?",
                    updates,
                )
            await self.db.execute(
                "UPDATE events SET ended_at=? WHERE id=? AND ended_at IS NULL",
                (to_iso(at), event.id),
            )
        event.ended_at = at
        return event

    # ---------- Participations ----------
    async def get_open_participation(self, event_id: int, user_id: str) -> Participation | None:
        row = await self.db.fetchone(
            """
            SELECT * FROM event_participations
            WHERE event_id=? AND user_id=? AND left_at IS NULL
            ORDER BY id DESC LIMIT 1
            """,
            (event_id, user_id),
        )
        return Participation.from_row(row, self.clock.tz) if row else None

    async def open_participation(self, event_id: int, user_id: str, display_name: str,
                                 at: datetime) -> tuple[Participation, bool]:
        """Open a participation; an already open row is returned as-is. Second item is True when created."""
        existing = await self.get_open_participation(event_id, user_id)
        if existing is not None:
            return existing, False
        pid = await self.db.execute(
            """
            INSERT INTO event_participations (event_id, user_id, user_name, joined_at)
            VALUES (?,?,?,?)
            """,
            (event_id, user_id, display_name, to_iso(at)),
        )
        return Participation(int(pid), event_id, user_id, display_name, at), True

    async def close_participation(self, event_id: int, user_id: str, at: datetime) -> Participation | None:
        p = await self.get_open_participation(event_id, user_id)
        if p is None:
            return None
        duration = max(0, rounded_minutes(p.joined_at, at))
        await self.db.execute(
            "UPDATE event_participations SET left_at=?, duration_minutes=? WHERE id=?",
            (to_iso(at), duration, p.id),
        )
        p.left_at = at
        p.duration_minutes = duration
        return p

    async def participations(self, event_id: int) -> list[Participation]:
        rows = await self.db.fetchall(
            "SELECT * FROM event_participations WHERE event_id=? ORDER BY id ASC",
            (event_id,),
        )
        return [Participation.from_row(r, self.clock.tz) for r in rows]


class EventScheduler:
    """
    Owns the active event per guild:
    - create_event / stop_event
    - auto-stop when the timer fires
    - participation updates from voice state changes

    `lock` serializes create, stop and auto-stop with the engine's other
    mutations; on_membership_changed expects the caller to hold it.
    """

    def __init__(self, store: EventStore, clock: Clock, timers: GuildTimers | None = None,
                 lock: asyncio.Lock | None = None):
        self.store = store
        self.clock = clock
        self.timers = timers or GuildTimers()
        self.lock = lock or asyncio.Lock()
        self._active: dict[str, Event] = {}
        self.closed_listeners: list[ClosedListener] = []

    def add_closed_listener(self, listener: ClosedListener):
        self.closed_listeners.append(listener)

    def active_event(self, guild_id: str) -> Event | None:
        return self._active.get(guild_id)

    def active_guilds(self) -> list[str]:
        return list(self._active)

    # ---------- Handle management ----------
    def arm(self, event: Event, delay: float | None = None):
        """Install the handle and timer for an open event. Default delay is its remaining time."""
        gid = event.guild_id
        self.timers.cancel(gid)
        self._active[gid] = event
        if delay is None:
            delay = seconds_until(event.expected_end_at, self.clock.now())

        async def _fire(guild_id=gid, event_id=event.id):
            await self._auto_stop(guild_id, event_id)

        self.timers.schedule(gid, delay, _fire)
        logger.info("Event %s (%s) armed in guild %s, ends in %.0fs", event.id, event.name, gid, delay)

    def _disarm(self, guild_id: str) -> Event | None:
        self.timers.cancel(guild_id)
        return self._active.pop(guild_id, None)

    async def rebuild_from_store(self):
        """Drop the in-memory index and re-derive it from the open events in the store."""
        self.shutdown()
        for event in await self.store.list_open():
            if event.guild_id in self._active:
                logger.warning("Guild %s has more than one open event; ignoring event %s", event.guild_id, event.id)
                continue
            self.arm(event)

    def shutdown(self):
        self.timers.cancel_all()
        self._active.clear()

    # ---------- Lifecycle ----------
    async def create_event(self, guild_id: str, room_id: str, name: str, duration_minutes: int,
                           occupants: Iterable[Occupant] = ()) -> Event:
        if duration_minutes <= 0:
            raise ValueError("duration_minutes must be positive")
        async with self.lock:
            if guild_id in self._active:
                raise ConflictError(f"An event is already running in guild {guild_id}")
            if await self.store.open_for_guild(guild_id) is not None:
                logger.warning("Open event in store for guild %s missing from index; rebuilding", guild_id)
                await self.rebuild_from_store()
                raise ConflictError(f"An event is already running in guild {guild_id}")

            now = self.clock.now()
            event = await self.store.create(guild_id, name, room_id, now, now + timedelta(minutes=duration_minutes))
            self.arm(event)

            # users already in the room start counting now
            for occ in occupants:
                if occ.is_bot:
                    continue
                await self.store.open_participation(event.id, occ.user_id, occ.display_name, now)
            return event

    async def stop_event(self, guild_id: str, at: datetime | None = None) -> Event:
        async with self.lock:
            event = self._disarm(guild_id)
            if event is None:
                raise NotFoundError(f"No active event in guild {guild_id}")
            try:
                closed = await self.store.finalize(event, at or self.clock.now())
            except StoreError:
                self.arm(event)
                raise
        logger.info("Event %s stopped manually in guild %s", event.id, guild_id)
        return closed

    async def _auto_stop(self, guild_id: str, event_id: int):
        async with self.lock:
            event = self._active.get(guild_id)
            if event is None or event.id != event_id:
                return
            self._disarm(guild_id)
            try:
                closed = await self.store.finalize(event, event.expected_end_at)
            except StoreError:
                logger.exception("Auto-stop of event %s failed; retrying in %ds", event_id, AUTO_STOP_RETRY_SECONDS)
                # keep the handle so voice updates still land on the event
                self.arm(event, delay=AUTO_STOP_RETRY_SECONDS)
                return
        logger.info("Event %s auto-stopped in guild %s", event_id, guild_id)
        await self.emit_closed(closed, CLOSE_AUTO)

    async def emit_closed(self, event: Event, reason: str):
        for listener in self.closed_listeners:
            try:
                await listener(event, reason)
            except Exception:
                logger.exception("Event closed listener failed for event %s", event.id)

    # ---------- Voice state ----------
    async def on_membership_changed(self, guild_id: str, user_id: str, display_name: str,
                                    previous_room: str | None, new_room: str | None) -> Participation | None:
        event = self._active.get(guild_id)
        if event is None:
            return None
        room = event.room_id
        if new_room == room and previous_room != room:
            participation, _ = await self.store.open_participation(event.id, user_id, display_name, self.clock.now())
            return participation
        if previous_room == room and new_room != room:
            return await self.store.close_participation(event.id, user_id, self.clock.now())
        return None
