"""
Session Tracker

One open attendance session per (guild, user) while the user sits in any
tracked room.
- entering a tracked room opens a session
- moving between tracked rooms closes the old session and opens a new one at the same instant
- leaving tracked rooms closes the session
Durations are rounded to the nearest minute on close.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from presencebot.utils.tz_time import Clock, floor_minutes, rounded_minutes, to_iso

from .db import Database
from .models import Session, Transition, TransitionResult
from .rooms import RoomRegistry

logger = logging.getLogger(__name__)

DEFAULT_CHECKOUT_MINUTES = 60


class CheckoutStatus(str, Enum):
    NO_SESSION = "no_session"
    TOO_EARLY = "too_early"
    CLOSED = "closed"


@dataclass
class CheckoutResult:
    status: CheckoutStatus
    session: Session | None = None
    remaining_minutes: int = 0


class SessionTracker:
    def __init__(self, db: Database, rooms: RoomRegistry, clock: Clock):
        self.db = db
        self.rooms = rooms
        self.clock = clock

    # ---------- Reads ----------
    async def get_open(self, guild_id: str, user_id: str) -> Session | None:
        row = await self.db.fetchone(
            """
            SELECT * FROM sessions
            WHERE guild_id=? AND user_id=? AND checkout_at IS NULL
            ORDER BY id DESC LIMIT 1
            """,
            (guild_id, user_id),
        )
        return Session.from_row(row, self.clock.tz) if row else None

    async def list_open(self, guild_id: str | None = None) -> list[Session]:
        if guild_id is None:
            rows = await self.db.fetchall("SELECT * FROM sessions WHERE checkout_at IS NULL ORDER BY id")
        else:
            rows = await self.db.fetchall(
                "SELECT * FROM sessions WHERE guild_id=? AND checkout_at IS NULL ORDER BY id",
                (guild_id,),
            )
        return [Session.from_row(r, self.clock.tz) for r in rows]

    def elapsed(self, session: Session, now: datetime | None = None) -> int:
        return floor_minutes(session.checkin_at, now or self.clock.now())

    async def elapsed_minutes(self, guild_id: str, user_id: str) -> int | None:
        """Minutes since check-in, recomputed on every call. None when no session is open."""
        session = await self.get_open(guild_id, user_id)
        if session is None:
            return None
        return self.elapsed(session)

    # ---------- Writes ----------
    async def open(self, guild_id: str, user_id: str, display_name: str, room_id: str,
                   at: datetime | None = None) -> Session:
        at = at or self.clock.now()
        sid = await self.db.execute(
            """
            INSERT INTO sessions (guild_id, user_id, user_name, room_id, checkin_at)
            VALUES (?,?,?,?,?)
            """,
            (guild_id, user_id, display_name, room_id, to_iso(at)),
        )
        return Session(
            id=int(sid),
            guild_id=guild_id,
            user_id=user_id,
            display_name=display_name,
            room_id=room_id,
            checkin_at=at,
        )

    async def finish(self, session: Session, at: datetime | None = None) -> Session:
        at = at or self.clock.now()
        duration = rounded_minutes(session.checkin_at, at)
        await self.db.execute(
            "UPDATE sessions SET checkout_at=?, duration_minutes=? WHERE id=? AND checkout_at IS NULL",
            (to_iso(at), duration, session.id),
        )
        session.checkout_at = at
        session.duration_minutes = duration
        return session

    async def close_open(self, guild_id: str, user_id: str, at: datetime | None = None) -> Session | None:
        """Close the user's open session. Returns None when there was nothing to close."""
        session = await self.get_open(guild_id, user_id)
        if session is None:
            return None
        return await self.finish(session, at)

    async def checkout(self, guild_id: str, user_id: str,
                       required_minutes: int = DEFAULT_CHECKOUT_MINUTES) -> CheckoutResult:
        """Manual checkout, allowed once the session has run for required_minutes."""
        session = await self.get_open(guild_id, user_id)
        if session is None:
            return CheckoutResult(CheckoutStatus.NO_SESSION)
        now = self.clock.now()
        elapsed = self.elapsed(session, now)
        if elapsed < required_minutes:
            return CheckoutResult(CheckoutStatus.TOO_EARLY, session, required_minutes - elapsed)
        await self.finish(session, now)
        return CheckoutResult(CheckoutStatus.CLOSED, session)

    # ---------- Voice state ----------
    async def on_membership_changed(self, guild_id: str, user_id: str, display_name: str,
                                    previous_room: str | None, new_room: str | None) -> TransitionResult:
        was_tracked = previous_room is not None and await self.rooms.is_tracked(guild_id, previous_room)
        tracked_now = new_room is not None and await self.rooms.is_tracked(guild_id, new_room)

        # Moved between tracked rooms
        if was_tracked and tracked_now and previous_room != new_room:
            now = self.clock.now()
            closed = await self.close_open(guild_id, user_id, now)
            opened = await self.open(guild_id, user_id, display_name, new_room, now)
            return TransitionResult(Transition.SWITCH, closed, opened)

        # Entered tracking
        if not was_tracked and tracked_now:
            now = self.clock.now()
            closed = await self.close_open(guild_id, user_id, now)
            if closed is not None:
                logger.warning("Closed stray open session %s for user %s in guild %s", closed.id, user_id, guild_id)
            opened = await self.open(guild_id, user_id, display_name, new_room, now)
            return TransitionResult(Transition.CHECKIN, closed, opened)

        # Left tracking
        if was_tracked and not tracked_now:
            closed = await self.close_open(guild_id, user_id)
            if closed is None:
                return TransitionResult(Transition.NONE)
            return TransitionResult(Transition.CHECKOUT, closed)

        return TransitionResult(Transition.NONE)
