"""
Read-only reporting over sessions and event participations.
"""

from __future__ import annotations
import csv
import io
from collections import defaultdict
from datetime import datetime

from presencebot.utils.tz_time import Clock, floor_minutes, rounded_minutes, to_iso

from .db import Database
from .events import EventStore
from .models import Session, SummaryLine
from .recovery import OccupancySource

CSV_HEADER = ["user_name", "user_id", "room_id", "checkin_at_iso", "checkout_at_iso", "duration_minutes"]


class ReportAggregator:
    def __init__(self, db: Database, events: EventStore, clock: Clock):
        self.db = db
        self.events = events
        self.clock = clock

    async def summarize_event(self, event_id: int, include_in_progress: bool = False) -> list[SummaryLine]:
        """Minutes per user for an event, highest first. Ties keep arrival order."""
        rows = await self.events.participations(event_id)
        now = self.clock.now()

        totals: dict[str, int] = {}
        names: dict[str, str] = {}
        for p in rows:
            if p.user_id not in totals:
                totals[p.user_id] = 0
                names[p.user_id] = p.display_name
            if p.left_at is not None:
                totals[p.user_id] += int(p.duration_minutes or 0)
            elif include_in_progress:
                totals[p.user_id] += max(0, rounded_minutes(p.joined_at, now))

        lines = [SummaryLine(uid, names[uid], minutes) for uid, minutes in totals.items()]
        # sorted() is stable, so equal totals stay in first-arrival order
        return sorted(lines, key=lambda line: line.minutes, reverse=True)

    async def summarize_sessions(self, guild_id: str, start: datetime, end: datetime) -> list[Session]:
        rows = await self.db.fetchall(
            """
            SELECT * FROM sessions
            WHERE guild_id=?
              AND datetime(checkin_at) >= datetime(?)
              AND datetime(COALESCE(checkout_at, checkin_at)) <= datetime(?)
            ORDER BY datetime(checkin_at) ASC, id ASC
            """,
            (guild_id, to_iso(start), to_iso(end)),
        )
        return [Session.from_row(r, self.clock.tz) for r in rows]

    async def active_checkins(self, guild_id: str,
                              occupancy: OccupancySource | None = None) -> dict[str, list[tuple[Session, int]]]:
        """
        Open sessions grouped by room, with fresh elapsed minutes.

        With an occupancy source, only members still sitting in the room are listed.
        Rooms the source can't see are kept as stored.
        """
        rows = await self.db.fetchall(
            "SELECT * FROM sessions WHERE guild_id=? AND checkout_at IS NULL ORDER BY room_id, user_name",
            (guild_id,),
        )
        now = self.clock.now()
        grouped: dict[str, list[tuple[Session, int]]] = defaultdict(list)
        for r in rows:
            s = Session.from_row(r, self.clock.tz)
            grouped[s.room_id].append((s, floor_minutes(s.checkin_at, now)))
        if occupancy is None:
            return dict(grouped)

        live: dict[str, list[tuple[Session, int]]] = {}
        for room_id, entries in grouped.items():
            occupants = await occupancy.list_current_occupants(guild_id, room_id)
            if occupants is not None:
                present = {occ.user_id for occ in occupants}
                entries = [(s, m) for s, m in entries if s.user_id in present]
            if entries:
                live[room_id] = entries
        return live


def sessions_to_csv(sessions: list[Session]) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, quoting=csv.QUOTE_MINIMAL, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    for s in sessions:
        writer.writerow([
            s.display_name,
            s.user_id,
            s.room_id,
            to_iso(s.checkin_at),
            to_iso(s.checkout_at) if s.checkout_at else "",
            "" if s.duration_minutes is None else s.duration_minutes,
        ])
    return buf.getvalue()
