"""
Recovery Manager

Runs once at startup, before any voice state update is processed:
- finalizes events that should have auto-stopped while the bot was down
- force-closes extra open events in a guild (oldest one wins)
- re-arms the surviving event's timer with its remaining time
- reopens participations for people who sat in the event room through the outage
  and closes the ones of people who left it
- reconciles open sessions against who is actually in tracked rooms right now
One guild failing never stops the others; failures are collected and reported.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import Iterable, Protocol

from .events import CLOSE_RECOVERY, EventScheduler, EventStore
from .models import Event, Occupant
from .rooms import RoomRegistry
from .sessions import SessionTracker

logger = logging.getLogger(__name__)


class OccupancySource(Protocol):
    async def list_current_occupants(self, guild_id: str, room_id: str) -> Iterable[Occupant] | None:
        """Members currently in the room, or None when the guild/room can't be seen."""
        ...


@dataclass
class RecoveryReport:
    finalized: list[Event] = field(default_factory=list)
    rearmed: list[Event] = field(default_factory=list)
    participations_opened: int = 0
    participations_closed: int = 0
    sessions_closed: int = 0
    sessions_opened: int = 0
    failures: list[tuple[str, Exception]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


class RecoveryManager:
    def __init__(self, store: EventStore, scheduler: EventScheduler,
                 rooms: RoomRegistry, sessions: SessionTracker):
        self.store = store
        self.scheduler = scheduler
        self.rooms = rooms
        self.sessions = sessions

    async def run(self, occupancy: OccupancySource) -> RecoveryReport:
        report = RecoveryReport()
        self.scheduler.shutdown()

        await self._recover_events(occupancy, report)
        await self._reconcile_sessions(occupancy, report)

        for event in report.finalized:
            await self.scheduler.emit_closed(event, CLOSE_RECOVERY)

        for guild_id, err in report.failures:
            logger.error("Recovery failed for guild %s: %s: %s", guild_id, type(err).__name__, err)
        logger.info(
            "Recovery done: %d finalized, %d re-armed, %d participations reopened, %d closed, "
            "%d sessions closed, %d sessions opened, %d failures",
            len(report.finalized), len(report.rearmed), report.participations_opened, report.participations_closed,
            report.sessions_closed, report.sessions_opened, len(report.failures),
        )
        return report

    # ---------- Events ----------
    async def _recover_events(self, occupancy: OccupancySource, report: RecoveryReport):
        now = self.scheduler.clock.now()
        seen: set[str] = set()

        for event in await self.store.list_open():
            gid = event.guild_id
            try:
                if gid in seen:
                    logger.warning("Extra open event %s in guild %s; closing at its expected end", event.id, gid)
                    report.finalized.append(await self.store.finalize(event, event.expected_end_at))
                    continue
                seen.add(gid)

                if now >= event.expected_end_at:
                    report.finalized.append(await self.store.finalize(event, event.expected_end_at))
                    continue

                self.scheduler.arm(event)
                report.rearmed.append(event)
                await self._repair_participations(event, occupancy, report)
            except Exception as e:
                logger.exception("Could not recover event %s in guild %s", event.id, gid)
                report.failures.append((gid, e))

    async def _repair_participations(self, event: Event, occupancy: OccupancySource, report: RecoveryReport):
        occupants = await occupancy.list_current_occupants(event.guild_id, event.room_id)
        if occupants is None:
            return
        now = self.scheduler.clock.now()
        present = set()
        for occ in occupants:
            if occ.is_bot:
                continue
            present.add(occ.user_id)
            _, created = await self.store.open_participation(event.id, occ.user_id, occ.display_name, now)
            if created:
                report.participations_opened += 1

        # left the room during the outage
        for p in await self.store.participations(event.id):
            if p.is_open and p.user_id not in present:
                await self.store.close_participation(event.id, p.user_id, now)
                report.participations_closed += 1

    # ---------- Sessions ----------
    async def _reconcile_sessions(self, occupancy: OccupancySource, report: RecoveryReport):
        for gid in await self.rooms.guilds_with_rooms():
            try:
                await self._reconcile_guild_sessions(gid, occupancy, report)
            except Exception as e:
                logger.exception("Could not reconcile sessions in guild %s", gid)
                report.failures.append((gid, e))

    async def _reconcile_guild_sessions(self, gid: str, occupancy: OccupancySource, report: RecoveryReport):
        present: dict[str, tuple[str, Occupant]] = {}
        for room_id in sorted(await self.rooms.list_tracked(gid)):
            occupants = await occupancy.list_current_occupants(gid, room_id)
            if occupants is None:
                # can't see this guild right now; leave its sessions alone
                return
            for occ in occupants:
                if not occ.is_bot:
                    present[occ.user_id] = (room_id, occ)

        now = self.sessions.clock.now()
        for session in await self.sessions.list_open(gid):
            where = present.get(session.user_id)
            if where is not None and where[0] == session.room_id:
                continue
            await self.sessions.finish(session, now)
            report.sessions_closed += 1

        for user_id, (room_id, occ) in present.items():
            if await self.sessions.get_open(gid, user_id) is None:
                await self.sessions.open(gid, user_id, occ.display_name, room_id, now)
                report.sessions_opened += 1
