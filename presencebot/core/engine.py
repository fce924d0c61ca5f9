"""
Presence Engine

Wires the tracking components together and is the single entry point for
voice state updates. Discord-specific glue lives in cogs/attendance.py.
"""

from __future__ import annotations
import asyncio
import logging
from typing import Awaitable, Callable

from presencebot.utils.tz_time import Clock

from .db import Database
from .errors import NotificationError
from .events import EventScheduler, EventStore
from .models import Event, MembershipChange, SummaryLine, Transition, TransitionResult
from .recovery import OccupancySource, RecoveryManager, RecoveryReport
from .reports import ReportAggregator
from .rooms import RoomRegistry
from .sessions import CheckoutResult, SessionTracker
from .throttle import DEFAULT_COOLDOWN_MINUTES, NotificationThrottle
from .timers import GuildTimers

logger = logging.getLogger(__name__)

Notifier = Callable[[str, str], Awaitable[None]]
TransitionListener = Callable[[MembershipChange, TransitionResult], Awaitable[None]]
EventClosedListener = Callable[[Event, str, list[SummaryLine]], Awaitable[None]]


class PresenceEngine:
    def __init__(self, db: Database, clock: Clock | None = None,
                 notify_cooldown_minutes: int = DEFAULT_COOLDOWN_MINUTES,
                 timers: GuildTimers | None = None):
        self.db = db
        self.clock = clock or Clock()
        # voice updates, event lifecycle and recovery run one at a time
        self.lock = asyncio.Lock()
        self.rooms = RoomRegistry(db)
        self.sessions = SessionTracker(db, self.rooms, self.clock)
        self.store = EventStore(db, self.clock)
        self.scheduler = EventScheduler(self.store, self.clock, timers, lock=self.lock)
        self.reports = ReportAggregator(db, self.store, self.clock)
        self.throttle = NotificationThrottle(self.clock, notify_cooldown_minutes)
        self.recovery = RecoveryManager(self.store, self.scheduler, self.rooms, self.sessions)

        self.notifier: Notifier | None = None
        self.transition_listeners: list[TransitionListener] = []
        self.event_closed_listeners: list[EventClosedListener] = []
        self._notify_tasks: set[asyncio.Task] = set()

        self.scheduler.add_closed_listener(self._on_event_closed)

    # ---------- Startup / shutdown ----------
    async def recover(self, occupancy: OccupancySource) -> RecoveryReport:
        async with self.lock:
            return await self.recovery.run(occupancy)

    def close(self):
        self.scheduler.shutdown()
        for task in list(self._notify_tasks):
            task.cancel()
        self._notify_tasks.clear()

    # ---------- Voice state ----------
    async def handle_membership_change(self, change: MembershipChange) -> TransitionResult:
        if change.is_bot or change.previous_room_id == change.new_room_id:
            return TransitionResult(Transition.NONE)

        async with self.lock:
            result = await self.sessions.on_membership_changed(
                change.guild_id, change.user_id, change.display_name,
                change.previous_room_id, change.new_room_id,
            )
            await self.scheduler.on_membership_changed(
                change.guild_id, change.user_id, change.display_name,
                change.previous_room_id, change.new_room_id,
            )

        if result.kind is not Transition.NONE:
            for listener in self.transition_listeners:
                try:
                    await listener(change, result)
                except Exception:
                    logger.exception("Transition listener failed for user %s", change.user_id)

        if result.kind in (Transition.CHECKIN, Transition.SWITCH):
            self._maybe_notify(change.guild_id, change.user_id)
        return result

    async def checkout(self, guild_id: str, user_id: str, required_minutes: int) -> CheckoutResult:
        async with self.lock:
            return await self.sessions.checkout(guild_id, user_id, required_minutes)

    # ---------- Notification side channel ----------
    def _maybe_notify(self, guild_id: str, user_id: str):
        if self.notifier is None or not self.throttle.may_notify(guild_id, user_id):
            return
        task = asyncio.get_running_loop().create_task(self._deliver(guild_id, user_id))
        self._notify_tasks.add(task)
        task.add_done_callback(self._notify_tasks.discard)

    async def _deliver(self, guild_id: str, user_id: str):
        try:
            await self.notifier(guild_id, user_id)
        except NotificationError as e:
            logger.warning("Notification to user %s in guild %s not delivered: %s", user_id, guild_id, e)
            return
        except Exception as e:
            logger.warning("Notification to user %s in guild %s failed: %s: %s",
                           user_id, guild_id, type(e).__name__, e)
            return
        self.throttle.record_notified(guild_id, user_id)

    async def drain_notifications(self):
        """Wait for in-flight notifications. Used on shutdown and in tests."""
        if self._notify_tasks:
            await asyncio.gather(*list(self._notify_tasks), return_exceptions=True)

    # ---------- Event closure ----------
    async def _on_event_closed(self, event: Event, reason: str):
        summary = await self.reports.summarize_event(event.id)
        for listener in self.event_closed_listeners:
            try:
                await listener(event, reason, summary)
            except Exception:
                logger.exception("Event closed listener failed for event %s", event.id)
