from __future__ import annotations
from datetime import datetime, timedelta

from presencebot.utils.tz_time import Clock

DEFAULT_COOLDOWN_MINUTES = 120


class NotificationThrottle:
    """At most one direct notification per (guild, user) per cooldown. In-memory only."""

    def __init__(self, clock: Clock, cooldown_minutes: int = DEFAULT_COOLDOWN_MINUTES):
        self.clock = clock
        self.cooldown = timedelta(minutes=cooldown_minutes)
        self._last: dict[tuple[str, str], datetime] = {}

    def may_notify(self, guild_id: str, user_id: str) -> bool:
        last = self._last.get((guild_id, user_id))
        if last is None:
            return True
        return self.clock.now() - last >= self.cooldown

    def record_notified(self, guild_id: str, user_id: str):
        self._last[(guild_id, user_id)] = self.clock.now()
