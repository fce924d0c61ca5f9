"""
Single-shot delayed tasks keyed by guild.

Scheduling a key that already has a pending task cancels the old one first, so
a stale fire can never run after its handle was replaced.
"""

from __future__ import annotations
import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

TimerCallback = Callable[[], Awaitable[None]]


class GuildTimers:
    def __init__(self):
        self._tasks: dict[str, asyncio.Task] = {}

    def schedule(self, key: str, delay_seconds: float, callback: TimerCallback):
        self.cancel(key)
        task = asyncio.get_running_loop().create_task(self._run(key, max(0.0, delay_seconds), callback))
        self._tasks[key] = task

    async def _run(self, key: str, delay: float, callback: TimerCallback):
        await asyncio.sleep(delay)
        # drop the entry first so the callback may cancel/reschedule this key
        if self._tasks.get(key) is asyncio.current_task():
            self._tasks.pop(key, None)
        try:
            await callback()
        except Exception:
            logger.exception("Timer callback for %s failed", key)

    def cancel(self, key: str) -> bool:
        task = self._tasks.pop(key, None)
        if task is None:
            return False
        task.cancel()
        return True

    def cancel_all(self):
        for key in list(self._tasks):
            self.cancel(key)

    def pending(self, key: str) -> bool:
        return key in self._tasks
