from __future__ import annotations

import asyncio

from presencebot.core import GuildTimers


async def test_timer_fires_once():
    timers = GuildTimers()
    fired = asyncio.Event()

    async def callback():
        fired.set()

    timers.schedule("g1", 0.01, callback)
    assert timers.pending("g1")
    await asyncio.wait_for(fired.wait(), timeout=1)
    await asyncio.sleep(0)
    assert not timers.pending("g1")


async def test_rescheduling_cancels_previous():
    timers = GuildTimers()
    calls = []

    async def first():
        calls.append("first")

    async def second():
        calls.append("second")

    timers.schedule("g1", 0.05, first)
    timers.schedule("g1", 0.01, second)
    await asyncio.sleep(0.1)
    assert calls == ["second"]


async def test_callback_may_cancel_its_own_key():
    timers = GuildTimers()
    done = asyncio.Event()

    async def callback():
        timers.cancel("g1")
        await asyncio.sleep(0)
        done.set()

    timers.schedule("g1", 0, callback)
    await asyncio.wait_for(done.wait(), timeout=1)


async def test_cancel_all():
    timers = GuildTimers()
    calls = []

    async def callback():
        calls.append(1)

    timers.schedule("g1", 0.01, callback)
    timers.schedule("g2", 0.01, callback)
    timers.cancel_all()
    await asyncio.sleep(0.05)
    assert calls == []
    assert not timers.pending("g1")
