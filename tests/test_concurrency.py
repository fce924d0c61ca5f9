from __future__ import annotations

import asyncio

from conftest import at

from presencebot.core import MembershipChange, Occupant, StoreError, Transition


def change(prev, new, user_id="u1", name="Ana"):
    return MembershipChange("g1", user_id, name, False, prev, new)


async def test_other_tasks_wait_for_open_transaction(db):
    inside = asyncio.Event()

    async def failing_transaction():
        async with db.transaction():
            await db.execute("INSERT INTO tracked_rooms (guild_id, room_id) VALUES (?,?)", ("g1", "R1"))
            inside.set()
            await asyncio.sleep(0.05)
            raise RuntimeError("boom")

    async def plain_write():
        await inside.wait()
        await db.execute("INSERT INTO tracked_rooms (guild_id, room_id) VALUES (?,?)", ("g2", "R2"))

    results = await asyncio.gather(failing_transaction(), plain_write(), return_exceptions=True)

    assert isinstance(results[0], RuntimeError)
    assert results[1] is None
    rows = await db.fetchall("SELECT guild_id FROM tracked_rooms ORDER BY id")
    assert [r["guild_id"] for r in rows] == ["g2"]


async def test_checkin_survives_concurrent_failed_stop(engine, clock, monkeypatch):
    await engine.rooms.track("g1", "R1")
    event = await engine.scheduler.create_event("g1", "R5", "Workshop", 30, occupants=[Occupant("u9", "Zé")])

    async def slow_failing_executemany(sql, params_list, commit=True):
        await asyncio.sleep(0.05)
        raise StoreError("disk full")

    monkeypatch.setattr(engine.db, "executemany", slow_failing_executemany)
    stopped, checked_in = await asyncio.gather(
        engine.scheduler.stop_event("g1"),
        engine.handle_membership_change(change(None, "R1")),
        return_exceptions=True,
    )

    assert isinstance(stopped, StoreError)
    assert checked_in.kind is Transition.CHECKIN
    assert await engine.sessions.get_open("g1", "u1") is not None
    assert engine.scheduler.active_event("g1").id == event.id
    assert await engine.store.get_open_participation(event.id, "u9") is not None


async def test_leave_during_auto_stop_waits_for_finalize(engine, clock, timers, monkeypatch):
    await engine.rooms.track("g1", "R1")
    await engine.handle_membership_change(change(None, "R1"))
    event = await engine.scheduler.create_event("g1", "R1", "Standup", 30, occupants=[Occupant("u1", "Ana")])

    real_finalize = engine.store.finalize

    async def slow_finalize(ev, when):
        await asyncio.sleep(0.05)
        return await real_finalize(ev, when)

    monkeypatch.setattr(engine.store, "finalize", slow_finalize)
    clock.set(at(9, 31))
    _, left = await asyncio.gather(
        timers.fire("g1"),
        engine.handle_membership_change(change("R1", None)),
    )

    assert left.kind is Transition.CHECKOUT
    assert left.closed.duration_minutes == 31
    assert engine.scheduler.active_event("g1") is None
    parts = await engine.store.participations(event.id)
    assert [(p.user_id, p.left_at, p.duration_minutes) for p in parts] == [("u1", at(9, 30), 30)]
