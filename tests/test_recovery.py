from __future__ import annotations

from conftest import FakeOccupancy, at

from presencebot.core import CLOSE_RECOVERY, Occupant


async def count_open_events(db, guild_id):
    row = await db.fetchone(
        "SELECT COUNT(*) AS n FROM events WHERE guild_id=? AND ended_at IS NULL", (guild_id,)
    )
    return row["n"]


async def test_scenario_c_rearms_with_remaining_time(engine, clock, timers):
    event = await engine.store.create("g1", "Standup", "R1", at(9, 0), at(9, 30))
    await engine.store.open_participation(event.id, "u1", "Ana", at(9, 0))
    occupancy = FakeOccupancy({("g1", "R1"): [
        Occupant("u1", "Ana"),
        Occupant("u2", "Bia"),
        Occupant("b1", "Music", is_bot=True),
    ]})

    clock.set(at(9, 20))
    report = await engine.recover(occupancy)

    assert report.ok
    assert [e.id for e in report.rearmed] == [event.id]
    assert report.finalized == []
    assert engine.scheduler.active_event("g1").id == event.id
    assert timers.delays["g1"] == 600
    assert report.participations_opened == 1

    parts = await engine.store.participations(event.id)
    assert [(p.user_id, p.joined_at, p.left_at) for p in parts] == [
        ("u1", at(9, 0), None),
        ("u2", at(9, 20), None),
    ]


async def test_scenario_d_finalizes_past_due_at_expected_end(engine, clock, timers):
    emitted = []

    async def on_closed(event, reason, summary):
        emitted.append((event.id, reason, summary))

    engine.event_closed_listeners.append(on_closed)

    event = await engine.store.create("g1", "Standup", "R1", at(9, 0), at(9, 30))
    await engine.store.open_participation(event.id, "u1", "Ana", at(9, 0))

    clock.set(at(9, 45))
    report = await engine.recover(FakeOccupancy())

    assert [e.id for e in report.finalized] == [event.id]
    stored = await engine.store.get(event.id)
    assert stored.ended_at == at(9, 30)
    parts = await engine.store.participations(event.id)
    assert parts[0].left_at == at(9, 30)
    assert parts[0].duration_minutes == 30
    assert engine.scheduler.active_event("g1") is None
    assert not timers.pending("g1")
    assert len(emitted) == 1
    assert emitted[0][1] == CLOSE_RECOVERY
    assert emitted[0][2][0].minutes == 30


async def test_scenario_e_oldest_open_event_wins(engine, clock, timers):
    older = await engine.store.create("g1", "First", "R1", at(8, 50), at(9, 50))
    newer = await engine.store.create("g1", "Second", "R2", at(8, 55), at(9, 25))

    clock.set(at(9, 10))
    report = await engine.recover(FakeOccupancy())

    assert engine.scheduler.active_event("g1").id == older.id
    assert [e.id for e in report.finalized] == [newer.id]
    assert (await engine.store.get(newer.id)).ended_at == at(9, 25)
    assert await count_open_events(engine.db, "g1") == 1


async def test_failure_in_one_guild_does_not_stop_others(engine, clock):
    class BrokenOccupancy(FakeOccupancy):
        async def list_current_occupants(self, guild_id, room_id):
            if guild_id == "g1":
                raise RuntimeError("gateway not ready")
            return await super().list_current_occupants(guild_id, room_id)

    await engine.store.create("g1", "A", "R1", at(9, 0), at(10, 0))
    healthy = await engine.store.create("g2", "B", "R1", at(9, 0), at(10, 0))
    past_due = await engine.store.create("g3", "C", "R1", at(8, 0), at(8, 30))

    report = await engine.recover(BrokenOccupancy({("g2", "R1"): [Occupant("u1", "Ana")]}))

    assert [gid for gid, _ in report.failures] == ["g1"]
    assert isinstance(report.failures[0][1], RuntimeError)
    assert healthy.id in [e.id for e in report.rearmed]
    assert [e.id for e in report.finalized] == [past_due.id]
    assert report.participations_opened == 1


async def test_invisible_room_skips_participation_repair(engine, clock):
    event = await engine.store.create("g1", "A", "R1", at(9, 0), at(10, 0))
    report = await engine.recover(FakeOccupancy(visible_guilds=set()))
    assert report.ok
    assert await engine.store.participations(event.id) == []


async def test_recovery_closes_participations_of_absent_users(engine, clock):
    event = await engine.store.create("g1", "Standup", "R1", at(9, 0), at(10, 0))
    await engine.store.open_participation(event.id, "u1", "Ana", at(9, 0))
    await engine.store.open_participation(event.id, "u2", "Bia", at(9, 5))

    clock.set(at(9, 20))
    report = await engine.recover(FakeOccupancy({("g1", "R1"): [Occupant("u1", "Ana")]}))

    assert report.participations_opened == 0
    assert report.participations_closed == 1
    parts = await engine.store.participations(event.id)
    assert [(p.user_id, p.left_at, p.duration_minutes) for p in parts] == [
        ("u1", None, None),
        ("u2", at(9, 20), 15),
    ]


async def test_sessions_reconciled_against_live_rooms(engine, clock):
    await engine.rooms.track("g1", "R1")
    await engine.rooms.track("g1", "R2")
    await engine.sessions.open("g1", "gone", "Caio", "R1", at(8, 0))
    await engine.sessions.open("g1", "stay", "Ana", "R1", at(8, 30))
    await engine.sessions.open("g1", "moved", "Bia", "R1", at(8, 40))

    occupancy = FakeOccupancy({
        ("g1", "R1"): [Occupant("stay", "Ana")],
        ("g1", "R2"): [Occupant("moved", "Bia"), Occupant("new", "Duda"), Occupant("b1", "Bot", is_bot=True)],
    })
    clock.set(at(9, 0))
    report = await engine.recover(occupancy)

    assert report.sessions_closed == 2
    assert report.sessions_opened == 2
    open_rooms = {s.user_id: s.room_id for s in await engine.sessions.list_open("g1")}
    assert open_rooms == {"stay": "R1", "moved": "R2", "new": "R2"}
    stay = await engine.sessions.get_open("g1", "stay")
    assert stay.checkin_at == at(8, 30)


async def test_session_reconcile_skips_unseen_guild(engine, clock):
    await engine.rooms.track("g1", "R1")
    await engine.sessions.open("g1", "u1", "Ana", "R1", at(8, 0))

    report = await engine.recover(FakeOccupancy(visible_guilds=set()))

    assert report.sessions_closed == 0
    assert await engine.sessions.get_open("g1", "u1") is not None
