from __future__ import annotations

from conftest import at

from presencebot.core import CheckoutStatus, Transition


async def open_count(db, guild_id="g1", user_id="u1"):
    row = await db.fetchone(
        "SELECT COUNT(*) AS n FROM sessions WHERE guild_id=? AND user_id=? AND checkout_at IS NULL",
        (guild_id, user_id),
    )
    return row["n"]


async def test_scenario_a_checkin_and_leave(engine, clock):
    await engine.rooms.track("g1", "R1")
    clock.set(at(10, 0))
    result = await engine.sessions.on_membership_changed("g1", "u1", "Ana", None, "R1")
    assert result.kind is Transition.CHECKIN

    clock.set(at(10, 47))
    result = await engine.sessions.on_membership_changed("g1", "u1", "Ana", "R1", None)
    assert result.kind is Transition.CHECKOUT

    session = result.closed
    assert session.checkin_at == at(10, 0)
    assert session.checkout_at == at(10, 47)
    assert session.duration_minutes == 47
    row = await engine.db.fetchone("SELECT * FROM sessions WHERE id=?", (session.id,))
    assert row["duration_minutes"] == 47
    assert row["checkout_at"] == "2024-05-06T10:47:00-03:00"


async def test_ninety_seconds_rounds_up_to_two_minutes(engine, clock):
    await engine.rooms.track("g1", "R1")
    await engine.sessions.on_membership_changed("g1", "u1", "Ana", None, "R1")
    clock.advance(seconds=90)
    result = await engine.sessions.on_membership_changed("g1", "u1", "Ana", "R1", None)
    assert result.closed.duration_minutes == 2


async def test_move_between_tracked_rooms_switches_session(engine, clock):
    await engine.rooms.track("g1", "R1")
    await engine.rooms.track("g1", "R2")
    await engine.sessions.on_membership_changed("g1", "u1", "Ana", None, "R1")
    clock.advance(minutes=20)

    result = await engine.sessions.on_membership_changed("g1", "u1", "Ana", "R1", "R2")

    assert result.kind is Transition.SWITCH
    assert result.closed.room_id == "R1"
    assert result.closed.duration_minutes == 20
    assert result.opened.room_id == "R2"
    assert result.opened.checkin_at == result.closed.checkout_at
    assert await open_count(engine.db) == 1


async def test_entering_closes_stray_open_session(engine, clock):
    await engine.rooms.track("g1", "R1")
    await engine.sessions.open("g1", "u1", "Ana", "R1", at(8, 0))

    result = await engine.sessions.on_membership_changed("g1", "u1", "Ana", "X", "R1")

    assert result.kind is Transition.CHECKIN
    assert result.closed is not None
    assert result.closed.duration_minutes == 60
    assert await open_count(engine.db) == 1


async def test_same_room_transitions_never_double_open(engine, clock):
    await engine.rooms.track("g1", "R1")
    await engine.sessions.on_membership_changed("g1", "u1", "Ana", None, "R1")
    # mute/deafen updates arrive with the same room on both sides
    result = await engine.sessions.on_membership_changed("g1", "u1", "Ana", "R1", "R1")
    assert result.kind is Transition.NONE
    assert await open_count(engine.db) == 1


async def test_movement_outside_tracked_rooms_is_ignored(engine):
    await engine.rooms.track("g1", "R1")
    result = await engine.sessions.on_membership_changed("g1", "u1", "Ana", "X", "Y")
    assert result.kind is Transition.NONE
    assert await open_count(engine.db) == 0


async def test_leaving_without_open_session_is_not_an_error(engine):
    await engine.rooms.track("g1", "R1")
    result = await engine.sessions.on_membership_changed("g1", "u1", "Ana", "R1", None)
    assert result.kind is Transition.NONE
    assert await engine.sessions.close_open("g1", "u1") is None


async def test_elapsed_minutes_is_floored_and_fresh(engine, clock):
    assert await engine.sessions.elapsed_minutes("g1", "u1") is None
    await engine.sessions.open("g1", "u1", "Ana", "R1")
    clock.advance(minutes=5, seconds=59)
    assert await engine.sessions.elapsed_minutes("g1", "u1") == 5
    clock.advance(seconds=1)
    assert await engine.sessions.elapsed_minutes("g1", "u1") == 6


async def test_checkout_gate(engine, clock):
    result = await engine.sessions.checkout("g1", "u1", required_minutes=60)
    assert result.status is CheckoutStatus.NO_SESSION

    await engine.sessions.open("g1", "u1", "Ana", "R1")
    clock.advance(minutes=45)
    result = await engine.sessions.checkout("g1", "u1", required_minutes=60)
    assert result.status is CheckoutStatus.TOO_EARLY
    assert result.remaining_minutes == 15
    assert await open_count(engine.db) == 1

    clock.advance(minutes=15)
    result = await engine.sessions.checkout("g1", "u1", required_minutes=60)
    assert result.status is CheckoutStatus.CLOSED
    assert result.session.duration_minutes == 60
    assert await open_count(engine.db) == 0
