from __future__ import annotations

from presencebot.core import MembershipChange, NotificationError, Transition


def change(prev, new, user_id="u1", is_bot=False):
    return MembershipChange("g1", user_id, "Ana", is_bot, prev, new)


async def test_full_flow_updates_sessions_and_event(engine, clock):
    await engine.rooms.track("g1", "R1")
    event = await engine.scheduler.create_event("g1", "R1", "Standup", 30)

    result = await engine.handle_membership_change(change(None, "R1"))
    assert result.kind is Transition.CHECKIN
    clock.advance(minutes=20)
    result = await engine.handle_membership_change(change("R1", None))
    assert result.kind is Transition.CHECKOUT
    assert result.closed.duration_minutes == 20

    parts = await engine.store.participations(event.id)
    assert [(p.user_id, p.duration_minutes) for p in parts] == [("u1", 20)]


async def test_event_room_need_not_be_tracked(engine, clock):
    event = await engine.scheduler.create_event("g1", "R5", "Workshop", 30)
    result = await engine.handle_membership_change(change(None, "R5"))
    assert result.kind is Transition.NONE
    assert len(await engine.store.participations(event.id)) == 1


async def test_bots_are_ignored(engine):
    await engine.rooms.track("g1", "R1")
    result = await engine.handle_membership_change(change(None, "R1", user_id="b1", is_bot=True))
    assert result.kind is Transition.NONE
    assert await engine.sessions.get_open("g1", "b1") is None


async def test_transition_listeners_get_signals(engine):
    seen = []

    async def listener(ch, result):
        seen.append(result.kind)

    engine.transition_listeners.append(listener)
    await engine.rooms.track("g1", "R1")
    await engine.rooms.track("g1", "R2")
    await engine.handle_membership_change(change(None, "R1"))
    await engine.handle_membership_change(change("R1", "R2"))
    await engine.handle_membership_change(change("R2", None))

    assert seen == [Transition.CHECKIN, Transition.SWITCH, Transition.CHECKOUT]


async def test_failing_listener_does_not_break_tracking(engine):
    async def listener(ch, result):
        raise RuntimeError("log channel down")

    engine.transition_listeners.append(listener)
    await engine.rooms.track("g1", "R1")
    result = await engine.handle_membership_change(change(None, "R1"))
    assert result.kind is Transition.CHECKIN
    assert await engine.sessions.get_open("g1", "u1") is not None


async def test_notifications_are_throttled(engine, clock):
    sent = []

    async def notifier(guild_id, user_id):
        sent.append((guild_id, user_id))

    engine.notifier = notifier
    await engine.rooms.track("g1", "R1")

    await engine.handle_membership_change(change(None, "R1"))
    await engine.drain_notifications()
    await engine.handle_membership_change(change("R1", None))
    clock.advance(minutes=30)
    await engine.handle_membership_change(change(None, "R1"))
    await engine.drain_notifications()
    assert sent == [("g1", "u1")]

    clock.advance(minutes=120)
    await engine.handle_membership_change(change("R1", None))
    await engine.handle_membership_change(change(None, "R1"))
    await engine.drain_notifications()
    assert sent == [("g1", "u1"), ("g1", "u1")]


async def test_failed_notification_is_swallowed_and_retried_later(engine, clock):
    calls = []

    async def notifier(guild_id, user_id):
        calls.append(user_id)
        raise NotificationError("DMs closed")

    engine.notifier = notifier
    await engine.rooms.track("g1", "R1")

    result = await engine.handle_membership_change(change(None, "R1"))
    await engine.drain_notifications()

    assert result.kind is Transition.CHECKIN
    assert await engine.sessions.get_open("g1", "u1") is not None
    # a failed delivery is not stamped, so the next check-in tries again
    assert engine.throttle.may_notify("g1", "u1")
    await engine.handle_membership_change(change("R1", None))
    await engine.handle_membership_change(change(None, "R1"))
    await engine.drain_notifications()
    assert calls == ["u1", "u1"]
