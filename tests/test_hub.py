import asyncio
import random
import time
from datetime import timedelta

import pytest

from server.connection import ConnectionState
from server.hub import BroadcastHub
from server.transport import GOING_AWAY, HEARTBEAT_TIMEOUT_CLOSE_CODE, NORMAL_CLOSURE
from shared.errors import DuplicateIdError, TransportError
from shared.models import MessageEvent, Ping, TypingNotice, utcnow


async def test_register_announces_to_others_only(hub, make_connection):
    a, b = make_connection("a"), make_connection("b")
    await hub.register(a)
    await hub.register(b)

    assert hub.connection_ids() == {"a", "b"}
    presence = a.transport.frames_of("presence")
    assert [(p.participant, p.status, p.display_name) for p in presence] == [("b", "online", "B")]
    # b hears about a through the roster, never about itself.
    roster = b.transport.frames_of("presence")
    assert [(p.participant, p.status, p.display_name) for p in roster] == [("a", "online", "A")]


async def test_newcomer_receives_roster_oldest_first(hub, make_connection):
    await hub.register(make_connection("a"))
    await hub.register(make_connection("b"))
    c = make_connection("c")
    await hub.register(c)

    assert [(p.participant, p.status) for p in c.transport.frames()] == [("a", "online"), ("b", "online")]
    assert hub.get_stats().total_events_dispatched == 3


async def test_roster_to_broken_newcomer_unregisters_it(hub, make_connection):
    a, b = make_connection("a"), make_connection("b")
    await hub.register(a)
    b.transport.broken = True

    await hub.register(b)

    assert "b" not in hub
    assert [(p.participant, p.status) for p in a.transport.frames_of("presence")] == [
        ("b", "online"), ("b", "offline"),
    ]


async def test_duplicate_id_rejected_and_registry_unchanged(hub, make_connection):
    original = make_connection("a")
    await hub.register(original)

    with pytest.raises(DuplicateIdError) as exc:
        await hub.register(make_connection("a", "Impostor"))

    assert exc.value.connection_id == "a"
    assert len(hub) == 1
    assert hub.get("a") is original
    assert hub.get_stats().total_registrations == 1


async def test_unregister_unknown_id_is_noop(hub):
    assert await hub.unregister("ghost") is False
    assert len(hub) == 0


async def test_unregister_closes_and_announces_offline(hub, make_connection):
    a, b = make_connection("a"), make_connection("b")
    await hub.register(a)
    await hub.register(b)

    assert await hub.unregister("b") is True

    assert "b" not in hub
    assert b.state is ConnectionState.DISCONNECTED
    assert not b.alive
    assert b.transport.close_code == NORMAL_CLOSURE
    offline = [p for p in a.transport.frames_of("presence") if p.status == "offline"]
    assert [p.participant for p in offline] == ["b"]


async def test_removed_connection_refuses_sends(hub, make_connection):
    a = make_connection("a")
    await hub.register(a)
    await hub.unregister("a")

    with pytest.raises(TransportError):
        await a.send(Ping())


async def test_broadcast_excluding_sender(hub, make_connection):
    a, b = make_connection("a"), make_connection("b")
    await hub.register(a)
    await hub.register(b)

    result = await hub.broadcast(MessageEvent(sender="a", text="hi"), exclude_connection_id="a")

    assert result.delivered == ["b"]
    assert result.failed == []
    [received] = b.transport.frames_of("message")
    assert (received.sender, received.text) == ("a", "hi")
    assert a.transport.frames_of("message") == []


async def test_broadcast_after_unregister_reaches_nobody(hub, make_connection):
    a = make_connection("a")
    await hub.register(a)
    await hub.unregister("a")

    result = await hub.broadcast(MessageEvent(sender="a", text="hi"))

    assert result.delivered == []
    assert a.transport.sent == []


async def test_membership_tracks_register_unregister_sequence(hub, make_connection):
    rng = random.Random(7)
    expected: set[str] = set()
    for _ in range(60):
        cid = rng.choice("abcdef")
        if rng.random() < 0.5:
            if cid in expected:
                with pytest.raises(DuplicateIdError):
                    await hub.register(make_connection(cid))
            else:
                await hub.register(make_connection(cid))
                expected.add(cid)
        else:
            removed = await hub.unregister(cid)
            assert removed is (cid in expected)
            expected.discard(cid)
        assert hub.connection_ids() == expected


async def test_slow_recipient_times_out_without_stalling_others(hub, make_connection):
    fast, slow = make_connection("fast"), make_connection("slow")
    await hub.register(fast)
    await hub.register(slow)
    slow.transport.delay_s = 5.0

    started = time.perf_counter()
    result = await hub.broadcast(MessageEvent(sender="x", text="hello"))
    elapsed = time.perf_counter() - started

    assert elapsed < 1.0
    assert result.delivered == ["fast"]
    assert result.failed == ["slow"]
    # A timeout is a delivery failure, not a lost transport.
    assert "slow" in hub
    assert hub.get_stats().total_delivery_failures == 1


async def test_broken_recipient_removed_after_fan_out(hub, make_connection):
    a, b, c = make_connection("a"), make_connection("b"), make_connection("c")
    for conn in (a, b, c):
        await hub.register(conn)
    b.transport.broken = True

    result = await hub.broadcast(MessageEvent(sender="x", text="still here?"))

    assert sorted(result.delivered) == ["a", "c"]
    assert result.failed == ["b"]
    assert "b" not in hub
    for survivor in (a, c):
        assert [m.text for m in survivor.transport.frames_of("message")] == ["still here?"]
        assert survivor.transport.frames()[-1].type == "presence"
        assert survivor.transport.frames()[-1].status == "offline"


async def test_concurrent_unregister_happens_once(hub, make_connection):
    a, b = make_connection("a"), make_connection("b")
    await hub.register(a)
    await hub.register(b)

    outcomes = await asyncio.gather(*(hub.unregister("b", reason=f"detector-{i}") for i in range(4)))

    assert sorted(outcomes) == [False, False, False, True]
    offline = [p for p in a.transport.frames_of("presence") if p.status == "offline"]
    assert len(offline) == 1


async def test_cancelled_unregister_still_closes_and_announces(hub, make_connection):
    a, b = make_connection("a"), make_connection("b")
    await hub.register(a)
    await hub.register(b)
    b.transport.close_delay_s = 0.05

    caller = asyncio.create_task(hub.unregister("b", reason="disconnect"))
    while "b" in hub:
        await asyncio.sleep(0)
    caller.cancel()
    with pytest.raises(asyncio.CancelledError):
        await caller

    for _ in range(100):
        if any(p.status == "offline" for p in a.transport.frames_of("presence")):
            break
        await asyncio.sleep(0.01)
    offline = [p.participant for p in a.transport.frames_of("presence") if p.status == "offline"]
    assert offline == ["b"]
    assert b.transport.close_code == NORMAL_CLOSURE


async def test_stale_cleanup_leaves_reconnected_session_alone(hub, make_connection):
    old = make_connection("a")
    await hub.register(old)
    old.last_seen = utcnow() - timedelta(seconds=120)
    assert await hub.expire_stale(timeout_s=30) == ["a"]

    new = make_connection("a")
    await hub.register(new)

    # The old route's cleanup and a late fan-out failure both target the old session.
    assert await hub.unregister("a", reason="disconnect", expected=old) is False
    await hub._drop_lost([old])

    assert hub.get("a") is new
    assert new.alive
    assert new.transport.close_code is None
    assert await hub.unregister("a", expected=new) is True


async def test_touch_only_refreshes_the_expected_session(hub, make_connection):
    old = make_connection("a")
    await hub.register(old)
    await hub.unregister("a")
    new = make_connection("a")
    await hub.register(new)
    new.last_seen = utcnow() - timedelta(seconds=120)

    assert hub.touch("a", expected=old) is False
    assert await hub.expire_stale(timeout_s=30) == ["a"]
    assert "a" not in hub


async def test_unregister_waits_for_in_flight_broadcast(hub, make_connection):
    a = make_connection("a")
    await hub.register(a)
    a.transport.delay_s = 0.05

    broadcast = asyncio.create_task(hub.broadcast(MessageEvent(sender="x", text="one")))
    while not hub._lock.locked():
        await asyncio.sleep(0)
    removed = await hub.unregister("a")

    result = await broadcast
    assert removed is True
    assert result.delivered == ["a"]
    later = await hub.broadcast(MessageEvent(sender="x", text="two"))
    assert later.delivered == []
    assert [m.text for m in a.transport.frames_of("message")] == ["one"]


async def test_messages_forwarded_to_store(hub, store, make_connection):
    await hub.register(make_connection("a"))

    await hub.broadcast(MessageEvent(sender="a", text="first"))
    await hub.broadcast(TypingNotice(sender="a"))
    await hub.broadcast(MessageEvent(sender="a", text="second"))

    assert [m.text for m in await store.recent(10)] == ["first", "second"]


class ExplodingStore:
    async def save(self, message):
        raise RuntimeError("database down")

    async def recent(self, limit):
        raise RuntimeError("database down")


async def test_failing_store_does_not_block_delivery(make_connection):
    hub = BroadcastHub(store=ExplodingStore(), delivery_timeout_s=0.2)
    a = make_connection("a")
    await hub.register(a)

    result = await hub.broadcast(MessageEvent(sender="b", text="hi"))

    assert result.delivered == ["a"]
    assert await hub.replay_history("a", 5) == 0


async def test_hub_without_store(make_connection):
    hub = BroadcastHub(store=None)
    a = make_connection("a")
    await hub.register(a)

    result = await hub.broadcast(MessageEvent(sender="b", text="hi"))

    assert result.delivered == ["a"]
    assert await hub.replay_history("a", 5) == 0


async def test_replay_history_oldest_first(hub, make_connection):
    await hub.register(make_connection("a"))
    for text in ("one", "two", "three"):
        await hub.broadcast(MessageEvent(sender="a", text=text))

    late = make_connection("late")
    await hub.register(late)
    sent = await hub.replay_history("late", 2)

    assert sent == 2
    assert [m.text for m in late.transport.frames_of("message")] == ["two", "three"]


async def test_expire_stale(hub, make_connection):
    quiet, chatty = make_connection("quiet"), make_connection("chatty")
    await hub.register(quiet)
    await hub.register(chatty)
    quiet.last_seen = utcnow() - timedelta(seconds=120)

    expired = await hub.expire_stale(timeout_s=30)

    assert expired == ["quiet"]
    assert hub.connection_ids() == {"chatty"}
    assert quiet.transport.close_code == HEARTBEAT_TIMEOUT_CLOSE_CODE


async def test_touch_refreshes_last_seen(hub, make_connection):
    a = make_connection("a")
    await hub.register(a)
    a.last_seen = utcnow() - timedelta(seconds=120)

    assert hub.touch("a") is True
    assert hub.touch("nobody") is False
    assert await hub.expire_stale(timeout_s=30) == []


async def test_ping_all_drops_dead_transports(hub, make_connection):
    a, b = make_connection("a"), make_connection("b")
    await hub.register(a)
    await hub.register(b)
    b.transport.broken = True

    result = await hub.ping_all()

    assert result.delivered == ["a"]
    assert len(a.transport.frames_of("ping")) == 1
    assert "b" not in hub


async def test_send_to(hub, make_connection):
    a = make_connection("a")
    await hub.register(a)

    assert await hub.send_to("a", Ping()) is True
    assert await hub.send_to("nobody", Ping()) is False
    a.transport.broken = True
    assert await hub.send_to("a", Ping()) is False
    assert "a" not in hub


async def test_close_all(hub, make_connection):
    a, b = make_connection("a"), make_connection("b")
    await hub.register(a)
    await hub.register(b)

    assert await hub.close_all() == 2

    assert len(hub) == 0
    assert a.transport.close_code == GOING_AWAY
    assert a.transport.frames_of("presence")[-1].status == "online"


async def test_participants_and_stats(hub, make_connection):
    await hub.register(make_connection("a", "Alice"))
    await hub.register(make_connection("b", "Bob"))
    await hub.broadcast(MessageEvent(sender="a", text="hi"), exclude_connection_id="a")

    assert [(p.connection_id, p.display_name) for p in hub.participants()] == [("a", "Alice"), ("b", "Bob")]
    stats = hub.get_stats()
    assert stats.active_connections == 2
    assert stats.total_registrations == 2
    # two presence announcements plus one message
    assert stats.total_events_dispatched == 3
