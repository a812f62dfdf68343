import asyncio
import time

import pytest

from relay.errors import NotRoomMember, UnknownConnection
from schemas.events import Event, EventType, Sender


def chat_event(relay, connection_id, room_id="sess-1", text="hi"):
    connection = relay.registry.lookup(connection_id)
    return Event(
        name=EventType.CHAT_MESSAGE,
        room_id=room_id,
        sender=Sender(**connection.identity()),
        payload={"text": text},
    )


@pytest.mark.asyncio
async def test_only_other_members_receive(relay, connect) -> None:
    c1, t1 = connect(user_id="alice")
    c2, t2 = connect(user_id="bob")
    await relay.rooms.join("sess-1", c1)
    await relay.rooms.join("sess-1", c2)

    report = await relay.router.publish(chat_event(relay, c1))

    assert report.delivered == [c2]
    assert t1.events("chat-message") == []
    [frame] = t2.events("chat-message")
    assert frame["payload"] == {"text": "hi"}
    assert frame["session_id"] == "sess-1"
    assert frame["sender"] == {"connection_id": c1, "user_id": "alice"}


@pytest.mark.asyncio
async def test_rooms_are_isolated(relay, connect) -> None:
    c1, _ = connect()
    c2, t2 = connect()
    await relay.rooms.join("sess-1", c1)
    await relay.rooms.join("sess-2", c2)

    report = await relay.router.publish(chat_event(relay, c1))

    assert report.attempted == 0
    assert t2.sent == []


@pytest.mark.asyncio
async def test_sender_must_be_member_of_target_room(relay, connect) -> None:
    c1, _ = connect()
    c2, t2 = connect()
    await relay.rooms.join("sess-1", c1)
    await relay.rooms.join("sess-2", c2)

    with pytest.raises(NotRoomMember):
        await relay.router.publish(chat_event(relay, c1, room_id="sess-2"))
    assert t2.sent == []


@pytest.mark.asyncio
async def test_unknown_sender_is_rejected(relay, connect) -> None:
    c1, _ = connect()
    await relay.rooms.join("sess-1", c1)
    event = chat_event(relay, c1)
    relay.registry.deregister(c1)

    with pytest.raises(UnknownConnection):
        await relay.router.publish(event)


@pytest.mark.asyncio
async def test_deregistered_member_is_never_attempted(relay, connect) -> None:
    c1, _ = connect()
    c2, t2 = connect()
    c3, t3 = connect()
    for cid in (c1, c2, c3):
        await relay.rooms.join("sess-1", cid)

    relay.registry.deregister(c2)
    report = await relay.router.publish(chat_event(relay, c1))

    assert report.delivered == [c3]
    assert c2 not in report.failed + report.timed_out
    assert t2.sent == []
    assert len(t3.events("chat-message")) == 1


@pytest.mark.asyncio
async def test_failed_recipient_does_not_abort_fan_out(relay, connect) -> None:
    c1, _ = connect()
    c2, _ = connect(fail_with=RuntimeError("socket closed"))
    c3, t3 = connect()
    for cid in (c1, c2, c3):
        await relay.rooms.join("sess-1", cid)

    report = await relay.router.publish(chat_event(relay, c1))

    assert report.failed == [c2]
    assert report.delivered == [c3]
    assert len(t3.events("chat-message")) == 1
    # plain send failures are not retried and do not evict the member
    assert c2 in relay.rooms.members_of("sess-1")


@pytest.mark.asyncio
async def test_stalled_recipient_is_timed_out_and_disconnected(relay, connect) -> None:
    c1, _ = connect()
    c2, t2 = connect()
    c3, t3 = connect()
    for cid in (c1, c2, c3):
        await relay.rooms.join("sess-1", cid)
    t2.stall()

    started = time.monotonic()
    report = await relay.router.publish(chat_event(relay, c1))
    elapsed = time.monotonic() - started

    assert report.timed_out == [c2]
    assert report.delivered == [c3]
    assert elapsed < relay.router.delivery_timeout + 1.5
    assert c2 not in relay.registry
    assert c2 not in relay.rooms.members_of("sess-1")
    assert t2.closed is True
    assert t2.close_code == 1011
    assert len(t3.events("chat-message")) == 1

    t2.release()
    next_report = await relay.router.publish(chat_event(relay, c1, text="again"))
    assert next_report.delivered == [c3]


@pytest.mark.asyncio
async def test_several_stalled_recipients_cost_one_timeout(relay, connect) -> None:
    sender, _ = connect()
    healthy, t_healthy = connect()
    stalled = [connect() for _ in range(4)]
    for cid in [sender, healthy] + [cid for cid, _ in stalled]:
        await relay.rooms.join("sess-1", cid)
    for _, transport in stalled:
        transport.stall()

    started = time.monotonic()
    report = await relay.router.publish(chat_event(relay, sender))
    elapsed = time.monotonic() - started

    assert elapsed < 2 * relay.router.delivery_timeout
    assert sorted(report.timed_out) == sorted(cid for cid, _ in stalled)
    assert report.delivered == [healthy]
    assert relay.rooms.members_of("sess-1") == {sender, healthy}
    for cid, transport in stalled:
        assert cid not in relay.registry
        assert transport.close_code == 1011

    left = t_healthy.events("participant-left")
    assert sorted(frame["connection_id"] for frame in left) == sorted(cid for cid, _ in stalled)
    assert {frame["online_count"] for frame in left} == {2}


@pytest.mark.asyncio
async def test_events_from_one_sender_arrive_in_order(relay, connect) -> None:
    c1, _ = connect()
    c2, t2 = connect()
    await relay.rooms.join("sess-1", c1)
    await relay.rooms.join("sess-1", c2)

    for index in range(25):
        await relay.router.publish(chat_event(relay, c1, text=f"m{index}"))

    texts = [frame["payload"]["text"] for frame in t2.events("chat-message")]
    assert texts == [f"m{index}" for index in range(25)]


@pytest.mark.asyncio
async def test_concurrent_senders_do_not_interleave_a_frame(relay, connect) -> None:
    c1, _ = connect()
    c2, _ = connect()
    c3, t3 = connect()
    for cid in (c1, c2, c3):
        await relay.rooms.join("sess-1", cid)

    async def burst(sender, prefix):
        for index in range(10):
            await relay.router.publish(chat_event(relay, sender, text=f"{prefix}{index}"))

    await asyncio.gather(burst(c1, "a"), burst(c2, "b"))

    texts = [frame["payload"]["text"] for frame in t3.events("chat-message")]
    assert len(texts) == 20
    assert [t for t in texts if t.startswith("a")] == [f"a{i}" for i in range(10)]
    assert [t for t in texts if t.startswith("b")] == [f"b{i}" for i in range(10)]


@pytest.mark.asyncio
async def test_announce_reaches_everyone_but_excluded(relay, connect) -> None:
    c1, t1 = connect()
    c2, t2 = connect()
    await relay.rooms.join("sess-1", c1)
    await relay.rooms.join("sess-1", c2)

    await relay.router.announce("sess-1", {"event": "notice"}, exclude=[c1])
    await relay.router.announce("sess-1", {"event": "broadcast"})

    assert t1.events("notice") == []
    assert len(t2.events("notice")) == 1
    assert len(t1.events("broadcast")) == 1
    assert len(t2.events("broadcast")) == 1
