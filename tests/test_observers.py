"""
Observer session tests with an in-memory channel.
"""
import asyncio
import json
from types import SimpleNamespace

import pytest
import pytest_asyncio

from call_relay.call import CallSource
from call_relay.fanout import CALL_ANSWERED, CALL_ENDED, CALL_ERROR, CALL_STATUS, INCOMING_CALL, PONG
from call_relay.observers import ANSWERED_STATUS, ObserverSession

from conftest import FakeCapability, FakePlatformError, stream


class MemoryChannel:
    def __init__(self, fail: bool = False):
        self.sent = []
        self.fail = fail

    async def send_json(self, data):
        if self.fail:
            raise ConnectionError("socket closed")
        self.sent.append(data)

    def events(self, name):
        return [frame["data"] for frame in self.sent if frame["event"] == name]


async def flush(session):
    """Wait until every frame queued so far has been sent."""
    if session.running:
        await asyncio.wait_for(session._outbox.join(), timeout=1)


@pytest_asyncio.fixture
async def session(relay, hub):
    channel = MemoryChannel()
    session = ObserverSession(channel, engine=relay, fanout=hub, observer_id="browser-a")
    session.start()
    yield session
    await session.close()


@pytest_asyncio.fixture
async def other(relay, hub):
    channel = MemoryChannel()
    session = ObserverSession(channel, engine=relay, fanout=hub, observer_id="browser-b")
    session.start()
    yield session
    await session.close()


@pytest.mark.asyncio
async def test_ping_gets_pong(session):
    await session.handle_text(json.dumps({"event": "ping", "data": {"callId": "C1", "timestamp": 123}}))
    await flush(session)

    [pong] = session.channel.events(PONG)
    assert pong["callId"] == "C1"
    assert pong["originalTimestamp"] == 123
    assert isinstance(pong["serverTimestamp"], int)


@pytest.mark.asyncio
async def test_non_json_and_unknown_frames_are_ignored(session):
    await session.handle_text("not json")
    await session.handle_text(json.dumps(["ping"]))
    await session.handle_text(json.dumps({"event": "dance", "data": {"callId": "C1"}}))
    await flush(session)

    assert session.channel.sent == []


@pytest.mark.asyncio
@pytest.mark.parametrize("event", ["answerCall", "hangupCall", "checkCallStatus"])
async def test_command_without_call_id_is_rejected(session, event):
    await session.handle_message({"event": event, "data": {}})
    await flush(session)

    assert session.channel.events(CALL_ERROR) == [{"callId": None, "error": "callId is required"}]


@pytest.mark.asyncio
async def test_answer_replies_to_requester_only(session, other, relay):
    relay.on_incoming_call(FakeCapability("C1", answer_result=SimpleNamespace(remote_stream=stream())))

    await session.handle_message({"event": "answerCall", "data": {"callId": "C1"}})
    await flush(session)
    await flush(other)

    [answered] = session.channel.events(CALL_ANSWERED)
    assert answered["callId"] == "C1"
    assert answered["status"] == ANSWERED_STATUS
    assert answered["remoteStream"]["id"] == "stream-1"
    assert other.channel.events(CALL_ANSWERED) == []
    assert session.current_call_id == "C1"


@pytest.mark.asyncio
async def test_answer_unknown_call_returns_error(session):
    await session.handle_message({"event": "answerCall", "data": {"callId": "ZZZ"}})
    await flush(session)

    assert session.channel.events(CALL_ERROR) == [{"callId": "ZZZ", "error": "Call not found"}]


@pytest.mark.asyncio
async def test_answer_platform_failure_returns_error(session, relay, registry):
    relay.on_incoming_call(FakeCapability("C1", answer_error=FakePlatformError("media negotiation failed")))

    await session.handle_message({"event": "answerCall", "data": {"callId": "C1"}})
    await flush(session)

    [error] = session.channel.events(CALL_ERROR)
    assert error["callId"] == "C1"
    assert "media negotiation failed" in error["error"]
    assert "C1" in registry


@pytest.mark.asyncio
async def test_hangup_unknown_call_notifies_everyone_once(session, other):
    await session.handle_message({"event": "hangupCall", "data": {"callId": "ZZZ"}})
    await session.handle_message({"event": "hangupCall", "data": {"callId": "ZZZ"}})
    await flush(session)
    await flush(other)

    assert session.channel.events(CALL_ENDED) == [{"callId": "ZZZ"}, {"callId": "ZZZ"}]
    assert other.channel.events(CALL_ENDED) == [{"callId": "ZZZ"}]


@pytest.mark.asyncio
async def test_status_check_replies_to_requester_only(session, other, relay):
    relay.observe("W1", "active", CallSource.WEBHOOK)

    await session.handle_message({"event": "checkCallStatus", "data": {"callId": "W1"}})
    await flush(session)
    await flush(other)

    assert session.channel.events(CALL_STATUS) == [{"callId": "W1", "state": "active", "active": True}]
    assert other.channel.events(CALL_STATUS) == []


@pytest.mark.asyncio
async def test_tracks_current_call(session, relay):
    relay.on_incoming_call(FakeCapability("C1"))
    relay.on_incoming_call(FakeCapability("C2"))
    assert session.current_call_id == "C1"

    relay.retire("C2", reason="test")
    assert session.current_call_id == "C1"

    relay.retire("C1", reason="test")
    assert session.current_call_id is None


@pytest.mark.asyncio
async def test_notifications_arrive_in_order(session, relay):
    capability = FakeCapability("C1")
    relay.on_incoming_call(capability)
    capability.emit("state", {"state": "active"})
    relay.retire("C1", reason="test")
    await flush(session)

    assert [frame["event"] for frame in session.channel.sent] == [INCOMING_CALL, "callActive", CALL_ENDED]


@pytest.mark.asyncio
async def test_failed_channel_does_not_block_others(relay, hub, other):
    broken = ObserverSession(MemoryChannel(fail=True), engine=relay, fanout=hub, observer_id="broken")
    broken.start()

    relay.on_incoming_call(FakeCapability("C1"))
    for _ in range(3):
        await asyncio.sleep(0)
    await flush(other)

    assert not broken.running
    assert broken not in hub.observers
    assert other.channel.events(INCOMING_CALL)[0]["callId"] == "C1"

    relay.retire("C1", reason="test")
    await flush(other)

    assert broken._outbox.empty()
    assert other.channel.events(CALL_ENDED) == [{"callId": "C1"}]
    await broken.close()


@pytest.mark.asyncio
async def test_close_unregisters(session, hub):
    await session.close()

    assert session not in hub.observers
    assert not session.running
