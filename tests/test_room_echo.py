from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from uptime_agent.config import RoomEchoCheck
from uptime_agent.errors import EchoTimeout, JoinTimeout, ProtocolJoinError, ProtocolSessionError
from uptime_agent.room_echo import ChatRoomEchoStrategy, await_marker, join_room
from uptime_agent.settings import XmppSettings
from uptime_agent.xmpp_admin import derive_password, is_already_exists
from uptime_agent.xmpp_session import ClosedEvent, MessageEvent, PresenceEvent, StreamErrorEvent


ROOM = "uptime-echo@conference.chat.local"


class _ScriptedSession:
    """Replays a fixed event sequence, then times out like an idle session."""

    label = "scripted"

    def __init__(self, events: list) -> None:
        self.events = list(events)
        self.sent: list[str] = []

    async def send(self, xml: str) -> None:
        self.sent.append(xml)

    async def next_event(self, timeout: float):
        if self.events:
            return self.events.pop(0)
        await asyncio.sleep(timeout)
        raise asyncio.TimeoutError()


def _settings(**overrides) -> XmppSettings:
    base = dict(
        service_url="wss://chat.local/ws",
        host="chat.local",
        muc_service_override="",
        admin_user="admin",
        admin_password="admin-pw",
        admin_api_base="",
        echo_secret_override="",
        sender_user="uptime-echo-sender",
        sender_password="s-pw",
        receiver_user="uptime-echo-receiver",
        receiver_password="r-pw",
        echo_room="uptime-echo",
        observer_room="",
    )
    base.update(overrides)
    return XmppSettings(**base)


def _check(timeout_ms: int = 3000) -> RoomEchoCheck:
    return RoomEchoCheck.model_validate(
        {"id": "echo", "name": "Echo", "instance_id": "prod", "type": "protocol_room_echo", "timeoutMs": timeout_ms}
    )


@pytest.mark.asyncio
async def test_join_ignores_unrelated_events_until_room_presence() -> None:
    session = _ScriptedSession(
        [
            PresenceEvent(from_jid="someone@chat.local/x"),
            MessageEvent(from_jid=f"{ROOM}/bob", type="groupchat", body="hi"),
            PresenceEvent(from_jid=f"{ROOM.upper()}/sender", type=None),
        ]
    )
    ev = await join_room(session, ROOM, "sender", stage="sender_join", timeout=1.0)
    assert ev.from_jid.endswith("/sender")
    assert "<history maxstanzas='0'/>" in session.sent[0]


@pytest.mark.asyncio
async def test_join_presence_error_is_immediate_and_tagged() -> None:
    session = _ScriptedSession([PresenceEvent(from_jid=f"{ROOM}/admin", type="error", error_condition="forbidden")])
    with pytest.raises(ProtocolJoinError) as exc:
        await join_room(session, ROOM, "admin", stage="admin_join_create_room", timeout=5.0)
    assert str(exc.value) == "XMPP_JOIN_ERROR:admin_join_create_room:forbidden"


@pytest.mark.asyncio
async def test_join_times_out_with_stage() -> None:
    with pytest.raises(JoinTimeout) as exc:
        await join_room(_ScriptedSession([]), ROOM, "receiver", stage="receiver_join", timeout=0.05)
    assert str(exc.value) == "XMPP_JOIN_TIMEOUT:receiver_join"


@pytest.mark.asyncio
async def test_join_aborts_when_session_dies() -> None:
    with pytest.raises(ProtocolSessionError):
        await join_room(_ScriptedSession([StreamErrorEvent(condition="conflict")]), ROOM, "x", stage="s", timeout=1.0)
    with pytest.raises(ProtocolSessionError):
        await join_room(_ScriptedSession([ClosedEvent(reason="eof")]), ROOM, "x", stage="s", timeout=1.0)


@pytest.mark.asyncio
async def test_await_marker_matches_exact_body_from_room() -> None:
    session = _ScriptedSession(
        [
            MessageEvent(from_jid=f"{ROOM}/sender", type="groupchat", body="other"),
            MessageEvent(from_jid="elsewhere@conference.chat.local/sender", type="groupchat", body="M-1"),
            MessageEvent(from_jid=f"{ROOM}/sender", type="chat", body="M-1"),
            MessageEvent(from_jid=f"{ROOM}/sender", type="groupchat", body="M-1"),
        ]
    )
    ev = await await_marker(session, ROOM, "M-1", timeout=1.0)
    assert ev.body == "M-1"
    assert session.events == []


@pytest.mark.asyncio
async def test_await_marker_timeout() -> None:
    with pytest.raises(EchoTimeout) as exc:
        await await_marker(_ScriptedSession([]), ROOM, "M-1", timeout=0.05)
    assert str(exc.value) == "XMPP_ECHO_TIMEOUT"


@pytest.mark.asyncio
async def test_echo_round_trip_closes_every_session(fake_muc) -> None:
    strategy = ChatRoomEchoStrategy(settings=_settings(), session_factory=fake_muc.factory)
    res = await strategy.run(_check())

    assert res.ok is True, res.error_text
    assert res.details["states"] == [
        "idle",
        "accounts_ensured",
        "room_ensured",
        "sender_joined",
        "receiver_joined",
        "marker_sent",
        "echo_observed",
        "cleaned",
    ]
    assert [s.label for s in fake_muc.sessions] == ["admin", "sender", "receiver"]
    assert all(s.closed for s in fake_muc.sessions)
    assert fake_muc.by_label("sender").jid == "uptime-echo-sender@chat.local"
    assert fake_muc.by_label("admin").jid == "admin@chat.local"


@pytest.mark.asyncio
async def test_missing_echo_times_out_and_still_cleans_up(fake_muc) -> None:
    fake_muc.drop_messages = True
    res = await ChatRoomEchoStrategy(settings=_settings(), session_factory=fake_muc.factory).run(_check(timeout_ms=1000))

    assert res.ok is False
    assert res.error_text == "XMPP_ECHO_TIMEOUT"
    assert res.details["states"][-2:] == ["timed_out", "cleaned"]
    assert all(s.closed for s in fake_muc.sessions)


@pytest.mark.asyncio
async def test_admin_join_denied_is_reported_by_stage(fake_muc) -> None:
    fake_muc.deny.add(("uptime-echo@conference.chat.local", "admin"))
    res = await ChatRoomEchoStrategy(settings=_settings(), session_factory=fake_muc.factory).run(_check())

    assert res.ok is False
    assert res.error_text == "XMPP_JOIN_ERROR:admin_join_create_room:forbidden"
    assert "sender_joined" not in res.details["states"]
    assert [s.label for s in fake_muc.sessions] == ["admin"]
    assert fake_muc.sessions[0].closed is True


@pytest.mark.asyncio
async def test_missing_configuration_is_skipped(fake_muc) -> None:
    res = await ChatRoomEchoStrategy(settings=_settings(service_url="", host=""), session_factory=fake_muc.factory).run(
        _check()
    )
    assert res.ok is False
    assert res.error_text.startswith("skipped:")
    assert "XMPP_SERVICE_URL" in res.error_text
    assert fake_muc.sessions == []


@pytest.mark.asyncio
async def test_derived_accounts_are_provisioned_via_admin_api(fake_muc) -> None:
    calls: list[tuple[str, dict]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        command = request.url.path.rsplit("/", 1)[-1]
        payload = json.loads(request.content or b"{}")
        calls.append((command, payload))
        if command == "register" and payload["user"] == "uptime-echo-receiver":
            return httpx.Response(409, text="User already registered")
        return httpx.Response(200, json=0)

    settings = _settings(sender_password="", receiver_password="", admin_api_base="http://admin.local/api", echo_secret_override="s3cret")
    strategy = ChatRoomEchoStrategy(settings=settings, session_factory=fake_muc.factory, transport=httpx.MockTransport(handler))
    res = await strategy.run(_check())

    assert res.ok is True, res.error_text
    assert res.details["accounts"] == {"uptime-echo-sender": "registered", "uptime-echo-receiver": "password_reset"}
    assert [c for c, _ in calls] == ["register", "register", "change_password", "destroy_room"]
    assert calls[2][1]["newpass"] == derive_password("s3cret", "receiver")
    assert fake_muc.by_label("sender").password == derive_password("s3cret", "sender")


def test_derive_password_is_stable_and_role_specific() -> None:
    a = derive_password("secret", "sender")
    assert a == derive_password("secret", "sender")
    assert a != derive_password("secret", "receiver")
    assert len(a) == 24


def test_already_exists_detection() -> None:
    assert is_already_exists(409, "")
    assert is_already_exists(500, "User already registered")
    assert not is_already_exists(500, "internal error")
