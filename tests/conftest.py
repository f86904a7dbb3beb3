from __future__ import annotations

import asyncio
import xml.etree.ElementTree as ET
from typing import Any

import pytest

from uptime_agent.xmpp_session import MessageEvent, PresenceEvent, XmppEvent, bare_jid, groupchat_xml


class FakeSession:
    """In-memory stand-in for XmppSession driven by a FakeMucServer."""

    def __init__(self, server: "FakeMucServer", *, jid: str, password: str, label: str) -> None:
        self.server = server
        self.jid = jid
        self.password = password
        self.label = label
        self.sent: list[str] = []
        self.queue: asyncio.Queue[XmppEvent] = asyncio.Queue()
        self.connected = False
        self.closed = False

    async def connect(self, timeout: float) -> None:
        if self.label in self.server.fail_connect:
            raise RuntimeError(f"connect refused for {self.label}")
        self.connected = True

    def feed(self, event: XmppEvent) -> None:
        self.queue.put_nowait(event)

    async def send(self, xml: str) -> None:
        self.sent.append(xml)
        self.server.route(self, xml)

    async def send_groupchat(self, room_jid: str, body: str) -> None:
        await self.send(groupchat_xml(room_jid, body))

    async def next_event(self, timeout: float) -> XmppEvent:
        return await asyncio.wait_for(self.queue.get(), timeout)

    async def close(self) -> None:
        self.closed = True
        self.server.leave_all(self)


class FakeMucServer:
    """
    Minimal MUC: join presence is confirmed (or denied), groupchat messages fan out
    to every occupant of the room.
    """

    def __init__(self) -> None:
        self.sessions: list[FakeSession] = []
        self.rooms: dict[str, set[FakeSession]] = {}
        self.deny: set[tuple[str, str]] = set()
        self.silent: set[str] = set()
        self.fail_connect: set[str] = set()
        self.drop_messages = False

    def factory(self, *, service_url: str, jid: str, password: str, label: str = "", **_: Any) -> FakeSession:
        session = FakeSession(self, jid=jid, password=password, label=label)
        self.sessions.append(session)
        return session

    def by_label(self, label: str) -> FakeSession:
        return next(s for s in self.sessions if s.label == label)

    def leave_all(self, session: FakeSession) -> None:
        for occupants in self.rooms.values():
            occupants.discard(session)

    def broadcast(self, room: str, body: str, *, sender: str = "system", raw: str = "") -> None:
        for occupant in list(self.rooms.get(room, ())):
            occupant.feed(MessageEvent(from_jid=f"{room}/{sender}", type="groupchat", body=body, raw=raw or body))

    def route(self, session: FakeSession, xml: str) -> None:
        el = ET.fromstring(xml)
        to = el.get("to") or ""
        room = bare_jid(to)
        if el.tag == "presence":
            nick = to.split("/", 1)[1] if "/" in to else session.label
            if (room, session.label) in self.deny:
                session.feed(PresenceEvent(from_jid=to, type="error", error_condition="forbidden"))
                return
            if session.label in self.silent:
                return
            self.rooms.setdefault(room, set()).add(session)
            session.feed(PresenceEvent(from_jid=f"{room}/{nick}", type=None))
        elif el.tag == "message" and not self.drop_messages:
            body_el = el.find("body")
            body = body_el.text if body_el is not None else ""
            self.broadcast(room, body or "", sender=session.label, raw=xml)


@pytest.fixture
def fake_muc() -> FakeMucServer:
    return FakeMucServer()
