"""
Minimal XMPP-over-WebSocket session (RFC 7395) for synthetic checks.

Only what the room echo check and the advanced journey need: SASL PLAIN login,
resource binding, MUC presence and groupchat messages. Incoming stanzas are
parsed into small event objects and pushed into a bounded queue, so the join and
echo procedures are plain loops over `next_event()` and can be driven by fake
sessions in tests.
"""

from __future__ import annotations

import asyncio
import base64
import secrets
import time
import uuid
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from typing import Any, Union
from xml.sax.saxutils import escape, quoteattr

import structlog
from websockets.asyncio.client import connect

from uptime_agent.errors import CheckTimeout, ProtocolSessionError


logger = structlog.get_logger(__name__)

NS_FRAMING = "urn:ietf:params:xml:ns:xmpp-framing"
NS_SASL = "urn:ietf:params:xml:ns:xmpp-sasl"
NS_BIND = "urn:ietf:params:xml:ns:xmpp-bind"
NS_SESSION = "urn:ietf:params:xml:ns:xmpp-session"
NS_STANZAS = "urn:ietf:params:xml:ns:xmpp-stanzas"
NS_MUC = "http://jabber.org/protocol/muc"
NS_PING = "urn:xmpp:ping"

DEFAULT_QUEUE_SIZE = 256


@dataclass(frozen=True)
class PresenceEvent:
    from_jid: str
    type: str | None = None
    error_condition: str | None = None
    error_text: str | None = None


@dataclass(frozen=True)
class MessageEvent:
    from_jid: str
    type: str | None
    body: str | None
    raw: str = ""


@dataclass(frozen=True)
class StreamErrorEvent:
    condition: str
    text: str | None = None


@dataclass(frozen=True)
class ClosedEvent:
    reason: str = ""


XmppEvent = Union[PresenceEvent, MessageEvent, StreamErrorEvent, ClosedEvent]


def local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1] if "}" in tag else tag


def _ns(tag: str) -> str:
    return tag[1:].split("}", 1)[0] if tag.startswith("{") else ""


def bare_jid(jid: str | None) -> str:
    return str(jid or "").split("/", 1)[0].strip().lower()


def new_marker(prefix: str = "uptime") -> str:
    return f"{prefix}-{int(time.time() * 1000)}-{secrets.token_hex(4)}"


def _error_condition(el: ET.Element) -> tuple[str | None, str | None]:
    err = None
    for child in el:
        if local_name(child.tag) == "error":
            err = child
            break
    if err is None:
        return None, None
    condition = None
    text = None
    for child in err:
        name = local_name(child.tag)
        if name == "text":
            text = (child.text or "").strip() or None
        elif condition is None:
            condition = name
    return condition or "undefined-condition", text


def parse_stanza(raw: str) -> XmppEvent | ET.Element | None:
    """
    Parse one framed WebSocket message. Presence/message/stream-error/close map to
    events; anything else (iq, features) is returned as the element itself.
    """
    try:
        el = ET.fromstring(raw)
    except ET.ParseError:
        return None
    name = local_name(el.tag)
    if name == "presence":
        condition, text = _error_condition(el) if el.get("type") == "error" else (None, None)
        return PresenceEvent(
            from_jid=el.get("from") or "",
            type=el.get("type"),
            error_condition=condition,
            error_text=text,
        )
    if name == "message":
        body_el = None
        for child in el:
            if local_name(child.tag) == "body":
                body_el = child
                break
        return MessageEvent(
            from_jid=el.get("from") or "",
            type=el.get("type"),
            body=body_el.text if body_el is not None else None,
            raw=raw,
        )
    if name == "error" and _ns(el.tag) == "http://etherx.jabber.org/streams":
        condition = None
        text = None
        for child in el:
            child_name = local_name(child.tag)
            if child_name == "text":
                text = (child.text or "").strip() or None
            elif condition is None:
                condition = child_name
        return StreamErrorEvent(condition=condition or "undefined-condition", text=text)
    if name == "close" and _ns(el.tag) == NS_FRAMING:
        return ClosedEvent(reason="server_close")
    return el


def join_presence_xml(room_jid: str, nick: str) -> str:
    return (
        f"<presence to={quoteattr(f'{room_jid}/{nick}')} id={quoteattr(uuid.uuid4().hex[:12])}>"
        f"<x xmlns={quoteattr(NS_MUC)}><history maxstanzas='0'/></x></presence>"
    )


def groupchat_xml(room_jid: str, body: str) -> str:
    return (
        f"<message to={quoteattr(room_jid)} type='groupchat' id={quoteattr(uuid.uuid4().hex[:12])}>"
        f"<body>{escape(body)}</body></message>"
    )


class XmppSession:
    def __init__(
        self,
        *,
        service_url: str,
        jid: str,
        password: str,
        resource: str | None = None,
        label: str = "session",
        queue_size: int = DEFAULT_QUEUE_SIZE,
    ) -> None:
        self.service_url = service_url
        self.jid = jid
        self.password = password
        self.resource = resource or f"uptime-{uuid.uuid4().hex[:8]}"
        self.label = label
        self.bound_jid: str | None = None
        self.events: asyncio.Queue[XmppEvent] = asyncio.Queue(maxsize=max(1, int(queue_size)))
        self._ws: Any = None
        self._reader: asyncio.Task[None] | None = None
        self._closed = False

    @property
    def username(self) -> str:
        return self.jid.split("@", 1)[0]

    @property
    def domain(self) -> str:
        return bare_jid(self.jid).split("@", 1)[-1]

    async def connect(self, timeout: float) -> None:
        try:
            await asyncio.wait_for(self._connect(), timeout=max(0.001, timeout))
        except asyncio.TimeoutError:
            await self.close()
            raise CheckTimeout(f"{self.label}_connect") from None
        except BaseException:
            await self.close()
            raise

    async def _connect(self) -> None:
        self._ws = await connect(self.service_url, subprotocols=["xmpp"], open_timeout=None)
        await self._open_stream()
        features = await self._recv_until("features")
        mechanisms = {
            (m.text or "").strip().upper()
            for m in features.iter()
            if local_name(m.tag) == "mechanism"
        }
        if "PLAIN" not in mechanisms:
            raise ProtocolSessionError(f"{self.label}: server does not offer SASL PLAIN ({sorted(mechanisms)})")

        token = base64.b64encode(f"\0{self.username}\0{self.password}".encode("utf-8")).decode("ascii")
        await self._ws.send(f"<auth xmlns={quoteattr(NS_SASL)} mechanism='PLAIN'>{token}</auth>")
        outcome = await self._recv_until("success", "failure")
        if local_name(outcome.tag) != "success":
            condition = next((local_name(c.tag) for c in outcome if local_name(c.tag) != "text"), "failure")
            raise ProtocolSessionError(f"{self.label}: auth failed: {condition}")

        await self._open_stream()
        features = await self._recv_until("features")
        session_el = next((c for c in features if local_name(c.tag) == "session"), None)
        session_required = session_el is not None and not any(local_name(c.tag) == "optional" for c in session_el)

        bind_id = f"bind-{uuid.uuid4().hex[:8]}"
        await self._ws.send(
            f"<iq type='set' id={quoteattr(bind_id)}><bind xmlns={quoteattr(NS_BIND)}>"
            f"<resource>{escape(self.resource)}</resource></bind></iq>"
        )
        bind = await self._recv_iq(bind_id)
        if bind.get("type") != "result":
            raise ProtocolSessionError(f"{self.label}: resource bind failed")
        self.bound_jid = next((j.text for j in bind.iter() if local_name(j.tag) == "jid"), None) or self.jid

        if session_required:
            session_id = f"sess-{uuid.uuid4().hex[:8]}"
            await self._ws.send(f"<iq type='set' id={quoteattr(session_id)}><session xmlns={quoteattr(NS_SESSION)}/></iq>")
            await self._recv_iq(session_id)

        self._reader = asyncio.create_task(self._read_loop())
        await self.send("<presence/>")
        logger.debug("XMPP session ready", label=self.label, jid=self.bound_jid)

    async def _open_stream(self) -> None:
        await self._ws.send(f"<open xmlns={quoteattr(NS_FRAMING)} to={quoteattr(self.domain)} version='1.0'/>")

    async def _recv_element(self) -> ET.Element:
        while True:
            raw = await self._ws.recv()
            if isinstance(raw, bytes):
                raw = raw.decode("utf-8", errors="replace")
            parsed = parse_stanza(raw)
            if isinstance(parsed, StreamErrorEvent):
                raise ProtocolSessionError(f"{self.label}: stream error: {parsed.condition}")
            if isinstance(parsed, ClosedEvent):
                raise ProtocolSessionError(f"{self.label}: stream closed by server")
            if isinstance(parsed, ET.Element):
                if local_name(parsed.tag) == "open":
                    continue
                return parsed

    async def _recv_until(self, *names: str) -> ET.Element:
        while True:
            el = await self._recv_element()
            if local_name(el.tag) in names:
                return el

    async def _recv_iq(self, iq_id: str) -> ET.Element:
        while True:
            el = await self._recv_element()
            if local_name(el.tag) == "iq" and el.get("id") == iq_id:
                if el.get("type") == "error":
                    condition, _text = _error_condition(el)
                    raise ProtocolSessionError(f"{self.label}: iq {iq_id} failed: {condition}")
                return el

    def _push(self, event: XmppEvent) -> None:
        if self.events.full():
            try:
                self.events.get_nowait()
            except asyncio.QueueEmpty:
                pass
        self.events.put_nowait(event)

    async def _read_loop(self) -> None:
        reason = "eof"
        try:
            async for raw in self._ws:
                if isinstance(raw, bytes):
                    raw = raw.decode("utf-8", errors="replace")
                parsed = parse_stanza(raw)
                if parsed is None:
                    continue
                if isinstance(parsed, ET.Element):
                    await self._answer_iq(parsed)
                    continue
                self._push(parsed)
                if isinstance(parsed, ClosedEvent):
                    break
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            reason = f"{type(exc).__name__}: {exc}"
        self._push(ClosedEvent(reason=reason))

    async def _answer_iq(self, el: ET.Element) -> None:
        if local_name(el.tag) != "iq" or el.get("type") not in {"get", "set"}:
            return
        is_ping = any(local_name(c.tag) == "ping" and _ns(c.tag) == NS_PING for c in el)
        to = f" to={quoteattr(el.get('from'))}" if el.get("from") else ""
        iq_id = quoteattr(el.get("id") or "")
        if is_ping:
            await self.send(f"<iq type='result' id={iq_id}{to}/>")
        else:
            await self.send(
                f"<iq type='error' id={iq_id}{to}><error type='cancel'>"
                f"<service-unavailable xmlns={quoteattr(NS_STANZAS)}/></error></iq>"
            )

    async def send(self, xml: str) -> None:
        if self._ws is None or self._closed:
            raise ProtocolSessionError(f"{self.label}: session is not connected")
        await self._ws.send(xml)

    async def next_event(self, timeout: float) -> XmppEvent:
        return await asyncio.wait_for(self.events.get(), timeout=max(0.0, timeout))

    async def send_groupchat(self, room_jid: str, body: str) -> None:
        await self.send(groupchat_xml(room_jid, body))

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        ws = self._ws
        if ws is not None:
            try:
                await asyncio.wait_for(ws.send(f"<close xmlns={quoteattr(NS_FRAMING)}/>"), timeout=1.0)
            except Exception:
                pass
            try:
                await asyncio.wait_for(ws.close(), timeout=2.0)
            except Exception:
                try:
                    ws.transport.abort()
                except Exception:
                    pass
        if self._reader is not None and not self._reader.done():
            self._reader.cancel()
            try:
                await self._reader
            except (asyncio.CancelledError, Exception):
                pass
        logger.debug("XMPP session closed", label=self.label)
