"""
Chat-room echo check: two test accounts join one MUC room, one sends a unique
marker, the other must see it.

States, in order (recorded in `details.states`):
idle -> accounts_ensured -> room_ensured -> sender_joined -> receiver_joined
-> marker_sent -> echo_observed | timed_out | errored -> cleaned
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, Protocol

import httpx
import structlog

from uptime_agent.config import RoomEchoCheck
from uptime_agent.errors import (
    CheckTimeout,
    EchoTimeout,
    JoinTimeout,
    ProtocolJoinError,
    ProtocolSessionError,
    SkippedError,
    UpstreamApiError,
)
from uptime_agent.results import CheckResult, elapsed_ms
from uptime_agent.settings import XmppSettings
from uptime_agent.xmpp_admin import XmppAdminClient, derive_password
from uptime_agent.xmpp_session import (
    ClosedEvent,
    MessageEvent,
    PresenceEvent,
    StreamErrorEvent,
    XmppEvent,
    XmppSession,
    bare_jid,
    join_presence_xml,
    new_marker,
)


logger = structlog.get_logger(__name__)

SHORT_TIMEOUT_S = 5.0
JOIN_TIMEOUT_S = 10.0


class EventSession(Protocol):
    label: str

    async def send(self, xml: str) -> None: ...

    async def next_event(self, timeout: float) -> XmppEvent: ...


class Deadline:
    def __init__(self, seconds: float) -> None:
        self._end = time.monotonic() + max(0.0, float(seconds))

    def remaining(self) -> float:
        return max(0.0, self._end - time.monotonic())

    def budget(self, cap: float) -> float:
        return min(float(cap), self.remaining())


def _raise_if_session_gone(event: XmppEvent, stage: str) -> None:
    if isinstance(event, StreamErrorEvent):
        raise ProtocolSessionError(f"{stage}: stream error: {event.condition}")
    if isinstance(event, ClosedEvent):
        raise ProtocolSessionError(f"{stage}: session closed: {event.reason}")


async def join_room(
    session: EventSession,
    room_jid: str,
    nick: str,
    *,
    stage: str,
    timeout: float,
) -> PresenceEvent:
    """
    Send MUC join presence and wait for a presence from the room's own address.
    A presence error is an immediate rejection, not something to wait out.
    """
    room = bare_jid(room_jid)
    await session.send(join_presence_xml(room, nick))
    end = time.monotonic() + max(0.0, timeout)
    while True:
        remaining = end - time.monotonic()
        if remaining <= 0:
            raise JoinTimeout(stage)
        try:
            event = await session.next_event(remaining)
        except asyncio.TimeoutError:
            raise JoinTimeout(stage) from None
        _raise_if_session_gone(event, stage)
        if not isinstance(event, PresenceEvent) or bare_jid(event.from_jid) != room:
            continue
        if event.type == "error":
            raise ProtocolJoinError(stage, event.error_condition or "", event.error_text)
        if event.type in (None, "available"):
            return event


async def wait_for_room_message(
    session: EventSession,
    room_jid: str,
    match: Callable[[MessageEvent], bool],
    *,
    timeout: float,
    stage: str,
    on_timeout: Callable[[str], Exception] = EchoTimeout,
) -> MessageEvent:
    room = bare_jid(room_jid)
    end = time.monotonic() + max(0.0, timeout)
    while True:
        remaining = end - time.monotonic()
        if remaining <= 0:
            raise on_timeout(stage)
        try:
            event = await session.next_event(remaining)
        except asyncio.TimeoutError:
            raise on_timeout(stage) from None
        _raise_if_session_gone(event, stage)
        if isinstance(event, MessageEvent) and bare_jid(event.from_jid) == room and match(event):
            return event


async def await_marker(session: EventSession, room_jid: str, marker: str, *, timeout: float) -> MessageEvent:
    return await wait_for_room_message(
        session,
        room_jid,
        lambda m: m.type == "groupchat" and m.body == marker,
        timeout=timeout,
        stage="echo",
    )


async def close_quietly(sessions: list[Any]) -> None:
    for session in reversed(sessions):
        try:
            await session.close()
        except Exception as exc:
            logger.warning("Session close failed", label=getattr(session, "label", "?"), error=str(exc))


SessionFactory = Callable[..., Any]


class ChatRoomEchoStrategy:
    def __init__(
        self,
        *,
        settings: XmppSettings | None = None,
        session_factory: SessionFactory = XmppSession,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._session_factory = session_factory
        self._transport = transport

    def _open_session(self, s: XmppSettings, *, jid: str, password: str, label: str) -> Any:
        return self._session_factory(service_url=s.service_url, jid=jid, password=password, label=label)

    async def _ensure_accounts(
        self, s: XmppSettings, deadline: Deadline, accounts: list[tuple[str, str, bool]], details: dict[str, Any]
    ) -> None:
        if not s.admin_api_base:
            return
        async with httpx.AsyncClient(transport=self._transport) as client:
            admin = XmppAdminClient(
                client,
                api_base=s.admin_api_base,
                host=s.host,
                muc_service=s.muc_service,
                admin_jid=s.admin_jid,
                admin_password=s.admin_password,
                timeout=SHORT_TIMEOUT_S,
            )
            provisioning: dict[str, str] = {}
            for user, password, fixed in accounts:
                if fixed:
                    provisioning[user] = "fixed"
                    continue
                try:
                    provisioning[user] = await asyncio.wait_for(
                        admin.ensure_account(user, password), timeout=deadline.budget(SHORT_TIMEOUT_S)
                    )
                except asyncio.TimeoutError:
                    raise CheckTimeout("ensure_account") from None
            details["accounts"] = provisioning
            try:
                await asyncio.wait_for(admin.destroy_room(s.echo_room), timeout=deadline.budget(SHORT_TIMEOUT_S))
            except asyncio.TimeoutError:
                logger.info("destroy_room timed out (ignored)", room=s.echo_room)

    async def run(self, check: RoomEchoCheck) -> CheckResult:
        started = time.perf_counter()
        deadline = Deadline(max(1.0, float(check.timeout_ms) / 1000.0))
        states: list[str] = ["idle"]
        details: dict[str, Any] = {"states": states}
        sessions: list[Any] = []

        try:
            s = self._settings or XmppSettings()
            s.require_echo()
            sender_pw = s.sender_password or derive_password(s.echo_secret, "sender")
            receiver_pw = s.receiver_password or derive_password(s.echo_secret, "receiver")
            room_jid = f"{s.echo_room}@{s.muc_service}"
            details["room"] = room_jid

            await self._ensure_accounts(
                s,
                deadline,
                [(s.sender_user, sender_pw, bool(s.sender_password)), (s.receiver_user, receiver_pw, bool(s.receiver_password))],
                details,
            )
            states.append("accounts_ensured")

            # Only privileged joins may create rooms, so the admin session creates it by joining.
            admin = self._open_session(s, jid=s.admin_jid, password=s.admin_password, label="admin")
            sessions.append(admin)
            await admin.connect(deadline.budget(SHORT_TIMEOUT_S))
            await join_room(admin, room_jid, "uptime-admin", stage="admin_join_create_room", timeout=deadline.budget(JOIN_TIMEOUT_S))
            states.append("room_ensured")

            sender = self._open_session(s, jid=f"{s.sender_user}@{s.host}", password=sender_pw, label="sender")
            sessions.append(sender)
            await sender.connect(deadline.budget(SHORT_TIMEOUT_S))
            await join_room(sender, room_jid, "uptime-sender", stage="sender_join", timeout=deadline.budget(JOIN_TIMEOUT_S))
            states.append("sender_joined")

            receiver = self._open_session(s, jid=f"{s.receiver_user}@{s.host}", password=receiver_pw, label="receiver")
            sessions.append(receiver)
            await receiver.connect(deadline.budget(SHORT_TIMEOUT_S))
            await join_room(receiver, room_jid, "uptime-receiver", stage="receiver_join", timeout=deadline.budget(JOIN_TIMEOUT_S))
            states.append("receiver_joined")

            # The admin stays until both participants are in; a non-persistent room
            # vanishes when its last occupant leaves.
            await admin.close()

            marker = new_marker("echo")
            details["marker"] = marker
            await sender.send_groupchat(room_jid, marker)
            states.append("marker_sent")

            await await_marker(receiver, room_jid, marker, timeout=deadline.remaining())
            states.append("echo_observed")
            return CheckResult(ok=True, duration_ms=elapsed_ms(started, time.perf_counter()), details=details)
        except SkippedError as exc:
            states.append("errored")
            return CheckResult.failure(str(exc), duration_ms=elapsed_ms(started, time.perf_counter()), **details)
        except CheckTimeout as exc:
            states.append("timed_out")
            return CheckResult.failure(str(exc), duration_ms=elapsed_ms(started, time.perf_counter()), **details)
        except (ProtocolJoinError, ProtocolSessionError, UpstreamApiError) as exc:
            states.append("errored")
            logger.warning("Room echo failed", check_key=check.check_key, error=str(exc))
            return CheckResult.failure(str(exc), duration_ms=elapsed_ms(started, time.perf_counter()), **details)
        except Exception as exc:
            states.append("errored")
            logger.warning("Room echo crashed", check_key=check.check_key, error=f"{type(exc).__name__}: {exc}")
            return CheckResult.failure(
                f"{type(exc).__name__}: {exc}", duration_ms=elapsed_ms(started, time.perf_counter()), **details
            )
        finally:
            await close_quietly(sessions)
            states.append("cleaned")
