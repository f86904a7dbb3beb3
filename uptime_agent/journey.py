"""
Business-workflow journey: create an ephemeral app, users and chat rooms on the
platform, exercise them, then tear everything down.

basic:    config -> admin login -> app -> N users -> chat -> add member
advanced: basic prelude with >= 3 users (Alice, Bob, Charlie), two rooms
          ("test", "validation") with a join/send/echo cycle each, media upload
          + room notification + public fetch, member removal with a negative
          rejoin check, and a final post-removal message.

Every created entity registers its compensating action at creation time;
cleanup always runs, newest first, and never fails the journey.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable

import httpx
import structlog

from uptime_agent.cleanup import CleanupStack, StepTrace
from uptime_agent.config import JourneyCheck
from uptime_agent.errors import CheckTimeout, JoinTimeout, ProtocolJoinError, SkippedError, UnexpectedRejoin, UpstreamApiError
from uptime_agent.observer import ObserverChannel
from uptime_agent.platform_api import PlatformApi, PlatformUser
from uptime_agent.results import CheckResult, elapsed_ms
from uptime_agent.room_echo import JOIN_TIMEOUT_S, SHORT_TIMEOUT_S, await_marker, join_room, wait_for_room_message
from uptime_agent.settings import JourneySettings, XmppSettings
from uptime_agent.xmpp_session import XmppSession, new_marker


logger = structlog.get_logger(__name__)

ADVANCED_USER_NAMES = ("Alice", "Bob", "Charlie")
ECHO_TIMEOUT_S = 15.0
MEDIA_NOTIFICATION_TIMEOUT_S = 20.0
DEFAULT_JOURNEY_TIMEOUT_MS = 60_000


@dataclass
class JourneyResult:
    ok: bool
    details: dict[str, Any]


@dataclass
class _Room:
    label: str
    name: str
    jid: str


@dataclass
class _RunState:
    owner_token: str | None = None
    app_id: str | None = None
    app_token: str | None = None
    users: list[PlatformUser] = field(default_factory=list)
    chat_owner_token: str | None = None
    rooms: dict[str, _Room] = field(default_factory=dict)
    sessions: dict[str, Any] = field(default_factory=dict)


class JourneyOrchestrator:
    join_timeout: float = JOIN_TIMEOUT_S

    def __init__(
        self,
        settings: JourneySettings,
        client: httpx.AsyncClient,
        *,
        xmpp: XmppSettings | None = None,
        session_factory: Callable[..., Any] = XmppSession,
    ) -> None:
        self.settings = settings
        self.xmpp = xmpp or XmppSettings()
        self.api = PlatformApi(client, settings.api_base)
        self._session_factory = session_factory
        self.trace = StepTrace()
        self.details: dict[str, Any] = {"steps": self.trace.steps}

    async def run(self, mode: str = "basic") -> JourneyResult:
        advanced = mode == "advanced"
        suffix = uuid.uuid4().hex[:8]
        app_display_name = f"{self.settings.app_name_prefix}-{suffix}"
        self.details.update({"suffix": suffix, "appDisplayName": app_display_name, "mode": "advanced" if advanced else "basic"})

        state = _RunState()
        cleanup = CleanupStack()
        observer = ObserverChannel(self.xmpp, session_factory=self._session_factory, prefix=f"[journey {suffix}]")

        try:
            if advanced:
                await observer.open(SHORT_TIMEOUT_S)
                await observer.notify("started")
            await self._prelude(state, cleanup, suffix=suffix, app_display_name=app_display_name, advanced=advanced)
            if advanced:
                await self._advanced(state, cleanup, suffix=suffix, observer=observer)
            else:
                await self._basic_chat(state, cleanup, suffix=suffix)
            self.trace.step("ok")
            await observer.notify("ok")
            return JourneyResult(ok=True, details=self.details)
        except Exception as exc:
            message = str(exc) or type(exc).__name__
            self.trace.step("error", message=message)
            self.details["error"] = message
            await observer.notify(f"failed: {message}")
            logger.warning("Journey failed", mode=self.details["mode"], error=message)
            return JourneyResult(ok=False, details=self.details)
        finally:
            await cleanup.run(self.trace)
            await observer.close()

    async def _prelude(
        self, state: _RunState, cleanup: CleanupStack, *, suffix: str, app_display_name: str, advanced: bool
    ) -> None:
        s = self.settings
        api = self.api

        self.trace.step("get_base_app_config")
        base_app_token = await api.get_app_token(s.base_domain_name)

        self.trace.step("login_admin_user")
        state.owner_token = await api.login_with_email(base_app_token, s.admin_email, s.admin_password)
        owner_token = state.owner_token

        self.trace.step("create_app")
        state.app_id, state.app_token = await api.create_app(owner_token, app_display_name)
        app_id = state.app_id
        self.details["appId"] = app_id
        cleanup.push("cleanup_delete_app", lambda: api.delete_app(owner_token, app_id))

        users_count = max(len(ADVANCED_USER_NAMES), s.users_count) if advanced else max(1, s.users_count)
        for i in range(users_count):
            self.trace.step("signup_user_v2", i=i)
            first_name = ADVANCED_USER_NAMES[i] if advanced and i < len(ADVANCED_USER_NAMES) else f"Uptime{i}"
            user = await api.sign_up_user(
                state.app_token,
                email=f"uptime-{suffix}-{i}@example.com",
                password=f"Pass-{suffix}-{i}-Abc123",
                first_name=first_name,
                last_name=f"Journey{suffix}",
            )
            state.users.append(user)
            if i == 0:
                # Registered once; deletes whatever users exist by the time cleanup runs.
                cleanup.push(
                    "cleanup_delete_users",
                    lambda: api.delete_users(owner_token, app_id, [u.id for u in state.users]),
                )
                if user.token:
                    state.chat_owner_token = user.token
        if not state.chat_owner_token:
            raise UpstreamApiError("signup v2", None, "missing token for first user")

    async def _create_room(self, state: _RunState, cleanup: CleanupStack, *, label: str, title: str, uuid_: str) -> _Room:
        token = state.chat_owner_token or ""
        api = self.api
        self.trace.step("create_chat", room=label)
        name = await api.create_chat(token, title=title, uuid=uuid_)
        cleanup.push(f"cleanup_delete_chat_{label}" if label != "main" else "cleanup_delete_chat", lambda: api.delete_chat(token, name))
        jid = name if "@" in name else f"{name}@{self.xmpp.muc_service}"
        room = _Room(label=label, name=name, jid=jid.lower())
        state.rooms[label] = room
        return room

    async def _basic_chat(self, state: _RunState, cleanup: CleanupStack, *, suffix: str) -> None:
        room = await self._create_room(state, cleanup, label="main", title=f"uptime-{suffix}", uuid_=suffix)
        self.details["chatName"] = room.name
        members = [u.xmpp_username for u in state.users if u.xmpp_username]
        if len(members) > 1:
            self.trace.step("chat_add_user")
            await self.api.add_chat_members(state.chat_owner_token or "", room.name, [members[1]])

    async def _open_session(self, state: _RunState, cleanup: CleanupStack, user: PlatformUser, label: str) -> Any:
        if not user.xmpp_username or not user.xmpp_password:
            raise UpstreamApiError("signup v2", None, f"missing xmpp credentials for {label}")
        if not state.sessions:
            sessions = state.sessions

            async def _close_all() -> None:
                for session in reversed(list(sessions.values())):
                    await session.close()

            cleanup.push("cleanup_close_sessions", _close_all)
        session = self._session_factory(
            service_url=self.xmpp.service_url,
            jid=f"{user.xmpp_username}@{self.xmpp.host}",
            password=user.xmpp_password,
            label=label,
        )
        state.sessions[label] = session
        self.trace.step("xmpp_connect", user=label)
        await session.connect(SHORT_TIMEOUT_S)
        return session

    async def _echo_cycle(self, room: _Room, sender: Any, receiver: Any, *, sender_nick: str, receiver_nick: str) -> None:
        self.trace.step("xmpp_join", room=room.label, user=sender_nick)
        await join_room(sender, room.jid, sender_nick, stage=f"{sender_nick}_join_{room.label}", timeout=self.join_timeout)
        self.trace.step("xmpp_join", room=room.label, user=receiver_nick)
        await join_room(receiver, room.jid, receiver_nick, stage=f"{receiver_nick}_join_{room.label}", timeout=self.join_timeout)
        marker = new_marker(room.label)
        self.trace.step("xmpp_send", room=room.label, marker=marker)
        await sender.send_groupchat(room.jid, marker)
        await await_marker(receiver, room.jid, marker, timeout=ECHO_TIMEOUT_S)
        self.trace.step("xmpp_echo_observed", room=room.label)

    async def _advanced(self, state: _RunState, cleanup: CleanupStack, *, suffix: str, observer: ObserverChannel) -> None:
        api = self.api
        owner = state.chat_owner_token or ""
        alice_u, bob_u, charlie_u = state.users[0], state.users[1], state.users[2]

        test = await self._create_room(state, cleanup, label="test", title=f"uptime-{suffix}-test", uuid_=f"{suffix}-t")
        validation = await self._create_room(
            state, cleanup, label="validation", title=f"uptime-{suffix}-validation", uuid_=f"{suffix}-v"
        )
        self.details["rooms"] = {label: room.name for label, room in state.rooms.items()}

        self.trace.step("chat_add_users", room="test")
        await api.add_chat_members(owner, test.name, [u.xmpp_username or "" for u in (bob_u, charlie_u)])
        self.trace.step("chat_add_users", room="validation")
        await api.add_chat_members(owner, validation.name, [bob_u.xmpp_username or ""])
        await observer.notify("rooms ready")

        alice = await self._open_session(state, cleanup, alice_u, "alice")
        bob = await self._open_session(state, cleanup, bob_u, "bob")

        for room in (test, validation):
            await self._echo_cycle(room, alice, bob, sender_nick="alice", receiver_nick="bob")
            await observer.notify(f"echo ok in {room.label}")

        await self._upload_and_verify(test, alice_u, bob, suffix=suffix)
        await observer.notify("media ok")

        self.trace.step("chat_remove_user", room="test", user="charlie")
        await api.remove_chat_members(owner, test.name, [charlie_u.xmpp_username or ""])

        charlie = await self._open_session(state, cleanup, charlie_u, "charlie")
        await self._assert_rejoin_denied(test, charlie)
        await observer.notify("removal enforced")

        self.trace.step("post_removal_message", room="test")
        await alice.send_groupchat(test.jid, f"post-removal {new_marker('smoke')}")

    async def _upload_and_verify(self, room: _Room, uploader: PlatformUser, listener: Any, *, suffix: str) -> None:
        filename = f"uptime-{suffix}.txt"
        # Arm the listener before uploading: the server announces the new media
        # over XMPP before the upload request returns.
        waiter = asyncio.create_task(
            wait_for_room_message(
                listener,
                room.jid,
                lambda m: filename in (m.raw or "") or filename in (m.body or ""),
                timeout=MEDIA_NOTIFICATION_TIMEOUT_S,
                stage="media_notification",
                on_timeout=CheckTimeout,
            )
        )
        try:
            self.trace.step("upload_media", room=room.label, filename=filename)
            location = await self.api.upload_media(
                uploader.token or "",
                room.name,
                filename=filename,
                content=f"uptime journey {suffix}\n".encode("utf-8"),
            )
            self.details["mediaLocation"] = location
            self.trace.step("await_media_notification", room=room.label)
            await waiter
        finally:
            if not waiter.done():
                waiter.cancel()
                try:
                    await waiter
                except (asyncio.CancelledError, Exception):
                    pass

        self.trace.step("fetch_uploaded_file")
        await self.api.fetch_public(location)

    async def _assert_rejoin_denied(self, room: _Room, session: Any) -> None:
        stage = "charlie_rejoin_after_removal"
        self.trace.step("negative_rejoin", room=room.label, user="charlie")
        try:
            await join_room(session, room.jid, "charlie", stage=stage, timeout=self.join_timeout)
        except ProtocolJoinError as exc:
            self.details["rejoinDenied"] = exc.condition
            return
        except JoinTimeout:
            self.details["rejoinDenied"] = "no_confirmation"
            return
        raise UnexpectedRejoin(stage)


class JourneyCheckStrategy:
    def __init__(
        self,
        *,
        settings: JourneySettings | None = None,
        xmpp_settings: XmppSettings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        session_factory: Callable[..., Any] = XmppSession,
    ) -> None:
        self._settings = settings
        self._xmpp_settings = xmpp_settings
        self._transport = transport
        self._session_factory = session_factory

    async def run(self, check: JourneyCheck) -> CheckResult:
        started = time.perf_counter()
        timeout_s = max(1.0, float(check.timeout_ms or DEFAULT_JOURNEY_TIMEOUT_MS) / 1000.0)
        orchestrator: JourneyOrchestrator | None = None
        try:
            settings = self._settings or JourneySettings()
            settings.require()
            xmpp = self._xmpp_settings or XmppSettings()
            mode = check.mode or settings.mode
            if mode not in {"basic", "advanced"}:
                mode = "basic"
            if mode == "advanced":
                xmpp.require_session()

            async with httpx.AsyncClient(transport=self._transport, timeout=15.0) as client:
                orchestrator = JourneyOrchestrator(settings, client, xmpp=xmpp, session_factory=self._session_factory)
                # Cancelling on timeout still runs the orchestrator's cleanup.
                res = await asyncio.wait_for(orchestrator.run(mode), timeout=timeout_s)
            return CheckResult(
                ok=bool(res.ok),
                duration_ms=elapsed_ms(started, time.perf_counter()),
                error_text=None if res.ok else str(res.details.get("error") or "journey failed"),
                details=res.details,
            )
        except asyncio.TimeoutError:
            details = orchestrator.details if orchestrator is not None else {}
            return CheckResult.failure("timeout", duration_ms=elapsed_ms(started, time.perf_counter()), **details)
        except SkippedError as exc:
            return CheckResult.failure(str(exc), duration_ms=elapsed_ms(started, time.perf_counter()))
        except Exception as exc:
            return CheckResult.failure(
                f"{type(exc).__name__}: {exc}", duration_ms=elapsed_ms(started, time.perf_counter())
            )


async def run_journey(
    settings: JourneySettings,
    *,
    mode: str | None = None,
    xmpp: XmppSettings | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> JourneyResult:
    settings.require()
    async with httpx.AsyncClient(transport=transport, timeout=15.0) as client:
        orchestrator = JourneyOrchestrator(settings, client, xmpp=xmpp)
        return await orchestrator.run(mode or settings.mode)
