from __future__ import annotations

import asyncio
import json
import re

import httpx
import pytest

from uptime_agent.cleanup import CleanupStack, StepTrace
from uptime_agent.config import JourneyCheck
from uptime_agent.journey import JourneyCheckStrategy, JourneyOrchestrator
from uptime_agent.settings import JourneySettings, XmppSettings


MUC = "conference.chat.local"


def _journey_settings(**overrides) -> JourneySettings:
    base = dict(
        api_base="http://platform.local/api",
        base_domain_name="uptime",
        admin_email="ops@example.com",
        admin_password="pw",
        app_name_prefix="uptime-journey",
        users_count=2,
        mode="basic",
    )
    base.update(overrides)
    return JourneySettings(**base)


def _xmpp_settings(**overrides) -> XmppSettings:
    base = dict(
        service_url="wss://chat.local/ws",
        host="chat.local",
        muc_service_override="",
        admin_user="admin",
        admin_password="admin-pw",
        admin_api_base="",
        echo_secret_override="",
        sender_user="s",
        sender_password="",
        receiver_user="r",
        receiver_password="",
        echo_room="uptime-echo",
        observer_room="",
    )
    base.update(overrides)
    return XmppSettings(**base)


class FakePlatform:
    """Records every call; optionally fails one step or talks to a FakeMucServer."""

    def __init__(self, muc=None, *, fail: tuple[str, str] | None = None, deny_on_removal: bool = True) -> None:
        self.muc = muc
        self.fail = fail
        self.deny_on_removal = deny_on_removal
        self.calls: list[tuple[str, str]] = []
        self.signups = 0
        self.chats = 0
        self.deleted_user_ids: list[str] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        method = request.method
        path = request.url.path.replace("/api", "", 1) if request.url.host == "platform.local" else request.url.path
        self.calls.append((method, path))
        if self.fail == (method, path):
            return httpx.Response(500, text="boom")

        if method == "GET" and path == "/v1/apps/get-config":
            return httpx.Response(200, json={"appToken": "base-token"})
        if method == "POST" and path == "/v1/users/login-with-email":
            return httpx.Response(200, json={"token": "owner-token"})
        if method == "POST" and path == "/v1/apps":
            return httpx.Response(201, json={"app": {"_id": "app1", "appToken": "app-token"}})
        if method == "DELETE" and path == "/v1/apps/app1":
            return httpx.Response(200, json={})
        if method == "POST" and path == "/v2/users/sign-up-with-email":
            i = self.signups
            self.signups += 1
            return httpx.Response(
                200,
                json={"token": f"user-token-{i}", "user": {"_id": f"u{i}", "xmppUsername": f"x{i}", "xmppPassword": f"xp{i}"}},
            )
        if method == "POST" and path == "/v1/users/delete-many-with-app-id/app1":
            self.deleted_user_ids = json.loads(request.content)["usersIdList"]
            return httpx.Response(200, json={})
        if method == "POST" and path == "/v1/chats":
            self.chats += 1
            return httpx.Response(200, json={"result": {"name": f"room{self.chats}"}})
        if method == "DELETE" and path == "/v1/chats":
            return httpx.Response(200, json={})
        if path == "/v1/chats/users-access":
            body = json.loads(request.content)
            if method == "DELETE" and self.muc is not None and self.deny_on_removal:
                self.muc.deny.add((f"{body['chatName']}@{MUC}", "charlie"))
            return httpx.Response(200, json={})
        if method == "POST" and path.startswith("/v1/chats/media/"):
            chat = path.rsplit("/", 1)[-1]
            m = re.search(rb'filename="([^"]+)"', request.content)
            filename = m.group(1).decode() if m else "?"
            if self.muc is not None:
                self.muc.broadcast(f"{chat}@{MUC}", f"new media {filename}")
            return httpx.Response(200, json={"results": [{"location": f"https://cdn.local/{filename}"}]})
        if request.url.host == "cdn.local":
            return httpx.Response(200, text="file")
        return httpx.Response(404, text="unexpected")

    def cleanup_calls(self) -> list[tuple[str, str]]:
        return [
            c
            for c in self.calls
            if c[0] == "DELETE" and c[1] in {"/v1/apps/app1", "/v1/chats"}
            or c[1] == "/v1/users/delete-many-with-app-id/app1"
        ]


def _cleanup_steps(details: dict) -> list[str]:
    return [s["name"] for s in details["steps"] if str(s["name"]).startswith("cleanup_")]


@pytest.mark.asyncio
async def test_cleanup_stack_runs_newest_first_and_survives_failures() -> None:
    ran: list[str] = []

    async def ok(name: str) -> None:
        ran.append(name)

    async def bad() -> None:
        ran.append("bad")
        raise RuntimeError("nope")

    stack = CleanupStack()
    stack.push("first", lambda: ok("first"))
    stack.push("bad", bad)
    stack.push("last", lambda: ok("last"))
    trace = StepTrace()
    outcomes = await stack.run(trace)

    assert ran == ["last", "bad", "first"]
    assert [o["ok"] for o in outcomes] == [True, False, True]
    assert "RuntimeError: nope" in outcomes[1]["error"]
    assert trace.names() == ["last", "bad", "first"]
    assert len(stack) == 0


@pytest.mark.asyncio
async def test_basic_journey_happy_path() -> None:
    platform = FakePlatform()
    async with httpx.AsyncClient(transport=httpx.MockTransport(platform)) as client:
        res = await JourneyOrchestrator(_journey_settings(), client, xmpp=_xmpp_settings()).run("basic")

    assert res.ok is True, res.details.get("error")
    names = [s["name"] for s in res.details["steps"]]
    assert names[:7] == [
        "get_base_app_config",
        "login_admin_user",
        "create_app",
        "signup_user_v2",
        "signup_user_v2",
        "create_chat",
        "chat_add_user",
    ]
    assert _cleanup_steps(res.details) == ["cleanup_delete_chat", "cleanup_delete_users", "cleanup_delete_app"]
    assert platform.deleted_user_ids == ["u0", "u1"]
    assert res.details["appDisplayName"].startswith("uptime-journey-")


@pytest.mark.asyncio
async def test_basic_journey_create_chat_failure_still_deletes_users_then_app() -> None:
    platform = FakePlatform(fail=("POST", "/v1/chats"))
    async with httpx.AsyncClient(transport=httpx.MockTransport(platform)) as client:
        res = await JourneyOrchestrator(_journey_settings(), client, xmpp=_xmpp_settings()).run("basic")

    assert res.ok is False
    assert res.details["error"].startswith("create chat failed: 500")
    assert _cleanup_steps(res.details) == ["cleanup_delete_users", "cleanup_delete_app"]
    assert platform.cleanup_calls() == [
        ("POST", "/v1/users/delete-many-with-app-id/app1"),
        ("DELETE", "/v1/apps/app1"),
    ]


@pytest.mark.asyncio
async def test_failed_cleanup_step_does_not_stop_the_rest() -> None:
    platform = FakePlatform(fail=("POST", "/v1/users/delete-many-with-app-id/app1"))
    async with httpx.AsyncClient(transport=httpx.MockTransport(platform)) as client:
        res = await JourneyOrchestrator(_journey_settings(), client, xmpp=_xmpp_settings()).run("basic")

    assert res.ok is True
    steps = {s["name"]: s for s in res.details["steps"] if str(s["name"]).startswith("cleanup_")}
    assert steps["cleanup_delete_users"]["ok"] is False
    assert steps["cleanup_delete_app"]["ok"] is True


@pytest.mark.asyncio
async def test_advanced_journey_full_flow(fake_muc) -> None:
    platform = FakePlatform(fake_muc)
    async with httpx.AsyncClient(transport=httpx.MockTransport(platform)) as client:
        orch = JourneyOrchestrator(_journey_settings(), client, xmpp=_xmpp_settings(), session_factory=fake_muc.factory)
        res = await orch.run("advanced")

    assert res.ok is True, res.details.get("error")
    assert platform.signups == 3
    assert res.details["rooms"] == {"test": "room1", "validation": "room2"}
    assert res.details["rejoinDenied"] == "forbidden"
    assert res.details["mediaLocation"].startswith("https://cdn.local/uptime-")
    assert ("GET", "/" + res.details["mediaLocation"].rsplit("/", 1)[-1]) in platform.calls

    names = [s["name"] for s in res.details["steps"]]
    assert names.index("upload_media") < names.index("await_media_notification") < names.index("fetch_uploaded_file")
    assert names.index("chat_remove_user") < names.index("negative_rejoin") < names.index("post_removal_message")
    assert _cleanup_steps(res.details) == [
        "cleanup_close_sessions",
        "cleanup_delete_chat_validation",
        "cleanup_delete_chat_test",
        "cleanup_delete_users",
        "cleanup_delete_app",
    ]
    assert [s.label for s in fake_muc.sessions] == ["alice", "bob", "charlie"]
    assert all(s.closed for s in fake_muc.sessions)
    assert fake_muc.by_label("alice").jid == "x0@chat.local"


@pytest.mark.asyncio
async def test_advanced_journey_unexpected_rejoin_fails_the_run(fake_muc) -> None:
    platform = FakePlatform(fake_muc, deny_on_removal=False)
    async with httpx.AsyncClient(transport=httpx.MockTransport(platform)) as client:
        orch = JourneyOrchestrator(_journey_settings(), client, xmpp=_xmpp_settings(), session_factory=fake_muc.factory)
        res = await orch.run("advanced")

    assert res.ok is False
    assert res.details["error"] == "UNEXPECTED_REJOIN_AFTER_REMOVAL:charlie_rejoin_after_removal"
    assert "post_removal_message" not in [s["name"] for s in res.details["steps"]]
    assert "cleanup_delete_app" in _cleanup_steps(res.details)
    assert all(s.closed for s in fake_muc.sessions)


@pytest.mark.asyncio
async def test_advanced_journey_silent_rejoin_counts_as_denied(fake_muc) -> None:
    platform = FakePlatform(fake_muc, deny_on_removal=False)
    fake_muc.silent.add("charlie")
    async with httpx.AsyncClient(transport=httpx.MockTransport(platform)) as client:
        orch = JourneyOrchestrator(_journey_settings(), client, xmpp=_xmpp_settings(), session_factory=fake_muc.factory)
        orch.join_timeout = 0.2
        res = await orch.run("advanced")

    assert res.ok is True, res.details.get("error")
    assert res.details["rejoinDenied"] == "no_confirmation"


@pytest.mark.asyncio
async def test_advanced_journey_observer_notifications(fake_muc) -> None:
    platform = FakePlatform(fake_muc)
    xmpp = _xmpp_settings(observer_room="ops")
    async with httpx.AsyncClient(transport=httpx.MockTransport(platform)) as client:
        orch = JourneyOrchestrator(_journey_settings(), client, xmpp=xmpp, session_factory=fake_muc.factory)
        res = await orch.run("advanced")

    assert res.ok is True, res.details.get("error")
    observer = fake_muc.by_label("observer")
    bodies = [x for x in observer.sent if "<message" in x]
    assert any("started" in b for b in bodies)
    assert any("ok</body>" in b for b in bodies)
    assert observer.closed is True


@pytest.mark.asyncio
async def test_observer_failure_never_affects_outcome(fake_muc) -> None:
    platform = FakePlatform(fake_muc)
    fake_muc.fail_connect.add("observer")
    async with httpx.AsyncClient(transport=httpx.MockTransport(platform)) as client:
        orch = JourneyOrchestrator(
            _journey_settings(), client, xmpp=_xmpp_settings(observer_room="ops"), session_factory=fake_muc.factory
        )
        res = await orch.run("advanced")
    assert res.ok is True, res.details.get("error")


def _journey_check(**extra) -> JourneyCheck:
    return JourneyCheck.model_validate({"id": "j", "name": "Journey", "instance_id": "prod", "type": "journey", **extra})


@pytest.mark.asyncio
async def test_journey_strategy_skips_without_settings() -> None:
    res = await JourneyCheckStrategy(settings=_journey_settings(api_base="", admin_password="")).run(_journey_check())
    assert res.ok is False
    assert res.error_text == "skipped: missing env: ETHORA_API_BASE, ETHORA_ADMIN_PASSWORD"


@pytest.mark.asyncio
async def test_journey_strategy_reports_error_text_from_details() -> None:
    platform = FakePlatform(fail=("POST", "/v1/users/login-with-email"))
    strategy = JourneyCheckStrategy(
        settings=_journey_settings(), xmpp_settings=_xmpp_settings(), transport=httpx.MockTransport(platform)
    )
    res = await strategy.run(_journey_check())
    assert res.ok is False
    assert res.error_text.startswith("login-with-email failed: 500")
    assert res.details["steps"][0]["name"] == "get_base_app_config"


@pytest.mark.asyncio
async def test_journey_strategy_timeout_still_cleans_up() -> None:
    platform = FakePlatform()

    async def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST" and request.url.path.endswith("/v1/chats"):
            await asyncio.sleep(5)
        return platform(request)

    strategy = JourneyCheckStrategy(
        settings=_journey_settings(), xmpp_settings=_xmpp_settings(), transport=httpx.MockTransport(handler)
    )
    res = await strategy.run(_journey_check(timeoutMs=1000))

    assert res.ok is False
    assert res.error_text == "timeout"
    assert ("DELETE", "/v1/apps/app1") in platform.calls
    assert _cleanup_steps(res.details) == ["cleanup_delete_users", "cleanup_delete_app"]
