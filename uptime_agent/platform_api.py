"""Thin async wrapper over the platform endpoints the journey exercises."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

import httpx

from uptime_agent.errors import UpstreamApiError


@dataclass
class PlatformUser:
    id: str
    email: str
    token: str | None
    xmpp_username: str | None
    xmpp_password: str | None
    first_name: str = ""


def _json_or_none(resp: httpx.Response) -> Any:
    try:
        return resp.json() if resp.content else None
    except ValueError:
        return None


class PlatformApi:
    def __init__(self, client: httpx.AsyncClient, api_base: str) -> None:
        self._client = client
        self._base = api_base.rstrip("/")

    async def _call(
        self,
        step: str,
        method: str,
        path: str,
        *,
        auth: str | None = None,
        json: Any = None,
        params: dict[str, Any] | None = None,
        files: Any = None,
    ) -> Any:
        headers = {"Authorization": auth} if auth else {}
        resp = await self._client.request(
            method,
            f"{self._base}{path}",
            headers=headers,
            json=json,
            params=params,
            files=files,
        )
        if not resp.is_success:
            raise UpstreamApiError(step, resp.status_code, resp.text)
        return _json_or_none(resp)

    async def get_app_token(self, domain_name: str) -> str:
        data = await self._call("get-config", "GET", "/v1/apps/get-config", params={"domainName": domain_name})
        data = data or {}
        token = data.get("appToken") or (data.get("app") or {}).get("appToken")
        if not token:
            raise UpstreamApiError("get-config", None, "missing appToken in response")
        return str(token)

    async def login_with_email(self, app_token: str, email: str, password: str) -> str:
        data = await self._call(
            "login-with-email",
            "POST",
            "/v1/users/login-with-email",
            auth=app_token,
            json={"email": email, "password": password},
        )
        token = (data or {}).get("token")
        if not token:
            raise UpstreamApiError("login-with-email", None, "missing token")
        return str(token)

    async def create_app(self, user_token: str, display_name: str) -> tuple[str, str]:
        data = await self._call(
            "create app", "POST", "/v1/apps", auth=f"Bearer {user_token}", json={"displayName": display_name}
        )
        app = (data or {}).get("app") or {}
        app_id = app.get("_id") or app.get("id")
        app_token = app.get("appToken")
        if not app_id:
            raise UpstreamApiError("create app", None, "missing app._id")
        if not app_token:
            raise UpstreamApiError("create app", None, "missing app.appToken")
        return str(app_id), str(app_token)

    async def delete_app(self, user_token: str, app_id: str) -> None:
        await self._call("delete app", "DELETE", f"/v1/apps/{quote(app_id, safe='')}", auth=f"Bearer {user_token}")

    async def sign_up_user(self, app_token: str, *, email: str, password: str, first_name: str, last_name: str) -> PlatformUser:
        data = await self._call(
            "signup v2",
            "POST",
            "/v2/users/sign-up-with-email",
            auth=app_token,
            json={
                "email": email,
                "firstName": first_name,
                "lastName": last_name,
                "password": password,
                "cfToken": "",
                "utm": "",
            },
        )
        data = data or {}
        user = data.get("user") or {}
        if not user.get("_id"):
            raise UpstreamApiError("signup v2", None, "missing user._id")
        return PlatformUser(
            id=str(user["_id"]),
            email=email,
            token=str(data["token"]) if data.get("token") else None,
            xmpp_username=str(user["xmppUsername"]) if user.get("xmppUsername") else None,
            xmpp_password=str(user["xmppPassword"]) if user.get("xmppPassword") else None,
            first_name=first_name,
        )

    async def delete_users(self, user_token: str, app_id: str, user_ids: list[str]) -> None:
        await self._call(
            "delete users",
            "POST",
            f"/v1/users/delete-many-with-app-id/{quote(app_id, safe='')}",
            auth=f"Bearer {user_token}",
            json={"usersIdList": list(user_ids)},
        )

    async def create_chat(self, user_token: str, *, title: str, uuid: str) -> str:
        data = await self._call(
            "create chat",
            "POST",
            "/v1/chats",
            auth=f"Bearer {user_token}",
            json={"title": title, "description": "synthetic journey", "type": "public", "uuid": uuid, "members": []},
        )
        name = ((data or {}).get("result") or {}).get("name")
        if not name:
            raise UpstreamApiError("create chat", None, "missing result.name")
        return str(name)

    async def delete_chat(self, user_token: str, chat_name: str) -> None:
        await self._call("delete chat", "DELETE", "/v1/chats", auth=f"Bearer {user_token}", json={"name": chat_name})

    async def add_chat_members(self, user_token: str, chat_name: str, members: list[str]) -> None:
        await self._call(
            "add user",
            "POST",
            "/v1/chats/users-access",
            auth=f"Bearer {user_token}",
            json={"chatName": chat_name, "members": list(members)},
        )

    async def remove_chat_members(self, user_token: str, chat_name: str, members: list[str]) -> None:
        await self._call(
            "remove user",
            "DELETE",
            "/v1/chats/users-access",
            auth=f"Bearer {user_token}",
            json={"chatName": chat_name, "members": list(members)},
        )

    async def upload_media(
        self, user_token: str, chat_name: str, *, filename: str, content: bytes, content_type: str = "text/plain"
    ) -> str:
        data = await self._call(
            "upload media",
            "POST",
            f"/v1/chats/media/{quote(chat_name, safe='')}",
            auth=f"Bearer {user_token}",
            files={"files": (filename, content, content_type)},
        )
        data = data or {}
        results = data.get("results") if isinstance(data.get("results"), list) else []
        location = (results[0] or {}).get("location") if results else data.get("location")
        if not location:
            raise UpstreamApiError("upload media", None, "missing results[0].location")
        return str(location)

    async def fetch_public(self, url: str) -> int:
        resp = await self._client.get(url, follow_redirects=True)
        if not resp.is_success:
            raise UpstreamApiError("fetch uploaded file", resp.status_code, resp.text[:200])
        return resp.status_code
