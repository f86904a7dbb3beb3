from __future__ import annotations

import hashlib
import re
from typing import Any

import httpx
import structlog

from uptime_agent.errors import UpstreamApiError


logger = structlog.get_logger(__name__)

_ALREADY_EXISTS_RE = re.compile(r"already\s+(registered|exists)|\bexists\b|conflict", re.IGNORECASE)


def derive_password(secret: str, role: str, *, length: int = 24) -> str:
    """
    Stable per-role password for the echo test accounts, so operators only keep
    one shared secret around.
    """
    digest = hashlib.sha256(f"{secret}:{role}".encode("utf-8")).hexdigest()
    return digest[: max(8, int(length))]


def is_already_exists(status_code: int, text: str) -> bool:
    if status_code == 409:
        return True
    return bool(_ALREADY_EXISTS_RE.search(text or ""))


class XmppAdminClient:
    """ejabberd-style HTTP admin API (`POST <base>/<command>` with JSON args)."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        api_base: str,
        host: str,
        muc_service: str,
        admin_jid: str,
        admin_password: str,
        timeout: float = 5.0,
    ) -> None:
        self._client = client
        self._api_base = api_base.rstrip("/")
        self._host = host
        self._muc_service = muc_service
        self._auth = (admin_jid, admin_password)
        self._timeout = timeout

    async def _call(self, command: str, payload: dict[str, Any]) -> httpx.Response:
        return await self._client.post(
            f"{self._api_base}/{command}",
            json=payload,
            auth=self._auth,
            timeout=self._timeout,
        )

    async def ensure_account(self, user: str, password: str) -> str:
        """
        Register the account, or reset its password when it already exists.
        Never delete + recreate: that would kick a session an overlapping run holds.
        Returns "registered" or "password_reset".
        """
        resp = await self._call("register", {"user": user, "host": self._host, "password": password})
        if resp.is_success:
            return "registered"
        if not is_already_exists(resp.status_code, resp.text):
            raise UpstreamApiError(f"xmpp_register:{user}", resp.status_code, resp.text)

        reset = await self._call("change_password", {"user": user, "host": self._host, "newpass": password})
        if not reset.is_success:
            raise UpstreamApiError(f"xmpp_change_password:{user}", reset.status_code, reset.text)
        return "password_reset"

    async def destroy_room(self, name: str) -> bool:
        try:
            resp = await self._call("destroy_room", {"name": name, "service": self._muc_service})
        except httpx.HTTPError as exc:
            logger.info("destroy_room failed (ignored)", room=name, error=str(exc))
            return False
        if not resp.is_success:
            logger.info("destroy_room non-success (ignored)", room=name, status_code=resp.status_code)
        return resp.is_success
