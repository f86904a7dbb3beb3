from __future__ import annotations

from typing import Any, Callable

import structlog

from uptime_agent.room_echo import join_room
from uptime_agent.settings import XmppSettings
from uptime_agent.xmpp_session import XmppSession


logger = structlog.get_logger(__name__)


class ObserverChannel:
    """
    Best-effort progress notes into an operator-chosen room. Nothing here may
    influence the journey outcome: every failure is logged and dropped.
    """

    def __init__(self, settings: XmppSettings, *, session_factory: Callable[..., Any] = XmppSession, prefix: str = "") -> None:
        self._settings = settings
        self._session_factory = session_factory
        self._prefix = prefix
        self._session: Any = None

    @property
    def enabled(self) -> bool:
        s = self._settings
        return bool(s.observer_room_jid and s.service_url and s.host and s.admin_user and s.admin_password)

    async def open(self, timeout: float = 5.0) -> None:
        if not self.enabled or self._session is not None:
            return
        s = self._settings
        session = self._session_factory(service_url=s.service_url, jid=s.admin_jid, password=s.admin_password, label="observer")
        try:
            await session.connect(timeout)
            await join_room(session, s.observer_room_jid, "uptime-observer", stage="observer_join", timeout=timeout)
            self._session = session
        except Exception as exc:
            logger.info("Observer room unavailable (ignored)", room=s.observer_room_jid, error=str(exc))
            try:
                await session.close()
            except Exception:
                pass

    async def notify(self, text: str) -> None:
        if self._session is None:
            return
        body = f"{self._prefix} {text}".strip()
        try:
            await self._session.send_groupchat(self._settings.observer_room_jid, body)
        except Exception as exc:
            logger.info("Observer notify failed (ignored)", error=str(exc))

    async def close(self) -> None:
        session, self._session = self._session, None
        if session is None:
            return
        try:
            await session.close()
        except Exception as exc:
            logger.info("Observer close failed (ignored)", error=str(exc))
