from __future__ import annotations

import os
from dataclasses import dataclass, field

from uptime_agent.errors import SkippedError


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return bool(default)
    s = str(raw).strip().lower()
    if s in {"1", "true", "yes", "y", "on"}:
        return True
    if s in {"0", "false", "no", "n", "off"}:
        return False
    return bool(default)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return int(default)
    try:
        return int(str(raw).strip())
    except Exception:
        return int(default)


def _env_str(name: str, default: str = "") -> str:
    raw = os.getenv(name)
    if raw is None:
        return str(default)
    s = str(raw).strip()
    return s if s else str(default)


def _missing(pairs: list[tuple[str, str]]) -> list[str]:
    return [name for name, value in pairs if not str(value or "").strip()]


@dataclass(frozen=True)
class AgentSettings:
    config_path: str = field(default_factory=lambda: _env_str("UPTIME_CONFIG", "/config/uptime.yml"))
    db_path: str = field(default_factory=lambda: _env_str("UPTIME_DB_PATH", "/data/uptime.db"))
    host: str = field(default_factory=lambda: _env_str("UPTIME_HOST", "0.0.0.0"))
    port: int = field(default_factory=lambda: _env_int("PORT", 8099))
    log_level: str = field(default_factory=lambda: _env_str("LOG_LEVEL", "INFO").upper())
    # Disable to serve the rollup without running checks (e.g. a read-only replica).
    scheduler_enabled: bool = field(default_factory=lambda: _env_bool("UPTIME_SCHEDULER_ENABLED", True))


@dataclass(frozen=True)
class JourneySettings:
    api_base: str = field(default_factory=lambda: _env_str("ETHORA_API_BASE").rstrip("/"))
    base_domain_name: str = field(default_factory=lambda: _env_str("ETHORA_BASE_DOMAIN_NAME"))
    admin_email: str = field(default_factory=lambda: _env_str("ETHORA_ADMIN_EMAIL"))
    admin_password: str = field(default_factory=lambda: os.getenv("ETHORA_ADMIN_PASSWORD", ""))
    app_name_prefix: str = field(default_factory=lambda: _env_str("ETHORA_APP_NAME_PREFIX", "uptime-journey"))
    users_count: int = field(default_factory=lambda: _env_int("ETHORA_USERS_COUNT", 2))
    mode: str = field(default_factory=lambda: _env_str("JOURNEY_MODE", "basic").lower())

    def require(self) -> None:
        missing = _missing(
            [
                ("ETHORA_API_BASE", self.api_base),
                ("ETHORA_BASE_DOMAIN_NAME", self.base_domain_name),
                ("ETHORA_ADMIN_EMAIL", self.admin_email),
                ("ETHORA_ADMIN_PASSWORD", self.admin_password),
            ]
        )
        if missing:
            raise SkippedError(missing)


@dataclass(frozen=True)
class XmppSettings:
    service_url: str = field(default_factory=lambda: _env_str("XMPP_SERVICE_URL"))
    host: str = field(default_factory=lambda: _env_str("XMPP_HOST"))
    muc_service_override: str = field(default_factory=lambda: _env_str("XMPP_MUC_SERVICE"))
    admin_user: str = field(default_factory=lambda: _env_str("XMPP_ADMIN_USER"))
    admin_password: str = field(default_factory=lambda: os.getenv("XMPP_ADMIN_PASSWORD", ""))
    admin_api_base: str = field(default_factory=lambda: _env_str("XMPP_ADMIN_API_BASE").rstrip("/"))
    echo_secret_override: str = field(default_factory=lambda: os.getenv("XMPP_ECHO_SECRET", ""))
    sender_user: str = field(default_factory=lambda: _env_str("XMPP_ECHO_SENDER_USER", "uptime-echo-sender"))
    sender_password: str = field(default_factory=lambda: os.getenv("XMPP_ECHO_SENDER_PASSWORD", ""))
    receiver_user: str = field(default_factory=lambda: _env_str("XMPP_ECHO_RECEIVER_USER", "uptime-echo-receiver"))
    receiver_password: str = field(default_factory=lambda: os.getenv("XMPP_ECHO_RECEIVER_PASSWORD", ""))
    echo_room: str = field(default_factory=lambda: _env_str("XMPP_ECHO_ROOM", "uptime-echo"))
    observer_room: str = field(default_factory=lambda: _env_str("XMPP_OBSERVER_ROOM"))

    @property
    def muc_service(self) -> str:
        if self.muc_service_override:
            return self.muc_service_override
        return f"conference.{self.host}" if self.host else ""

    @property
    def echo_secret(self) -> str:
        return self.echo_secret_override or self.admin_password

    @property
    def admin_jid(self) -> str:
        if "@" in self.admin_user:
            return self.admin_user
        return f"{self.admin_user}@{self.host}"

    @property
    def observer_room_jid(self) -> str:
        room = self.observer_room
        if not room or "@" in room:
            return room
        return f"{room}@{self.muc_service}"

    def require_session(self) -> None:
        missing = _missing([("XMPP_SERVICE_URL", self.service_url), ("XMPP_HOST", self.host)])
        if missing:
            raise SkippedError(missing)

    def require_echo(self) -> None:
        pairs = [
            ("XMPP_SERVICE_URL", self.service_url),
            ("XMPP_HOST", self.host),
            ("XMPP_ADMIN_USER", self.admin_user),
            ("XMPP_ADMIN_PASSWORD", self.admin_password),
        ]
        # Fixed test-account passwords make account provisioning unnecessary.
        if not (self.sender_password and self.receiver_password):
            pairs.append(("XMPP_ADMIN_API_BASE", self.admin_api_base))
        missing = _missing(pairs)
        if missing:
            raise SkippedError(missing)
