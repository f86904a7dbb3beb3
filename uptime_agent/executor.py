from __future__ import annotations

from typing import Any, Protocol

import structlog

from uptime_agent.http_check import HttpCheckStrategy
from uptime_agent.journey import JourneyCheckStrategy
from uptime_agent.results import CheckResult
from uptime_agent.room_echo import ChatRoomEchoStrategy
from uptime_agent.wss_check import WebSocketCheckStrategy


logger = structlog.get_logger(__name__)


class CheckStrategy(Protocol):
    async def run(self, check: Any) -> CheckResult: ...


def default_strategies() -> dict[str, CheckStrategy]:
    return {
        "http": HttpCheckStrategy(),
        "wss": WebSocketCheckStrategy(),
        "journey": JourneyCheckStrategy(),
        "protocol_room_echo": ChatRoomEchoStrategy(),
    }


class CheckExecutor:
    """Routes a check definition to the strategy registered for its `type`."""

    def __init__(self, strategies: dict[str, CheckStrategy] | None = None) -> None:
        self._strategies = dict(strategies) if strategies is not None else default_strategies()

    async def execute(self, check: Any) -> CheckResult:
        check_type = str(getattr(check, "type", "") or "")
        strategy = self._strategies.get(check_type)
        if strategy is None:
            return CheckResult(ok=False, duration_ms=0, error_text=f"Unknown check type: {check_type}")
        try:
            return await strategy.run(check)
        except Exception as exc:
            logger.exception("Check strategy raised", check_key=getattr(check, "check_key", "?"), type=check_type)
            return CheckResult.failure(f"{type(exc).__name__}: {exc}")
