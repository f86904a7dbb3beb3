from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

import structlog


logger = structlog.get_logger(__name__)


@dataclass
class StepTrace:
    steps: list[dict[str, Any]] = field(default_factory=list)

    def step(self, name: str, **extra: Any) -> dict[str, Any]:
        entry = {"name": name, **extra, "ts": datetime.now(timezone.utc).isoformat()}
        self.steps.append(entry)
        return entry

    def names(self) -> list[str]:
        return [str(s.get("name")) for s in self.steps]


@dataclass(frozen=True)
class CompensatingAction:
    name: str
    func: Callable[[], Awaitable[Any]]


class CleanupStack:
    """
    Compensating actions for everything a run created, executed newest first.
    Each action is independent: a failure is recorded and the rest still run.
    """

    def __init__(self) -> None:
        self._actions: list[CompensatingAction] = []

    def push(self, name: str, func: Callable[[], Awaitable[Any]]) -> None:
        self._actions.append(CompensatingAction(name=name, func=func))

    def __len__(self) -> int:
        return len(self._actions)

    async def run(self, trace: StepTrace | None = None) -> list[dict[str, Any]]:
        outcomes: list[dict[str, Any]] = []
        while self._actions:
            action = self._actions.pop()
            entry = trace.step(action.name) if trace is not None else {"name": action.name}
            try:
                await action.func()
                entry["ok"] = True
            except Exception as exc:
                entry["ok"] = False
                entry["error"] = f"{type(exc).__name__}: {exc}"[:300]
                logger.warning("Cleanup step failed", step=action.name, error=entry["error"])
            outcomes.append(entry)
        return outcomes
