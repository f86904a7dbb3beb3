from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class CheckResult:
    ok: bool
    duration_ms: int = 0
    status_code: int | None = None
    error_text: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def failure(cls, error_text: str, *, duration_ms: int = 0, **details: Any) -> "CheckResult":
        return cls(ok=False, duration_ms=int(duration_ms), error_text=error_text, details=dict(details))

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": bool(self.ok),
            "statusCode": self.status_code,
            "durationMs": int(self.duration_ms),
            "errorText": self.error_text,
            "details": dict(self.details or {}),
        }


def elapsed_ms(started: float, now: float) -> int:
    return max(0, int(round((now - started) * 1000.0)))
