"""
Instance rollup from the latest stored result of each check.

A check contributes:
  warn  no result yet (unless optional), or a skipped run (missing configuration)
  fail  ok=false on a critical check
  ok    everything else; optional checks never escalate
Instance status is red if anything failed, amber if anything warned, else green.
"""

from __future__ import annotations

from typing import Any, Iterable, Literal, Mapping

from uptime_agent import db
from uptime_agent.errors import is_skipped_error_text


Contribution = Literal["ok", "warn", "fail"]
RollupStatus = Literal["green", "amber", "red"]


def check_contribution(severity: str | None, latest: Mapping[str, Any] | None) -> Contribution:
    optional = str(severity or "critical") == "optional"
    if latest is None:
        return "ok" if optional else "warn"
    if latest.get("ok"):
        return "ok"
    if optional:
        return "ok"
    if is_skipped_error_text(latest.get("error_text")):
        return "warn"
    return "fail"


def aggregate_instance(contributions: Iterable[Contribution]) -> RollupStatus:
    seen = set(contributions)
    if "fail" in seen:
        return "red"
    if "warn" in seen:
        return "amber"
    return "green"


def _check_view(chk: Mapping[str, Any], latest: Mapping[str, Any] | None) -> dict[str, Any]:
    return {
        "id": chk["id"],
        "name": chk["name"],
        "severity": chk.get("severity") or "critical",
        "ok": bool(latest["ok"]) if latest else False,
        "statusCode": latest.get("status_code") if latest else None,
        "durationMs": latest.get("duration_ms") if latest else None,
        "ts": latest.get("ts") if latest else None,
        "errorText": latest.get("error_text") if latest else None,
    }


def build_summary(db_path: str) -> dict[str, Any]:
    out: list[dict[str, Any]] = []
    for inst in db.list_instances(db_path):
        checks: list[dict[str, Any]] = []
        contributions: list[Contribution] = []
        for chk in db.list_checks(db_path, inst["id"]):
            latest = db.latest_run(db_path, chk["id"])
            # Disabled checks are listed but never move the instance status.
            if chk.get("enabled", 1):
                contributions.append(check_contribution(chk.get("severity"), latest))
            checks.append(_check_view(chk, latest))
        out.append(
            {
                "id": inst["id"],
                "name": inst["name"],
                "enabled": inst["enabled"],
                "tags": inst["tags"],
                "status": aggregate_instance(contributions),
                "checks": checks,
            }
        )
    return {"instances": out}
