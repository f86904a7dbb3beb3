from __future__ import annotations

import asyncio
import json
import time
from typing import Any, Callable

import httpx
import structlog

from uptime_agent.config import MISSING, HttpCheck, JsonRule, StatusCodeRule, coerce_str
from uptime_agent.results import CheckResult, elapsed_ms


logger = structlog.get_logger(__name__)

_UNPARSED = object()
_PARSE_FAILED = object()


def get_json_path(obj: Any, path: str) -> Any:
    """Dot path walk, e.g. "info.title". Any missing segment yields MISSING."""
    cur = obj
    for part in [p for p in str(path or "").split(".") if p]:
        if isinstance(cur, dict):
            if part not in cur:
                return MISSING
            cur = cur[part]
        elif isinstance(cur, list):
            try:
                cur = cur[int(part)]
            except (ValueError, IndexError):
                return MISSING
        else:
            return MISSING
    return cur


def evaluate_rules(
    rules: list[Any], *, status_code: int, body: str | Callable[[], str], ok: bool = True
) -> tuple[bool, dict[str, Any]]:
    """
    Apply expectation rules in declaration order. The body is parsed at most once
    and shared by every json rule. A parse failure only fails rules that assert
    (`exists`/`equals`); capture-only rules are not penalised.
    """
    details: dict[str, Any] = {}
    parsed: Any = _UNPARSED
    captures: dict[str, Any] = {}
    json_paths: list[str] = []

    def _parsed_body() -> Any:
        nonlocal parsed
        if parsed is _UNPARSED:
            text = body() if callable(body) else body
            try:
                parsed = json.loads(text)
            except (TypeError, ValueError):
                parsed = _PARSE_FAILED
        return parsed

    for rule in rules:
        if isinstance(rule, StatusCodeRule):
            ok = ok and status_code in rule.expected
            details["statusExpected"] = list(rule.expected)
        elif isinstance(rule, JsonRule):
            doc = _parsed_body()
            if doc is _PARSE_FAILED:
                details["jsonParse"] = "failed"
                if rule.asserts:
                    ok = False
                continue
            value = get_json_path(doc, rule.path)
            if rule.exists:
                ok = ok and value is not None and value is not MISSING
            if rule.equals is not None:
                ok = ok and coerce_str(value) == rule.equals
            if rule.capture_as:
                captures[rule.capture_as] = None if value is MISSING else value
            json_paths.append(rule.path)

    if json_paths:
        details["jsonPaths"] = json_paths
    if captures:
        details["captures"] = captures
    return ok, details


class HttpCheckStrategy:
    def __init__(self, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._transport = transport

    async def run(self, check: HttpCheck) -> CheckResult:
        if not check.url:
            return CheckResult.failure("missing url for http check")

        timeout_s = max(0.001, float(check.timeout_ms) / 1000.0)
        started = time.perf_counter()
        async with httpx.AsyncClient(transport=self._transport, follow_redirects=True) as client:
            try:
                # wait_for cancels the in-flight request when the deadline fires.
                resp = await asyncio.wait_for(
                    client.request(
                        check.method or "GET",
                        check.url,
                        headers=dict(check.headers or {}),
                        content=check.body.encode("utf-8") if check.body is not None else None,
                        timeout=timeout_s + 1.0,
                    ),
                    timeout=timeout_s,
                )
            except (asyncio.TimeoutError, httpx.TimeoutException):
                return CheckResult.failure("timeout", duration_ms=elapsed_ms(started, time.perf_counter()))
            except httpx.HTTPError as exc:
                logger.debug("HTTP check transport error", check_key=check.check_key, error=str(exc))
                return CheckResult.failure(
                    str(exc) or type(exc).__name__, duration_ms=elapsed_ms(started, time.perf_counter())
                )

        duration = elapsed_ms(started, time.perf_counter())
        ok, details = evaluate_rules(
            list(check.expect or []),
            status_code=resp.status_code,
            body=lambda: resp.text,
            ok=resp.is_success,
        )
        return CheckResult(ok=ok, status_code=resp.status_code, duration_ms=duration, details=details)
