from __future__ import annotations

import asyncio
import time

import structlog
from websockets.asyncio.client import connect

from uptime_agent.config import WssCheck
from uptime_agent.results import CheckResult, elapsed_ms


logger = structlog.get_logger(__name__)


async def _open(check: WssCheck):
    return await connect(
        check.url,
        additional_headers=dict(check.headers or {}) or None,
        open_timeout=None,
    )


class WebSocketCheckStrategy:
    async def run(self, check: WssCheck) -> CheckResult:
        if not check.url:
            return CheckResult.failure("missing url for wss check")

        timeout_s = max(0.001, float(check.timeout_ms) / 1000.0)
        started = time.perf_counter()
        ws = None
        try:
            # Cancelling the handshake aborts the underlying transport.
            ws = await asyncio.wait_for(_open(check), timeout=timeout_s)
            return CheckResult(ok=True, duration_ms=elapsed_ms(started, time.perf_counter()))
        except asyncio.TimeoutError:
            return CheckResult.failure("timeout", duration_ms=elapsed_ms(started, time.perf_counter()))
        except Exception as exc:
            logger.debug("WSS check failed", check_key=check.check_key, error=str(exc))
            return CheckResult.failure(
                str(exc) or type(exc).__name__, duration_ms=elapsed_ms(started, time.perf_counter())
            )
        finally:
            if ws is not None:
                try:
                    await asyncio.wait_for(ws.close(), timeout=2.0)
                except Exception:
                    ws.transport.abort()
