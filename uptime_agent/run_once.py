"""
One-shot runner for cron-style use.

    python -m uptime_agent.run_once             run every enabled check once
    python -m uptime_agent.run_once --journey   run one journey, print its JSON, exit 0 ok / 2 failed
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys

import structlog

from uptime_agent import db as dbm
from uptime_agent.config import load_config_from_file
from uptime_agent.errors import SkippedError
from uptime_agent.executor import CheckExecutor
from uptime_agent.journey import run_journey
from uptime_agent.logging_config import configure_logging
from uptime_agent.run_lock import RunLock
from uptime_agent.scheduler import CheckRunner
from uptime_agent.settings import AgentSettings, JourneySettings, XmppSettings


logger = structlog.get_logger(__name__)


def _format_line(check_key: str, result) -> str:
    return (
        f"[run-once] {check_key} ok={str(bool(result.ok)).lower()} ms={result.duration_ms} "
        f"{result.status_code if result.status_code is not None else ''} {result.error_text or ''}"
    ).rstrip()


async def run_all(settings: AgentSettings) -> int:
    config = load_config_from_file(settings.config_path)
    await asyncio.to_thread(dbm.ensure_schema, settings.db_path)
    await asyncio.to_thread(dbm.upsert_config, settings.db_path, config)
    runner = CheckRunner(CheckExecutor(), RunLock(), dbm.SqliteResultSink(settings.db_path))

    failed = 0
    for _inst, check in config.iter_checks():
        result = await runner.run(check)
        if not result.ok:
            failed += 1
        print(_format_line(check.check_key, result), flush=True)
    return failed


async def journey_once(mode: str | None) -> int:
    try:
        res = await run_journey(JourneySettings(), mode=mode, xmpp=XmppSettings())
    except SkippedError as exc:
        print(json.dumps({"ok": False, "details": {"error": str(exc)}}, indent=2))
        return 2
    print(json.dumps({"ok": res.ok, "details": res.details}, indent=2, default=str))
    return 0 if res.ok else 2


def main() -> None:
    parser = argparse.ArgumentParser(description="Run uptime checks once and exit")
    parser.add_argument("--journey", action="store_true", help="Run a standalone journey and print its result JSON")
    parser.add_argument("--mode", choices=["basic", "advanced"], default=None, help="Journey mode override")
    args = parser.parse_args()

    settings = AgentSettings()
    configure_logging(settings.log_level)

    if args.journey:
        sys.exit(asyncio.run(journey_once(args.mode)))

    try:
        asyncio.run(run_all(settings))
    except Exception:
        logger.exception("run-once failed")
        sys.exit(1)


if __name__ == "__main__":
    main()
