"""Periodic check scheduling on APScheduler, plus on-demand runs."""

from __future__ import annotations

import asyncio
import random
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from uptime_agent.config import UptimeConfig
from uptime_agent.errors import ConcurrencyConflict
from uptime_agent.executor import CheckExecutor
from uptime_agent.results import CheckResult, elapsed_ms
from uptime_agent.run_lock import RunLock


logger = structlog.get_logger(__name__)

MIN_INTERVAL_SECONDS = 5
MAX_INITIAL_JITTER_MS = 10_000


class ResultSink(Protocol):
    async def write(self, check_key: str, result: CheckResult) -> None: ...


def interval_ms(check: Any) -> int:
    return max(MIN_INTERVAL_SECONDS, int(getattr(check, "interval_seconds", 60) or 60)) * 1000


def initial_delay_ms(interval: int, rng: random.Random | None = None) -> int:
    """Spread first runs so a restart doesn't fire every check at once."""
    r = rng or random
    return int(r.random() * min(interval, MAX_INITIAL_JITTER_MS))


class CheckRunner:
    def __init__(self, executor: CheckExecutor, lock: RunLock, sink: ResultSink | None = None) -> None:
        self.executor = executor
        self.lock = lock
        self.sink = sink

    async def run(self, check: Any) -> CheckResult:
        """Run one check under its lock. Raises ConcurrencyConflict if it is already in flight."""
        key = check.check_key
        async with self.lock.hold(key):
            started = time.perf_counter()
            result = await self.executor.execute(check)
            if not result.duration_ms:
                result.duration_ms = elapsed_ms(started, time.perf_counter())
            if self.sink is not None:
                try:
                    await self.sink.write(key, result)
                except Exception as exc:
                    logger.warning("Failed to persist check run", check_key=key, error=str(exc))
            if not result.ok:
                logger.warning("Check failed", check_key=key, error=result.error_text, duration_ms=result.duration_ms)
            return result


class Scheduler:
    def __init__(self, config: UptimeConfig, runner: CheckRunner, *, rng: random.Random | None = None) -> None:
        self.config = config
        self.runner = runner
        self._rng = rng
        self._scheduler: AsyncIOScheduler | None = None
        self.jobs: dict[str, Any] = {}

    @property
    def running(self) -> bool:
        return self._scheduler is not None

    async def tick(self, check: Any) -> CheckResult | None:
        key = check.check_key
        if self.runner.lock.is_held(key):
            logger.debug("Check still running, tick skipped", check_key=key)
            return None
        try:
            return await self.runner.run(check)
        except ConcurrencyConflict:
            return None
        except Exception:
            logger.exception("Scheduled check crashed", check_key=key)
            return None

    def start(self) -> None:
        """Register one interval job per enabled check. Must be called from a running event loop."""
        if self._scheduler is not None:
            logger.warning("Scheduler already running")
            return
        scheduler = AsyncIOScheduler(event_loop=asyncio.get_running_loop(), timezone=timezone.utc)
        now = datetime.now(timezone.utc)
        for _inst, check in self.config.iter_checks():
            every = interval_ms(check)
            delay = initial_delay_ms(every, self._rng)
            # Overlap is handled by the run lock, not by APScheduler's instance limit.
            job = scheduler.add_job(
                self.tick,
                trigger=IntervalTrigger(seconds=every / 1000.0, timezone=timezone.utc),
                args=[check],
                id=check.check_key,
                name=check.name,
                next_run_time=now + timedelta(milliseconds=delay),
                max_instances=2,
                coalesce=True,
                misfire_grace_time=None,
            )
            self.jobs[check.check_key] = job
            logger.info("Scheduled check", check_key=check.check_key, interval_ms=every, initial_delay_ms=delay)
        scheduler.start()
        self._scheduler = scheduler
        logger.info("Check scheduler started", job_count=len(self.jobs))

    def stop(self) -> None:
        scheduler, self._scheduler = self._scheduler, None
        if scheduler is None:
            return
        for key in list(self.jobs):
            try:
                scheduler.remove_job(key)
            except Exception as exc:
                logger.info("Job removal failed (ignored)", job_id=key, error=str(exc))
        self.jobs.clear()
        scheduler.shutdown(wait=False)
        logger.info("Check scheduler stopped")

    async def trigger(self, check_key: str) -> CheckResult:
        """Run a check now, disabled ones included. KeyError if unknown, ConcurrencyConflict if in flight."""
        check = self.config.find_check(check_key)
        if check is None:
            raise KeyError(check_key)
        logger.info("Manual check run", check_key=check_key)
        return await self.runner.run(check)
