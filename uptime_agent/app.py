from __future__ import annotations

import asyncio
import time
from typing import Any

import structlog
from fastapi import FastAPI, HTTPException

from uptime_agent import db as dbm
from uptime_agent.errors import ConcurrencyConflict
from uptime_agent.scheduler import Scheduler
from uptime_agent.settings import AgentSettings
from uptime_agent.status import build_summary


logger = structlog.get_logger(__name__)


def create_app(settings: AgentSettings | None = None, scheduler: Scheduler | None = None) -> FastAPI:
    app = FastAPI(title="uptime-agent", version="1")
    app.state.settings = settings or AgentSettings()
    app.state.scheduler = scheduler

    @app.on_event("startup")
    async def _startup() -> None:
        await asyncio.to_thread(dbm.ensure_schema, app.state.settings.db_path)
        sched: Scheduler | None = app.state.scheduler
        if sched is not None and app.state.settings.scheduler_enabled:
            sched.start()

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        sched: Scheduler | None = app.state.scheduler
        if sched is not None:
            sched.stop()

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {"ok": True, "ts": time.time()}

    @app.get("/api/summary")
    async def summary() -> dict[str, Any]:
        return await asyncio.to_thread(build_summary, app.state.settings.db_path)

    @app.post("/api/checks/{check_key}/run")
    async def run_check(check_key: str) -> dict[str, Any]:
        sched: Scheduler | None = app.state.scheduler
        if sched is None:
            raise HTTPException(status_code=503, detail="scheduler_unavailable")
        try:
            result = await sched.trigger(check_key)
        except KeyError:
            raise HTTPException(status_code=404, detail="check_not_found") from None
        except ConcurrencyConflict:
            raise HTTPException(status_code=409, detail="already_running") from None
        return {"checkId": check_key, **result.to_dict()}

    return app
