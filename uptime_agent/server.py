from __future__ import annotations

import structlog
import uvicorn

from uptime_agent import db as dbm
from uptime_agent.app import create_app
from uptime_agent.config import load_config_from_file
from uptime_agent.executor import CheckExecutor
from uptime_agent.logging_config import configure_logging
from uptime_agent.run_lock import RunLock
from uptime_agent.scheduler import CheckRunner, Scheduler
from uptime_agent.settings import AgentSettings


logger = structlog.get_logger(__name__)


def main() -> None:
    settings = AgentSettings()
    configure_logging(settings.log_level)

    config = load_config_from_file(settings.config_path)
    dbm.ensure_schema(settings.db_path)
    dbm.upsert_config(settings.db_path, config)

    runner = CheckRunner(CheckExecutor(), RunLock(), dbm.SqliteResultSink(settings.db_path))
    scheduler = Scheduler(config, runner)
    app = create_app(settings, scheduler)

    logger.info("Starting uptime agent", port=settings.port, config=settings.config_path, db=settings.db_path)
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
