"""
Built-in scheduled jobs.

    projects_sync       0 * * * *       fetch every selected project
    session_keepalive   */15 * * * *    keep the shared session from idling out
    log_cleanup         0 2 * * *       event log retention

Schedules can be overridden per job name under ``scheduler.jobs`` in config.yaml.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict

from triskell_bridge.engine.client import TriskellClient
from triskell_bridge.engine.config import BridgeConfig
from triskell_bridge.engine.logging import LogRetentionManager
from triskell_bridge.engine.session import SessionManager
from triskell_bridge.process.projects import ProjectsProcessor
from triskell_bridge.process.scheduler import JobScheduler

logger = logging.getLogger("triskell_bridge.process.jobs")

DEFAULT_SCHEDULES: Dict[str, str] = {
    "projects_sync": "0 * * * *",
    "session_keepalive": "*/15 * * * *",
    "log_cleanup": "0 2 * * *",
}


def make_projects_sync(processor: ProjectsProcessor):
    async def projects_sync(session: SessionManager, client: TriskellClient) -> Dict[str, int]:
        async def fetch(sess: SessionManager, project: Dict[str, Any]) -> Any:
            return await sess.execute("getObject", {"object": "project", "id": project.get("id")})

        return await processor.process(session, fetch)

    return projects_sync


async def session_keepalive(session: SessionManager, client: TriskellClient) -> Any:
    return await session.keep_alive()


def make_log_cleanup(retention: LogRetentionManager):
    async def log_cleanup(session: SessionManager, client: TriskellClient) -> Dict[str, int]:
        # File I/O, keep it off the event loop
        return await asyncio.to_thread(retention.cleanup)

    return log_cleanup


def register_builtin_jobs(
    scheduler: JobScheduler,
    config: BridgeConfig,
    processor: ProjectsProcessor,
) -> int:
    """Register the built-in jobs with their (possibly overridden) schedules."""
    schedules = dict(DEFAULT_SCHEDULES)
    schedules.update(config.scheduler.jobs)

    retention = LogRetentionManager(
        log_dir=config.logging.event_directory,
        retention_days=config.logging.retention_days,
        compress_after_days=config.logging.compress_after_days,
    )

    scheduler.register("projects_sync", schedules["projects_sync"],
                       make_projects_sync(processor), skip_if_running=True)
    scheduler.register("session_keepalive", schedules["session_keepalive"], session_keepalive)
    scheduler.register("log_cleanup", schedules["log_cleanup"], make_log_cleanup(retention))

    unknown = set(config.scheduler.jobs) - set(DEFAULT_SCHEDULES)
    for name in sorted(unknown):
        logger.warning(f"Schedule override for unknown job '{name}' ignored")

    return len(DEFAULT_SCHEDULES)
