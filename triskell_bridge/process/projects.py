"""
Projects processor — walk the Triskell projects and run a callback on each.

Honours ``only_project`` (ONLY_PROJECT) so a single project can be processed
while testing. One project failing is logged and counted; the walk goes on.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from triskell_bridge.engine.errors import BridgeError
from triskell_bridge.engine.session import SessionManager

logger = logging.getLogger("triskell_bridge.process.projects")

ProjectCallback = Callable[[SessionManager, Dict[str, Any]], Awaitable[Any]]


class ProjectsProcessor:
    def __init__(self, only_project: Optional[str] = None):
        self.only_project = only_project

    async def list_projects(self, session: SessionManager) -> List[Dict[str, Any]]:
        result = await session.execute("getObjects", {"object": "project"})
        if isinstance(result, dict):
            result = result.get("items", [])
        return [p for p in (result or []) if isinstance(p, dict)]

    def selected(self, project: Dict[str, Any]) -> bool:
        return self.only_project is None or project.get("name") == self.only_project

    async def process(self, session: SessionManager, callback: ProjectCallback) -> Dict[str, int]:
        """
        Run ``callback(session, project)`` for every selected project.

        Returns:
            {"processed": N, "failed": M, "skipped": K}
        """
        projects = await self.list_projects(session)
        stats = {"processed": 0, "failed": 0, "skipped": 0}

        for project in projects:
            if not self.selected(project):
                stats["skipped"] += 1
                continue
            try:
                await callback(session, project)
                stats["processed"] += 1
            except BridgeError as e:
                stats["failed"] += 1
                logger.error(
                    f"Project {project.get('id')} ({project.get('name')}) failed: {e.message}"
                )

        if self.only_project and not stats["processed"] and not stats["failed"]:
            logger.warning(f"ONLY_PROJECT '{self.only_project}' matched no project")
        logger.info(
            f"Processed {stats['processed']} project(s), "
            f"{stats['failed']} failed, {stats['skipped']} skipped"
        )
        return stats
