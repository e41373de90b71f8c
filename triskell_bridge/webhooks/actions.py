"""
Page actions and JSON reports.

    GET /actions/{object}/{id}/{action}   validate(object_id) then run(session, object_id, params)
    GET /{object}                         build(session, params) -> JSON report

Both registries are keyed by exact (object, name) pairs and frozen once the
service is initialized. Validation is pure and raises INVALID_PAYLOAD;
unknown pairs raise NOT_FOUND.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from triskell_bridge.engine.errors import DispatchError, DispatchErrorKind
from triskell_bridge.engine.logging import EventLog, log_action_run
from triskell_bridge.engine.registry import HandlerRegistry, RegisteredHandler
from triskell_bridge.engine.session import SessionManager
from triskell_bridge.process.projects import ProjectsProcessor

logger = logging.getLogger("triskell_bridge.webhooks.actions")

ActionRun = Callable[[SessionManager, str, Dict[str, Any]], Awaitable[Any]]
ReportBuild = Callable[[SessionManager, Dict[str, Any]], Awaitable[Any]]


def numeric_id(object_id: str) -> str:
    """Default action validator: Triskell object ids are positive integers."""
    if not object_id.isdigit() or int(object_id) <= 0:
        raise ValueError(f"'{object_id}' is not a valid object id")
    return object_id


class ActionRegistry:
    def __init__(self, session: SessionManager, *, event_log: Optional[EventLog] = None):
        self._session = session
        self._event_log = event_log
        self.registry = HandlerRegistry("action")

    def register(
        self,
        object: str,
        action: str,
        run: ActionRun,
        *,
        validate: Optional[Callable[[str], Any]] = numeric_id,
    ) -> RegisteredHandler:
        return self.registry.register(object, action, run, validate=validate)

    def freeze(self) -> None:
        self.registry.freeze()

    def resolve(self, object: str, action: str) -> RegisteredHandler:
        entry = self.registry.resolve(object, action)
        if entry is None:
            raise DispatchError(
                f"No action '{action}' for {object}",
                DispatchErrorKind.NOT_FOUND,
                object=object,
                event=action,
            )
        return entry

    def validate(self, object: str, object_id: str, action: str) -> RegisteredHandler:
        """Check the action exists and the object id is acceptable. No I/O."""
        entry = self.resolve(object, action)
        if entry.validate is not None:
            try:
                entry.validate(object_id)
            except Exception as e:
                raise DispatchError(
                    f"Invalid {object} id for '{action}': {e}",
                    DispatchErrorKind.INVALID_PAYLOAD,
                    object=object,
                    event=action,
                ) from e
        return entry

    async def run(
        self,
        object: str,
        object_id: str,
        action: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        entry = self.validate(object, object_id, action)
        start = time.monotonic()
        try:
            result = await entry.handler(self._session, object_id, params or {})
        except Exception as e:
            self._log(object, action, False, start, object_id, str(e))
            raise
        self._log(object, action, True, start, object_id)
        logger.info(f"Action {object}/{object_id}/{action} completed")
        return result

    def _log(self, object, action, ok, start, object_id=None, error=None) -> None:
        if self._event_log is not None:
            duration_ms = (time.monotonic() - start) * 1000
            self._event_log.push(
                log_action_run(object, action, ok, duration_ms, object_id=object_id, error=error)
            )


class ReportRegistry:
    def __init__(self, session: SessionManager, *, event_log: Optional[EventLog] = None):
        self._session = session
        self._event_log = event_log
        self.registry = HandlerRegistry("report")

    def register(self, object: str, build: ReportBuild) -> RegisteredHandler:
        return self.registry.register(object, "report", build)

    def freeze(self) -> None:
        self.registry.freeze()

    async def build(self, object: str, params: Optional[Dict[str, Any]] = None) -> Any:
        entry = self.registry.resolve(object, "report")
        if entry is None:
            raise DispatchError(
                f"No report for '{object}'",
                DispatchErrorKind.NOT_FOUND,
                object=object,
                event="report",
            )
        start = time.monotonic()
        try:
            report = await entry.handler(self._session, params or {})
        except Exception as e:
            self._log(object, False, start, str(e))
            raise
        self._log(object, True, start)
        return report

    def _log(self, object, ok, start, error=None) -> None:
        if self._event_log is not None:
            duration_ms = (time.monotonic() - start) * 1000
            self._event_log.push(log_action_run(object, "report", ok, duration_ms, error=error))


# ---------------------------------------------------------------------------
# Built-ins
# ---------------------------------------------------------------------------

async def sync_project(session: SessionManager, object_id: str, params: Dict[str, Any]) -> Any:
    return await session.execute("getObject", {"object": "project", "id": int(object_id)})


def make_projects_report(processor: ProjectsProcessor) -> ReportBuild:
    async def projects_report(session: SessionManager, params: Dict[str, Any]) -> Dict[str, Any]:
        projects = await processor.list_projects(session)
        selected = [p for p in projects if processor.selected(p)]
        return {
            "object": "projects",
            "count": len(selected),
            "items": [
                {"id": p.get("id"), "name": p.get("name"), "status": p.get("status")}
                for p in selected
            ],
        }

    return projects_report


def register_builtin_pages(
    actions: ActionRegistry,
    reports: ReportRegistry,
    processor: ProjectsProcessor,
) -> None:
    actions.register("project", "sync", sync_project)
    reports.register("projects", make_projects_report(processor))
