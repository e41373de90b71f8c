"""
Triskell Bridge Bootstrap — ordered startup, serving and the fatal-startup policy.

Startup sequence (Orchestrator.initialize):
    1. system logging + event log
    2. Triskell client
    3. session manager → login()            (failure is fatal)
    4. tenant setup hooks on the live session
    5. projects processor
    6. webhook dispatcher + built-in handlers
    7. page actions + reports
    8. scheduler + built-in jobs
    9. extensions (extra handlers/jobs), then registries are frozen
   10. scheduler.start_all() according to the execution mode
Then run() serves HTTP with uvicorn until shutdown.

Any failure during startup is logged, a forced exit is armed for
``shutdown_grace_seconds`` (10s by default), a best-effort stop() runs and the
process exits with status 1 whatever the cleanup outcome.
"""

from __future__ import annotations

import asyncio
import logging
import os
import threading
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Iterable, List, Optional

import httpx
import uvicorn

from triskell_bridge import __version__
from triskell_bridge.api.app import create_app
from triskell_bridge.engine.client import TriskellClient
from triskell_bridge.engine.config import BridgeConfig
from triskell_bridge.engine.errors import BridgeError
from triskell_bridge.engine.health import ProcessUptime
from triskell_bridge.engine.logging import EventLog, configure_logging, log_system_event
from triskell_bridge.engine.session import SessionManager
from triskell_bridge.process.jobs import register_builtin_jobs
from triskell_bridge.process.projects import ProjectsProcessor
from triskell_bridge.process.scheduler import JobScheduler
from triskell_bridge.webhooks.actions import ActionRegistry, ReportRegistry, register_builtin_pages
from triskell_bridge.webhooks.dispatcher import WebhookDispatcher
from triskell_bridge.webhooks.handlers import register_builtin_handlers

logger = logging.getLogger("triskell_bridge.bootstrap")

EXIT_OK = 0
EXIT_STARTUP_FAILURE = 1
EXIT_CONFIG_ERROR = 2


@dataclass
class BridgeContext:
    """Everything a request or job needs, passed explicitly."""

    config: BridgeConfig
    client: TriskellClient
    session: SessionManager
    projects: ProjectsProcessor
    dispatcher: WebhookDispatcher
    actions: ActionRegistry
    reports: ReportRegistry
    scheduler: JobScheduler
    event_log: Optional[EventLog] = None
    uptime: ProcessUptime = field(default_factory=ProcessUptime)
    jobs_started: int = 0


Extension = Callable[[BridgeContext], None]
TenantHook = Callable[[SessionManager], Awaitable[None]]


class Orchestrator:
    """
    Builds the BridgeContext in order and owns its lifecycle.

    Usage:
        exit_code = asyncio.run(Orchestrator(load_config()).run())
    """

    def __init__(
        self,
        config: BridgeConfig,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        extensions: Iterable[Extension] = (),
        tenant_setup: Iterable[TenantHook] = (),
        configure_logs: bool = True,
        event_log: bool = True,
        exit_fn: Callable[[int], None] = os._exit,
    ):
        self.config = config
        self._transport = transport
        self._extensions: List[Extension] = list(extensions)
        self._tenant_setup: List[TenantHook] = list(tenant_setup)
        self._configure_logs = configure_logs
        self._event_log_enabled = event_log
        self._exit_fn = exit_fn

        self.context: Optional[BridgeContext] = None
        self.watchdog: Optional[threading.Timer] = None
        self._event_log: Optional[EventLog] = None
        self._client: Optional[TriskellClient] = None
        self._session: Optional[SessionManager] = None
        self._scheduler: Optional[JobScheduler] = None
        self._server: Optional[uvicorn.Server] = None
        self._stopped = False

    # -----------------------------------------------------------------------
    # Startup
    # -----------------------------------------------------------------------

    async def initialize(self) -> BridgeContext:
        config = self.config
        if self._configure_logs:
            configure_logging(config)
        logger.info(
            f"{config.name} / version {__version__} started in {config.mode.value} mode."
        )
        logger.info("Start initialization...")

        if self._event_log_enabled:
            self._event_log = EventLog.from_config(config.logging).start()

        self._client = TriskellClient(
            config.triskell.url,
            config.triskell.tenant,
            config.triskell.timeout_seconds,
            transport=self._transport,
            event_log=self._event_log,
        )
        self._session = SessionManager(
            self._client,
            config.triskell.tenant,
            config.triskell.api_account,
            config.api_account,
            event_log=self._event_log,
        )
        await self._session.login()
        await self.prepare_tenant(self._session)

        projects = ProjectsProcessor(config.only_project)

        dispatcher = WebhookDispatcher(
            self._session,
            timeout_seconds=config.webhooks.timeout_seconds,
            dedupe_ttl_seconds=config.webhooks.dedupe_ttl_seconds,
            event_log=self._event_log,
        )
        register_builtin_handlers(dispatcher)

        actions = ActionRegistry(self._session, event_log=self._event_log)
        reports = ReportRegistry(self._session, event_log=self._event_log)
        register_builtin_pages(actions, reports, projects)

        self._scheduler = JobScheduler(
            config.mode,
            self._session,
            self._client,
            timezone_name=config.scheduler.timezone,
            whitelist=config.scheduler.test_jobs,
            dev_delay=config.scheduler.dev_delay_seconds,
            event_log=self._event_log,
        )
        register_builtin_jobs(self._scheduler, config, projects)

        context = BridgeContext(
            config=config,
            client=self._client,
            session=self._session,
            projects=projects,
            dispatcher=dispatcher,
            actions=actions,
            reports=reports,
            scheduler=self._scheduler,
            event_log=self._event_log,
        )
        for extension in self._extensions:
            extension(context)

        dispatcher.freeze()
        actions.freeze()
        reports.freeze()

        context.jobs_started = self._scheduler.start_all()
        logger.info("Initialization completed")
        if self._event_log is not None:
            self._event_log.push(log_system_event(
                "system_started",
                details={"mode": config.mode.value, "jobs_started": context.jobs_started},
            ))
        self.context = context
        return context

    async def prepare_tenant(self, session: SessionManager) -> None:
        """Run the tenant setup hooks once the session is logged in, in order."""
        for hook in self._tenant_setup:
            await hook(session)
        logger.info(f"Triskell tenant {self.config.triskell.tenant} initialized")

    # -----------------------------------------------------------------------
    # Serving / shutdown
    # -----------------------------------------------------------------------

    async def serve(self, context: BridgeContext) -> None:
        app = create_app(context)
        self._server = uvicorn.Server(uvicorn.Config(
            app,
            host=self.config.host,
            port=self.config.port,
            log_config=None,
            access_log=self.config.is_dev,
        ))
        logger.info(f"Application listening on {self.config.host}:{self.config.port}")
        await self._server.serve()

    async def run(self) -> int:
        """Initialize, then serve until shutdown. Returns the process exit status."""
        try:
            context = await self.initialize()
        except Exception as e:
            return await self.fail(e)

        try:
            await self.serve(context)
        finally:
            await self.stop()
        return EXIT_OK

    async def fail(self, error: BaseException) -> int:
        """Fatal startup policy: log, arm the forced exit, stop what was started."""
        logger.error(
            f"APPLICATION STOPPED BECAUSE OF INITIALIZATION ERROR: {error!r}",
            exc_info=not isinstance(error, BridgeError),
        )
        self.watchdog = threading.Timer(
            self.config.shutdown_grace_seconds,
            self._exit_fn,
            args=(EXIT_STARTUP_FAILURE,),
        )
        self.watchdog.daemon = True
        self.watchdog.start()

        try:
            await self.stop()
        except Exception as stop_error:
            logger.error(f"ERROR STOPPING AFTER INITIALIZATION FAILURE: {stop_error!r}")
        return EXIT_STARTUP_FAILURE

    async def stop(self) -> None:
        """Stop jobs, log out, close the client and flush the event log. Idempotent."""
        if self._stopped:
            return
        self._stopped = True

        if self._server is not None:
            self._server.should_exit = True
        if self._scheduler is not None:
            await self._scheduler.stop()
        try:
            if self._session is not None:
                await self._session.logout()
        finally:
            if self._client is not None:
                await self._client.aclose()
            if self._event_log is not None:
                self._event_log.push(log_system_event("system_stopped"))
                self._event_log.stop()
        logger.info("Bridge stopped")


def run_service(config: BridgeConfig) -> int:
    """Blocking entry point used by the CLI."""
    return asyncio.run(Orchestrator(config).run())
