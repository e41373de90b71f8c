"""
Triskell Bridge Job Scheduler — named cron jobs sharing the Triskell session.

Responsibilities:
1. Job registry: unique names, cron expressions validated with croniter
2. Trigger strategy chosen from the execution mode at construction:
   - CronTrigger (production): every job on its cron schedule
   - ManualTrigger (development): all jobs rescheduled to fire once, one
     second from now; only whitelisted jobs are started
   - DisabledTrigger (backup): nothing starts
3. Fire-and-forget ticks: each tick is its own asyncio task. A failing tick
   is logged and the job stays scheduled. Overlapping ticks are allowed
   unless the job opted into skip_if_running.

Job handler signature:
    async def handler(session: SessionManager, client: TriskellClient) -> Any
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from triskell_bridge.engine.client import TriskellClient
from triskell_bridge.engine.config import Mode
from triskell_bridge.engine.context import request_scope
from triskell_bridge.engine.errors import BridgeError, ConfigError, DuplicateJobError
from triskell_bridge.engine.logging import EventLog, log_job_tick
from triskell_bridge.engine.session import SessionManager

logger = logging.getLogger("triskell_bridge.process.scheduler")

JobHandler = Callable[[SessionManager, TriskellClient], Awaitable[Any]]


# ---------------------------------------------------------------------------
# Job descriptor
# ---------------------------------------------------------------------------

@dataclass
class JobDescriptor:
    """A named, schedulable unit. Registered at startup, never destroyed."""

    name: str
    schedule: str
    handler: JobHandler
    skip_if_running: bool = False
    running: bool = False
    fire_at: Optional[datetime] = None  # one-shot override (development)
    active_ticks: int = 0
    tick_count: int = 0
    failure_count: int = 0
    last_run_at: Optional[datetime] = None
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "schedule": self.schedule,
            "running": self.running,
            "skip_if_running": self.skip_if_running,
            "tick_count": self.tick_count,
            "failure_count": self.failure_count,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_error": self.last_error,
        }


# ---------------------------------------------------------------------------
# Trigger strategies
# ---------------------------------------------------------------------------

class CronTrigger:
    """Production: start every registered job on its cron schedule."""

    def start(self, scheduler: "JobScheduler") -> int:
        count = 0
        for job in scheduler.jobs:
            scheduler.start_job(job)
            count += 1
        logger.info(f"{count} scheduled jobs started.")
        return count


class ManualTrigger:
    """
    Development: every job fires once, ``delay`` seconds from now, and only
    the whitelisted ones are started. Unknown names are reported, not fatal.
    """

    def __init__(self, whitelist: Iterable[str] = (), delay: float = 1.0):
        self.whitelist = list(whitelist)
        self.delay = delay

    def start(self, scheduler: "JobScheduler") -> int:
        fire_at = scheduler.now() + timedelta(seconds=self.delay)
        for job in scheduler.jobs:
            job.fire_at = fire_at

        count = 0
        for name in self.whitelist:
            job = scheduler.get(name)
            if job is None:
                logger.error(f"JOB {name} DOESN'T EXIST!")
                continue
            if job.running:
                continue
            scheduler.start_job(job)
            logger.info(f"JOB {name} STARTED")
            count += 1
        return count


class DisabledTrigger:
    """Backup (failover) mode: no scheduled job ever runs."""

    def start(self, scheduler: "JobScheduler") -> int:
        logger.info(f"Backup mode: {len(scheduler.jobs)} scheduled jobs left disabled")
        return 0


def select_trigger(mode: Mode, whitelist: Iterable[str] = (), dev_delay: float = 1.0):
    """Pick the trigger strategy for an execution mode."""
    if mode == Mode.PRODUCTION:
        return CronTrigger()
    if mode == Mode.DEVELOPMENT:
        return ManualTrigger(whitelist, dev_delay)
    return DisabledTrigger()


def next_slot(cron: croniter, now: datetime) -> datetime:
    """
    Advance ``cron`` from its previous slot to the next one not in the past.

    Slots come from the iterator, not from the wall clock, so a clock stepping
    backwards never yields a slot that already fired. Slots missed while the
    host was suspended are skipped.
    """
    slot = cron.get_next(datetime)
    while slot < now:
        slot = cron.get_next(datetime)
    return slot


def resolve_timezone(name: str) -> tzinfo:
    if name.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ConfigError(f"Unknown scheduler timezone '{name}'", timezone=name) from e


# ---------------------------------------------------------------------------
# JobScheduler
# ---------------------------------------------------------------------------

class JobScheduler:
    """
    Registers jobs and drives them with the mode's trigger strategy.

    Usage:
        scheduler = JobScheduler(Mode.PRODUCTION, session, client)
        scheduler.register("projects_sync", "0 * * * *", sync_projects)
        started = scheduler.start_all()
    """

    def __init__(
        self,
        mode: Mode,
        session: SessionManager,
        client: TriskellClient,
        *,
        timezone_name: str = "UTC",
        whitelist: Iterable[str] = (),
        dev_delay: float = 1.0,
        event_log: Optional[EventLog] = None,
    ):
        self.mode = Mode(mode)
        self._session = session
        self._client = client
        self._tz = resolve_timezone(timezone_name)
        self._event_log = event_log
        self.trigger = select_trigger(self.mode, whitelist, dev_delay)

        self._jobs: Dict[str, JobDescriptor] = {}
        self._loops: Dict[str, asyncio.Task] = {}
        self._ticks: Set[asyncio.Task] = set()

    # -----------------------------------------------------------------------
    # Registry
    # -----------------------------------------------------------------------

    def register(
        self,
        name: str,
        cron_expr: str,
        handler: JobHandler,
        *,
        skip_if_running: bool = False,
    ) -> JobDescriptor:
        """Register a job. A taken name is rejected and keeps its original handler."""
        if name in self._jobs:
            logger.error(f"Job '{name}' is already registered")
            raise DuplicateJobError(f"Job '{name}' is already registered", name=name)
        if not croniter.is_valid(cron_expr):
            raise ConfigError(
                f"Invalid cron expression for job '{name}': {cron_expr}",
                name=name,
                cron=cron_expr,
            )

        job = JobDescriptor(
            name=name,
            schedule=cron_expr,
            handler=handler,
            skip_if_running=skip_if_running,
        )
        self._jobs[name] = job
        logger.debug(f"Registered job: {name} ({cron_expr})")
        return job

    def get(self, name: str) -> Optional[JobDescriptor]:
        return self._jobs.get(name)

    @property
    def jobs(self) -> List[JobDescriptor]:
        return list(self._jobs.values())

    def now(self) -> datetime:
        return datetime.now(self._tz)

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    def start_all(self) -> int:
        """Start jobs according to the trigger strategy. Returns the number started."""
        return self.trigger.start(self)

    def start_job(self, job: JobDescriptor) -> None:
        """Start the trigger loop of one job. Must run inside an event loop."""
        if job.name in self._loops:
            return
        job.running = True
        task = asyncio.get_running_loop().create_task(
            self._run_loop(job), name=f"job-loop:{job.name}"
        )
        # Runs even when the loop is cancelled before its first step
        task.add_done_callback(lambda t: self._loop_done(job, t))
        self._loops[job.name] = task

    def _loop_done(self, job: JobDescriptor, task: asyncio.Task) -> None:
        job.running = False
        if self._loops.get(job.name) is task:
            del self._loops[job.name]

    async def _run_loop(self, job: JobDescriptor) -> None:
        cron = croniter(job.schedule, self.now())
        while True:
            one_shot = job.fire_at is not None
            now = self.now()
            fire_at = job.fire_at if one_shot else next_slot(cron, now)
            delay = (fire_at - now).total_seconds()
            if delay > 0:
                await asyncio.sleep(delay)
            self._spawn_tick(job)
            if one_shot:
                job.fire_at = None
                break

    def _spawn_tick(self, job: JobDescriptor) -> Optional[asyncio.Task]:
        if job.skip_if_running and job.active_ticks > 0:
            logger.warning(f"Job {job.name} still running, tick skipped")
            self._push(log_job_tick(job.name, ok=True, skipped=True))
            return None

        job.active_ticks += 1
        task = asyncio.get_running_loop().create_task(
            self._tick(job), name=f"job-tick:{job.name}"
        )
        self._ticks.add(task)
        task.add_done_callback(self._ticks.discard)
        return task

    async def _tick(self, job: JobDescriptor) -> bool:
        with request_scope("job", job_name=job.name):
            start = time.monotonic()
            job.tick_count += 1
            job.last_run_at = self.now()
            logger.debug(f"Job {job.name} tick #{job.tick_count}")
            try:
                await job.handler(self._session, self._client)
            except Exception as e:
                duration_ms = (time.monotonic() - start) * 1000
                job.failure_count += 1
                job.last_error = str(e)
                # Bridge errors are expected failures, anything else gets a traceback
                logger.error(
                    f"Job {job.name} failed: {e}",
                    exc_info=not isinstance(e, BridgeError),
                )
                self._push(log_job_tick(job.name, ok=False, duration_ms=duration_ms, error=str(e)))
                return False
            finally:
                job.active_ticks -= 1

            duration_ms = (time.monotonic() - start) * 1000
            job.last_error = None
            self._push(log_job_tick(job.name, ok=True, duration_ms=duration_ms))
            return True

    async def run_once(self, name: str) -> bool:
        """
        Run one tick of ``name`` now and wait for it.

        Returns:
            True if the tick succeeded, False if it failed or was skipped.
        """
        job = self._jobs.get(name)
        if job is None:
            raise KeyError(f"Unknown job '{name}'")
        task = self._spawn_tick(job)
        if task is None:
            return False
        return await task

    async def stop(self, timeout: float = 5.0) -> None:
        """Cancel every trigger loop, give in-flight ticks ``timeout`` to finish."""
        loops = list(self._loops.values())
        for task in loops:
            task.cancel()
        if loops:
            await asyncio.gather(*loops, return_exceptions=True)
        for job in self._jobs.values():
            job.running = False
        self._loops.clear()

        ticks = list(self._ticks)
        if ticks:
            _, pending = await asyncio.wait(ticks, timeout=timeout)
            for task in pending:
                task.cancel()
            if pending:
                logger.warning(f"Cancelled {len(pending)} job tick(s) still running at shutdown")
                await asyncio.gather(*pending, return_exceptions=True)
        logger.info("Job scheduler stopped")

    def _push(self, entry) -> None:
        if self._event_log is not None:
            self._event_log.push(entry)
