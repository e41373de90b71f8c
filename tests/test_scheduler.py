"""Unit tests for triskell_bridge.process.scheduler — registry, trigger modes, ticks."""

import asyncio
import logging
from datetime import datetime, timezone

import pytest
from croniter import croniter

from triskell_bridge.engine.config import Mode
from triskell_bridge.engine.errors import ApiError, ApiErrorKind, ConfigError, DuplicateJobError
from triskell_bridge.engine.logging import EventLog
from triskell_bridge.process.scheduler import (
    CronTrigger,
    DisabledTrigger,
    JobDescriptor,
    JobScheduler,
    ManualTrigger,
    next_slot,
    resolve_timezone,
    select_trigger,
)


def _scheduler(session, mode=Mode.DEVELOPMENT, **kwargs) -> JobScheduler:
    kwargs.setdefault("dev_delay", 0.01)
    return JobScheduler(mode, session, session.client, **kwargs)


class Recorder:
    """Job handler that counts its ticks."""

    def __init__(self, delay: float = 0.0, error: Exception = None):
        self.calls = 0
        self.delay = delay
        self.error = error

    async def __call__(self, session, client):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.calls


class TestRegistry:
    def test_register(self, session):
        scheduler = _scheduler(session)
        job = scheduler.register("sync", "*/5 * * * *", Recorder())
        assert isinstance(job, JobDescriptor)
        assert scheduler.get("sync") is job
        assert [j.name for j in scheduler.jobs] == ["sync"]
        assert not job.running

    def test_duplicate_keeps_original(self, session):
        scheduler = _scheduler(session)
        original = Recorder()
        scheduler.register("sync", "0 * * * *", original)
        with pytest.raises(DuplicateJobError):
            scheduler.register("sync", "*/1 * * * *", Recorder())
        assert scheduler.get("sync").handler is original
        assert scheduler.get("sync").schedule == "0 * * * *"

    def test_invalid_cron(self, session):
        scheduler = _scheduler(session)
        with pytest.raises(ConfigError, match="Invalid cron"):
            scheduler.register("bad", "every hour", Recorder())
        assert scheduler.get("bad") is None

    def test_next_slot_advances_from_previous_slot(self):
        t0 = datetime(2026, 5, 1, 10, 0, tzinfo=timezone.utc)
        cron = croniter("*/5 * * * *", t0)
        assert next_slot(cron, t0) == datetime(2026, 5, 1, 10, 5, tzinfo=timezone.utc)
        # Wall clock stepped back after the 10:05 slot fired
        stepped_back = datetime(2026, 5, 1, 10, 4, 30, tzinfo=timezone.utc)
        assert next_slot(cron, stepped_back) == datetime(2026, 5, 1, 10, 10, tzinfo=timezone.utc)

    def test_next_slot_skips_missed_slots(self):
        t0 = datetime(2026, 5, 1, 10, 0, tzinfo=timezone.utc)
        cron = croniter("*/5 * * * *", t0)
        resumed = datetime(2026, 5, 1, 10, 17, tzinfo=timezone.utc)
        assert next_slot(cron, resumed) == datetime(2026, 5, 1, 10, 20, tzinfo=timezone.utc)

    def test_to_dict(self, session):
        job = _scheduler(session).register("sync", "0 * * * *", Recorder())
        data = job.to_dict()
        assert data["name"] == "sync"
        assert data["last_run_at"] is None


class TestTriggerSelection:
    def test_modes(self):
        assert isinstance(select_trigger(Mode.PRODUCTION), CronTrigger)
        assert isinstance(select_trigger(Mode.DEVELOPMENT, ["a"]), ManualTrigger)
        assert isinstance(select_trigger(Mode.BACKUP), DisabledTrigger)

    def test_timezone(self):
        assert resolve_timezone("UTC") is timezone.utc
        with pytest.raises(ConfigError):
            resolve_timezone("Mars/Olympus")


class TestDevelopmentMode:
    @pytest.mark.asyncio
    async def test_whitelist_starts_only_listed_jobs(self, session, caplog):
        scheduler = _scheduler(session, whitelist=["sync", "ghost"])
        sync, other = Recorder(), Recorder()
        scheduler.register("sync", "0 0 1 1 *", sync)
        scheduler.register("other", "0 0 1 1 *", other)

        with caplog.at_level(logging.INFO, logger="triskell_bridge.process.scheduler"):
            started = scheduler.start_all()
            await asyncio.sleep(0.1)

        assert started == 1
        assert sync.calls == 1
        assert other.calls == 0
        assert "JOB ghost DOESN'T EXIST!" in caplog.text
        assert "JOB sync STARTED" in caplog.text
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_fires_once_then_stops(self, session):
        scheduler = _scheduler(session, whitelist=["sync"])
        sync = Recorder()
        job = scheduler.register("sync", "* * * * *", sync)
        scheduler.start_all()
        assert job.running
        await asyncio.sleep(0.1)
        assert sync.calls == 1
        assert not job.running
        assert job.fire_at is None

    @pytest.mark.asyncio
    async def test_empty_whitelist(self, session):
        scheduler = _scheduler(session)
        scheduler.register("sync", "* * * * *", Recorder())
        assert scheduler.start_all() == 0


class TestOtherModes:
    @pytest.mark.asyncio
    async def test_backup_starts_nothing(self, session):
        scheduler = _scheduler(session, Mode.BACKUP, whitelist=["sync"])
        sync = Recorder()
        scheduler.register("sync", "* * * * *", sync)
        assert scheduler.start_all() == 0
        assert not scheduler.get("sync").running
        await asyncio.sleep(0.05)
        assert sync.calls == 0

    @pytest.mark.asyncio
    async def test_production_starts_all(self, session, caplog):
        scheduler = _scheduler(session, Mode.PRODUCTION)
        scheduler.register("a", "0 0 1 1 *", Recorder())
        scheduler.register("b", "0 0 1 1 *", Recorder())
        with caplog.at_level(logging.INFO, logger="triskell_bridge.process.scheduler"):
            assert scheduler.start_all() == 2
        assert all(j.running for j in scheduler.jobs)
        assert "2 scheduled jobs started." in caplog.text
        await scheduler.stop()
        assert not any(j.running for j in scheduler.jobs)

    @pytest.mark.asyncio
    async def test_stop_right_after_start_allows_restart(self, session):
        scheduler = _scheduler(session, Mode.PRODUCTION)
        scheduler.register("a", "0 0 1 1 *", Recorder())
        scheduler.start_all()
        # Loops cancelled before they ever ran
        await scheduler.stop()
        assert not scheduler.get("a").running

        assert scheduler.start_all() == 1
        assert scheduler.get("a").running
        await scheduler.stop()
        assert not scheduler.get("a").running

    @pytest.mark.asyncio
    async def test_cancelled_loop_clears_running(self, session):
        scheduler = _scheduler(session, Mode.PRODUCTION)
        job = scheduler.register("a", "0 0 1 1 *", Recorder())
        scheduler.start_job(job)
        await asyncio.sleep(0)
        scheduler._loops["a"].cancel()
        await asyncio.sleep(0.01)
        assert not job.running
        assert "a" not in scheduler._loops


class TestTicks:
    @pytest.mark.asyncio
    async def test_run_once(self, session):
        scheduler = _scheduler(session)
        sync = Recorder()
        scheduler.register("sync", "0 * * * *", sync)
        assert await scheduler.run_once("sync") is True
        job = scheduler.get("sync")
        assert job.tick_count == 1
        assert job.last_run_at is not None

    @pytest.mark.asyncio
    async def test_run_once_unknown(self, session):
        with pytest.raises(KeyError):
            await _scheduler(session).run_once("nope")

    @pytest.mark.asyncio
    async def test_failure_is_logged_and_job_survives(self, session, caplog):
        scheduler = _scheduler(session)
        failing = Recorder(error=ApiError("down", ApiErrorKind.NETWORK))
        scheduler.register("sync", "0 * * * *", failing)
        with caplog.at_level(logging.ERROR, logger="triskell_bridge.process.scheduler"):
            assert await scheduler.run_once("sync") is False
        job = scheduler.get("sync")
        assert job.failure_count == 1
        assert job.last_error == "down"
        assert "Job sync failed" in caplog.text

        failing.error = None
        assert await scheduler.run_once("sync") is True
        assert job.last_error is None

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_contained(self, session):
        scheduler = _scheduler(session)
        scheduler.register("sync", "0 * * * *", Recorder(error=ZeroDivisionError()))
        assert await scheduler.run_once("sync") is False

    @pytest.mark.asyncio
    async def test_overlap_allowed_by_default(self, session):
        scheduler = _scheduler(session)
        slow = Recorder(delay=0.05)
        scheduler.register("sync", "0 * * * *", slow)
        results = await asyncio.gather(scheduler.run_once("sync"), scheduler.run_once("sync"))
        assert results == [True, True]
        assert slow.calls == 2

    @pytest.mark.asyncio
    async def test_skip_if_running(self, session, tmp_path):
        log = EventLog(log_dir=str(tmp_path))
        scheduler = _scheduler(session, event_log=log)
        slow = Recorder(delay=0.05)
        scheduler.register("sync", "0 * * * *", slow, skip_if_running=True)
        results = await asyncio.gather(scheduler.run_once("sync"), scheduler.run_once("sync"))
        assert sorted(results) == [False, True]
        assert slow.calls == 1
        log.flush()
        events = [e["event"] for e in log.query("jobs")]
        assert sorted(events) == ["job_completed", "job_skipped"]

    @pytest.mark.asyncio
    async def test_ticks_share_the_session(self, session, fake_triskell):
        scheduler = _scheduler(session)

        async def fetch(sess, client):
            return await sess.execute("getObjects")

        scheduler.register("a", "0 * * * *", fetch)
        scheduler.register("b", "0 * * * *", fetch)
        await asyncio.gather(scheduler.run_once("a"), scheduler.run_once("b"))
        assert fake_triskell.login_calls == 1

    @pytest.mark.asyncio
    async def test_stop_cancels_stuck_ticks(self, session):
        scheduler = _scheduler(session)
        scheduler.register("stuck", "0 * * * *", Recorder(delay=10))
        task = asyncio.ensure_future(scheduler.run_once("stuck"))
        await asyncio.sleep(0.01)
        await scheduler.stop(timeout=0.05)
        assert task.done()
