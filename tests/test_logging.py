"""Unit tests for triskell_bridge.engine.logging — handlers, event log, retention."""

import gzip
import json
import logging
import logging.handlers
import sys
from datetime import date, timedelta

import pytest

from triskell_bridge.engine.context import request_scope
from triskell_bridge.engine.logging import (
    DEFAULT_RETENTION,
    EVENT_CATEGORIES,
    AsyncLogQueue,
    EventLog,
    FileLogger,
    LogEntry,
    LogRetentionManager,
    build_mail_handler,
    configure_logging,
    log_action_run,
    log_api_call,
    log_job_tick,
    log_system_event,
    log_webhook_dispatch,
)


def _installed(name="triskell_bridge"):
    return [h for h in logging.getLogger(name).handlers if getattr(h, "_triskell_bridge", False)]


class TestConfigureLogging:
    def test_development_has_no_mail(self, config_factory, tmp_path):
        cfg = config_factory(mail={"host": "smtp.local", "to": ["ops@x"]})
        configure_logging(cfg)
        handlers = _installed()
        assert not any(isinstance(h, logging.handlers.SMTPHandler) for h in handlers)
        assert any(isinstance(h, logging.handlers.RotatingFileHandler) for h in handlers)
        assert (tmp_path / "logs" / "system.log").exists()
        assert _installed("triskell_bridge.exceptions") == []

    def test_production_adds_mail_and_exceptions(self, config_factory, tmp_path):
        cfg = config_factory(
            mode="production",
            mail={"host": "smtp.local", "to": ["ops@x"], "level": "warn",
                  "from_address": "bot@x", "sender": "Bridge"},
        )
        configure_logging(cfg)
        mail = [h for h in _installed() if isinstance(h, logging.handlers.SMTPHandler)]
        assert len(mail) == 1
        assert mail[0].level == logging.WARNING
        assert mail[0].fromaddr == "Bridge <bot@x>"
        assert len(_installed("triskell_bridge.exceptions")) == 1
        assert (tmp_path / "logs" / "exceptions.log").exists()
        assert sys.excepthook is not sys.__excepthook__

    def test_file_level_follows_config(self, config_factory):
        configure_logging(config_factory(logging={"level": "debug"}))
        assert logging.getLogger("triskell_bridge").level == logging.DEBUG

    def test_reconfigure_replaces_handlers(self, bridge_config):
        configure_logging(bridge_config)
        first = len(_installed())
        configure_logging(bridge_config)
        assert len(_installed()) == first

    def test_system_log_written(self, bridge_config, tmp_path):
        configure_logging(bridge_config)
        logging.getLogger("triskell_bridge.test").info("hello system log")
        for h in _installed():
            h.flush()
        assert "hello system log" in (tmp_path / "logs" / "system.log").read_text()

    def test_mail_handler_disabled_without_host(self, bridge_config):
        assert build_mail_handler(bridge_config) is None


class TestLogEntry:
    def test_to_json(self):
        entry = LogEntry("jobs", {"job": "sync"})
        assert entry.category == "jobs"
        assert json.loads(entry.to_json()) == {"job": "sync"}


class TestFileLogger:
    def test_creates_category_dirs(self, tmp_path):
        FileLogger(log_dir=str(tmp_path / "events"))
        for cat in EVENT_CATEGORIES:
            assert (tmp_path / "events" / cat).is_dir()

    def test_write_and_query(self, tmp_path):
        fl = FileLogger(log_dir=str(tmp_path / "events"))
        fl.write_batch([
            LogEntry("jobs", {"job": "a", "ok": True}),
            LogEntry("jobs", {"job": "b", "ok": False}),
            LogEntry("system", {"event": "x"}),
        ])
        today = tmp_path / "events" / "jobs" / f"{date.today().isoformat()}.jsonl"
        assert len(today.read_text().strip().splitlines()) == 2
        assert fl.query("jobs", filters={"ok": False}) == [{"job": "b", "ok": False}]
        assert len(fl.query("system")) == 1


class TestAsyncLogQueue:
    def test_push_and_drain(self, tmp_path):
        fl = FileLogger(log_dir=str(tmp_path / "events"))
        queue = AsyncLogQueue(fl, flush_interval_ms=10)
        assert queue.push(LogEntry("system", {"n": 1}))
        assert queue.pending_count == 1
        queue.drain()
        assert queue.pending_count == 0
        assert fl.query("system") == [{"n": 1}]

    def test_full_queue_drops(self, tmp_path):
        queue = AsyncLogQueue(FileLogger(log_dir=str(tmp_path / "events")), max_queue_size=1)
        assert queue.push(LogEntry("system", {}))
        assert not queue.push(LogEntry("system", {}))
        assert queue.dropped_count == 1

    def test_start_stop_flushes(self, tmp_path):
        fl = FileLogger(log_dir=str(tmp_path / "events"))
        queue = AsyncLogQueue(fl, flush_interval_ms=10)
        queue.start()
        assert queue.running
        for i in range(5):
            queue.push(LogEntry("jobs", {"i": i}))
        queue.stop()
        assert not queue.running
        assert len(fl.query("jobs")) == 5


class TestEventLog:
    def test_from_config(self, bridge_config, tmp_path):
        log = EventLog.from_config(bridge_config.logging).start()
        log.push(log_system_event("started"))
        log.stop()
        entries = log.query("system")
        assert entries[0]["event"] == "started"
        assert (tmp_path / "logs" / "events" / "system").is_dir()


class TestBuilders:
    def test_webhook_dispatch(self):
        entry = log_webhook_dispatch("project", "created", ok=False, duration_ms=3.14159,
                                     error_kind="not_found")
        assert entry.category == "webhooks"
        assert entry.data["level"] == "ERROR"
        assert entry.data["duration_ms"] == 3.14
        assert entry.data["error_kind"] == "not_found"
        assert entry.data["duplicate"] is False
        assert "source_system_id" not in entry.data

    def test_execution_id_from_context(self):
        with request_scope("job", job_name="sync") as ctx:
            entry = log_job_tick("sync", ok=True, duration_ms=1.0)
        assert entry.data["execution_id"] == ctx.execution_id
        assert entry.data["event"] == "job_completed"

    def test_job_failed_and_skipped(self):
        assert log_job_tick("sync", ok=False, error="x").data["event"] == "job_failed"
        skipped = log_job_tick("sync", ok=True, skipped=True)
        assert skipped.data["event"] == "job_skipped"
        assert skipped.data["level"] == "WARNING"

    def test_action_and_report(self):
        assert log_action_run("project", "sync", True, 1.0, object_id="4").data["event"] == "action_run"
        assert log_action_run("projects", "report", True, 1.0).data["event"] == "report_built"
        assert log_action_run("project", "sync", True, 1.0).category == "actions"

    def test_api_call(self):
        entry = log_api_call("login", ok=True, duration_ms=2.0, status_code=200)
        assert entry.category == "api_calls"
        assert entry.data["operation"] == "login"
        assert entry.data["status_code"] == 200

    def test_system_event(self):
        entry = log_system_event("system_started", details={"mode": "production"})
        assert entry.category == "system"
        assert entry.data["details"] == {"mode": "production"}


class TestLogRetentionManager:
    def _touch(self, base, category, day):
        path = base / category / f"{day.isoformat()}.jsonl"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text('{"a":1}\n')
        return path

    def test_defaults(self):
        assert DEFAULT_RETENTION["system"] == 365
        assert set(DEFAULT_RETENTION) == set(EVENT_CATEGORIES)

    def test_delete_and_compress(self, tmp_path):
        today = date(2026, 6, 30)
        old = self._touch(tmp_path, "jobs", today - timedelta(days=31))
        aging = self._touch(tmp_path, "jobs", today - timedelta(days=10))
        fresh = self._touch(tmp_path, "jobs", today - timedelta(days=1))

        mgr = LogRetentionManager(log_dir=str(tmp_path), compress_after_days=7)
        result = mgr.cleanup(today=today)

        assert result == {"deleted": 1, "compressed": 1}
        assert not old.exists()
        assert not aging.exists()
        gz = aging.with_suffix(".jsonl.gz")
        with gzip.open(gz, "rt") as f:
            assert f.read() == '{"a":1}\n'
        assert fresh.exists()

    def test_custom_retention(self, tmp_path):
        today = date(2026, 6, 30)
        self._touch(tmp_path, "system", today - timedelta(days=5))
        mgr = LogRetentionManager(log_dir=str(tmp_path), retention_days={"system": 2})
        assert mgr.cleanup(today=today)["deleted"] == 1

    def test_ignores_foreign_files(self, tmp_path):
        (tmp_path / "jobs").mkdir()
        (tmp_path / "jobs" / "notes.txt").write_text("x")
        result = LogRetentionManager(log_dir=str(tmp_path)).cleanup()
        assert result == {"deleted": 0, "compressed": 0}
