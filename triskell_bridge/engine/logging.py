"""
Triskell Bridge Logging — system log handlers + structured JSONL event log.

Implements:
- configure_logging(): console, rotating system.log, mail alerts and the
  uncaught-exception log, depending on the execution mode
- FileLogger: per-category event files (daily rotation)
- AsyncLogQueue: in-memory queue with background flush (100ms / 50 entries)
- EventLog: start/push/stop facade handed to the components
- Entry builders for each event type (webhooks, actions, jobs, api_calls, system)
- LogRetentionManager: deletes/compresses old event files

Layout:
    logs/system.log                              rotating, 1 MiB x 10
    logs/exceptions.log                          uncaught exceptions (not in development)
    logs/events/{category}/{YYYY-MM-DD}.jsonl    structured events
"""

from __future__ import annotations

import gzip
import json
import logging
import logging.handlers
import shutil
import sys
import threading
import time
from collections import defaultdict
from datetime import date, datetime, timedelta, timezone
from email.utils import formataddr
from pathlib import Path
from queue import Empty, Full, Queue
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from triskell_bridge.engine.context import get_request_context

if TYPE_CHECKING:
    from triskell_bridge.engine.config import BridgeConfig, LoggingConfig

logger = logging.getLogger("triskell_bridge.engine.logging")

ROOT_LOGGER = "triskell_bridge"
EXCEPTIONS_LOGGER = "triskell_bridge.exceptions"
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

EVENT_CATEGORIES = ("webhooks", "actions", "jobs", "api_calls", "system")

# Retention defaults (days)
DEFAULT_RETENTION = {
    "webhooks": 90,
    "actions": 90,
    "jobs": 30,
    "api_calls": 30,
    "system": 365,
}


# ---------------------------------------------------------------------------
# System log (stdlib logging handlers)
# ---------------------------------------------------------------------------

def _tag(handler: logging.Handler) -> logging.Handler:
    handler._triskell_bridge = True  # type: ignore[attr-defined]
    return handler


def _remove_installed(target: logging.Logger) -> None:
    for handler in list(target.handlers):
        if getattr(handler, "_triskell_bridge", False):
            target.removeHandler(handler)
            handler.close()


def build_mail_handler(config: "BridgeConfig") -> Optional[logging.Handler]:
    """SMTP alert handler, or None when mail is not configured."""
    mail = config.mail
    if not mail.enabled:
        return None
    credentials = (mail.username, mail.password or "") if mail.username else None
    handler = logging.handlers.SMTPHandler(
        mailhost=(mail.host, mail.port),
        fromaddr=formataddr((mail.sender or "", mail.from_address or mail.username or "")),
        toaddrs=list(mail.to),
        subject=mail.subject,
        credentials=credentials,
    )
    handler.setLevel(mail.level)
    return handler


def configure_logging(config: "BridgeConfig") -> logging.Logger:
    """
    Install the system log handlers on the ``triskell_bridge`` logger.

    Console always logs at INFO, the rotating system.log at the configured
    level. Outside development, warnings are also mailed and uncaught
    exceptions go to exceptions.log (and mail). Safe to call repeatedly:
    handlers installed by a previous call are replaced.
    """
    log_cfg = config.logging
    log_dir = Path(log_cfg.directory)
    log_dir.mkdir(parents=True, exist_ok=True)
    formatter = logging.Formatter(LOG_FORMAT)

    root = logging.getLogger(ROOT_LOGGER)
    _remove_installed(root)
    root.setLevel(log_cfg.level)

    console = _tag(logging.StreamHandler())
    console.setLevel(logging.INFO)
    console.setFormatter(formatter)
    root.addHandler(console)

    system_file = _tag(logging.handlers.RotatingFileHandler(
        log_dir / "system.log",
        maxBytes=log_cfg.max_file_bytes,
        backupCount=log_cfg.backup_count,
        encoding="utf-8",
    ))
    system_file.setFormatter(formatter)
    root.addHandler(system_file)

    exc_logger = logging.getLogger(EXCEPTIONS_LOGGER)
    _remove_installed(exc_logger)

    if not config.is_dev:
        mail_handler = build_mail_handler(config)
        if mail_handler is not None:
            mail_handler.setFormatter(formatter)
            root.addHandler(_tag(mail_handler))

        exceptions_file = _tag(logging.handlers.RotatingFileHandler(
            log_dir / "exceptions.log",
            maxBytes=log_cfg.exceptions_max_bytes,
            backupCount=1,
            encoding="utf-8",
        ))
        exceptions_file.setFormatter(formatter)
        exc_logger.addHandler(exceptions_file)
        install_excepthook()

    logger.debug(f"System logging configured (level={log_cfg.level}, mode={config.mode.value})")
    return root


def install_excepthook() -> None:
    """Route uncaught exceptions (main and worker threads) to the exceptions logger."""
    exc_logger = logging.getLogger(EXCEPTIONS_LOGGER)

    def _hook(exc_type, exc_value, exc_tb):
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc_value, exc_tb)
            return
        exc_logger.critical("Uncaught exception", exc_info=(exc_type, exc_value, exc_tb))

    def _thread_hook(args):
        if args.exc_type is SystemExit:
            return
        exc_logger.critical(
            f"Uncaught exception in thread {args.thread.name if args.thread else '?'}",
            exc_info=(args.exc_type, args.exc_value, args.exc_traceback),
        )

    sys.excepthook = _hook
    threading.excepthook = _thread_hook


# ---------------------------------------------------------------------------
# Structured event log
# ---------------------------------------------------------------------------

class LogEntry:
    """A structured event destined for a category file."""

    __slots__ = ("category", "data")

    def __init__(self, category: str, data: Dict[str, Any]):
        self.category = category
        self.data = data

    def to_json(self) -> str:
        return json.dumps(self.data, default=str, separators=(",", ":"))


class FileLogger:
    """
    Writes event entries to per-category files.
    Files rotate daily: {log_dir}/{category}/{YYYY-MM-DD}.jsonl

    Thread-safe — uses a lock per file path.
    """

    def __init__(self, log_dir: str = "logs/events"):
        self._log_dir = Path(log_dir)
        self._file_locks: Dict[str, threading.Lock] = defaultdict(threading.Lock)
        for cat in EVENT_CATEGORIES:
            (self._log_dir / cat).mkdir(parents=True, exist_ok=True)

    def write_batch(self, entries: List[LogEntry]) -> None:
        """Write a batch of entries, grouping by file path."""
        grouped: Dict[str, List[LogEntry]] = defaultdict(list)
        for entry in entries:
            grouped[str(self._resolve_path(entry.category))].append(entry)

        for file_path, batch in grouped.items():
            with self._file_locks[file_path]:
                with open(file_path, "a", encoding="utf-8") as f:
                    for entry in batch:
                        f.write(entry.to_json())
                        f.write("\n")

    def write(self, entry: LogEntry) -> None:
        self.write_batch([entry])

    def _resolve_path(self, category: str) -> Path:
        path = self._log_dir / category
        path.mkdir(parents=True, exist_ok=True)
        return path / f"{date.today().isoformat()}.jsonl"

    @property
    def log_dir(self) -> Path:
        return self._log_dir

    def query(
        self,
        category: str,
        *,
        days: int = 7,
        filters: Optional[Dict[str, Any]] = None,
        limit: int = 500,
    ) -> List[Dict[str, Any]]:
        """
        Read back entries of one category from the last ``days`` days.
        Only entries matching ALL ``filters`` (top-level equality) are returned.
        """
        results: List[Dict[str, Any]] = []
        current = date.today()
        oldest = current - timedelta(days=days)
        while current >= oldest and len(results) < limit:
            file_path = self._log_dir / category / f"{current.isoformat()}.jsonl"
            if file_path.exists():
                with open(file_path, "r", encoding="utf-8") as f:
                    for line in f:
                        line = line.strip()
                        if not line:
                            continue
                        try:
                            data = json.loads(line)
                        except json.JSONDecodeError:
                            continue
                        if filters and not all(data.get(k) == v for k, v in filters.items()):
                            continue
                        results.append(data)
            current -= timedelta(days=1)
        return results[:limit]


class AsyncLogQueue:
    """
    In-memory queue with a background flush thread.

    Entries are pushed non-blocking. The thread flushes to FileLogger every
    flush_interval_ms or when flush_batch_size entries accumulate.
    """

    def __init__(
        self,
        file_logger: FileLogger,
        flush_interval_ms: int = 100,
        flush_batch_size: int = 50,
        max_queue_size: int = 10000,
    ):
        self._logger = file_logger
        self._flush_interval = flush_interval_ms / 1000.0
        self._flush_batch_size = flush_batch_size
        self._queue: Queue[LogEntry] = Queue(maxsize=max_queue_size)
        self._running = False
        self._flush_thread: Optional[threading.Thread] = None
        self._dropped_count = 0

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._flush_thread = threading.Thread(
            target=self._flush_loop,
            name="bridge-event-flush",
            daemon=True,
        )
        self._flush_thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the flush thread and drain remaining entries."""
        self._running = False
        if self._flush_thread and self._flush_thread.is_alive():
            self._flush_thread.join(timeout=timeout)
        self.drain()
        if self._dropped_count:
            logger.warning(f"Event log stopped, {self._dropped_count} entries dropped")

    def push(self, entry: LogEntry) -> bool:
        """Queue an entry. Returns False when dropped (queue full)."""
        try:
            self._queue.put_nowait(entry)
            return True
        except Full:
            self._dropped_count += 1
            return False

    def _flush_loop(self) -> None:
        while self._running:
            batch = self._collect_batch()
            if batch:
                try:
                    self._logger.write_batch(batch)
                except OSError as e:
                    logger.error(f"Event log flush error: {e}")
            else:
                time.sleep(self._flush_interval)

    def _collect_batch(self) -> List[LogEntry]:
        batch: List[LogEntry] = []
        deadline = time.monotonic() + self._flush_interval

        while len(batch) < self._flush_batch_size:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            try:
                batch.append(self._queue.get(timeout=min(remaining, 0.01)))
            except Empty:
                if batch:
                    break
        return batch

    def drain(self) -> None:
        """Write everything still queued, synchronously."""
        batch: List[LogEntry] = []
        while True:
            try:
                batch.append(self._queue.get_nowait())
            except Empty:
                break
        if batch:
            try:
                self._logger.write_batch(batch)
            except OSError as e:
                logger.error(f"Event log drain error: {e}")

    @property
    def running(self) -> bool:
        return self._running

    @property
    def pending_count(self) -> int:
        return self._queue.qsize()

    @property
    def dropped_count(self) -> int:
        return self._dropped_count


class EventLog:
    """The structured event log handed to the client, dispatcher and scheduler."""

    def __init__(
        self,
        log_dir: str = "logs/events",
        flush_interval_ms: int = 100,
        flush_batch_size: int = 50,
        max_queue_size: int = 10000,
    ):
        self.file_logger = FileLogger(log_dir=log_dir)
        self._queue = AsyncLogQueue(
            self.file_logger,
            flush_interval_ms=flush_interval_ms,
            flush_batch_size=flush_batch_size,
            max_queue_size=max_queue_size,
        )

    @classmethod
    def from_config(cls, config: "LoggingConfig") -> "EventLog":
        return cls(
            log_dir=config.event_directory,
            flush_interval_ms=config.flush_interval_ms,
            flush_batch_size=config.flush_batch_size,
            max_queue_size=config.max_queue_size,
        )

    def start(self) -> "EventLog":
        self._queue.start()
        return self

    def push(self, entry: LogEntry) -> bool:
        return self._queue.push(entry)

    def flush(self) -> None:
        self._queue.drain()

    def stop(self) -> None:
        self._queue.stop()

    def query(self, category: str, **kwargs: Any) -> List[Dict[str, Any]]:
        return self.file_logger.query(category, **kwargs)

    @property
    def dropped_count(self) -> int:
        return self._queue.dropped_count


# ---------------------------------------------------------------------------
# Entry builders
# ---------------------------------------------------------------------------

def _base_entry(event: str, level: str, **extra: Any) -> Dict[str, Any]:
    """Common fields, plus the execution_id of the active request/tick."""
    entry: Dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "level": level,
        "event": event,
    }
    ctx = get_request_context()
    if ctx is not None:
        entry["execution_id"] = ctx.execution_id
    entry.update({k: v for k, v in extra.items() if v is not None})
    return entry


def log_webhook_dispatch(
    object: str,
    event: str,
    ok: bool,
    duration_ms: float,
    error_kind: Optional[str] = None,
    duplicate: bool = False,
    source_system_id: Optional[str] = None,
    event_id: Optional[str] = None,
) -> LogEntry:
    """Build a webhook dispatch entry."""
    data = _base_entry(
        event="webhook_dispatched",
        level="INFO" if ok else "ERROR",
        object=object,
        webhook_event=event,
        ok=ok,
        duration_ms=round(duration_ms, 2),
        duplicate=duplicate,
        error_kind=error_kind,
        source_system_id=source_system_id,
        event_id=event_id,
    )
    return LogEntry("webhooks", data)


def log_action_run(
    object: str,
    action: str,
    ok: bool,
    duration_ms: float,
    object_id: Optional[str] = None,
    error: Optional[str] = None,
) -> LogEntry:
    """Build a page action / report entry. Reports use action="report"."""
    data = _base_entry(
        event="action_run" if action != "report" else "report_built",
        level="INFO" if ok else "ERROR",
        object=object,
        object_id=object_id,
        action=action,
        ok=ok,
        duration_ms=round(duration_ms, 2),
        error=error,
    )
    return LogEntry("actions", data)


def log_job_tick(
    job: str,
    ok: bool,
    duration_ms: float = 0.0,
    skipped: bool = False,
    error: Optional[str] = None,
) -> LogEntry:
    """Build a job tick entry (completed, failed or skipped)."""
    if skipped:
        event, level = "job_skipped", "WARNING"
    else:
        event, level = ("job_completed", "INFO") if ok else ("job_failed", "ERROR")
    data = _base_entry(
        event=event,
        level=level,
        job=job,
        ok=ok,
        duration_ms=round(duration_ms, 2),
        error=error,
    )
    return LogEntry("jobs", data)


def log_api_call(
    operation: str,
    ok: bool,
    duration_ms: float,
    status_code: Optional[int] = None,
    error_kind: Optional[str] = None,
) -> LogEntry:
    """Build a Triskell API call entry."""
    data = _base_entry(
        event="api_called",
        level="INFO" if ok else "ERROR",
        operation=operation,
        ok=ok,
        duration_ms=round(duration_ms, 2),
        status_code=status_code,
        error_kind=error_kind,
    )
    return LogEntry("api_calls", data)


def log_system_event(
    event: str,
    level: str = "INFO",
    details: Optional[Dict[str, Any]] = None,
) -> LogEntry:
    """Build a system event entry (startup, shutdown, login)."""
    data = _base_entry(event=event, level=level, details=details)
    return LogEntry("system", data)


# ---------------------------------------------------------------------------
# Retention
# ---------------------------------------------------------------------------

class LogRetentionManager:
    """
    Cleans up event files older than the per-category retention.
    Files older than compress_after_days are gzipped first.
    """

    def __init__(
        self,
        log_dir: str = "logs/events",
        retention_days: Optional[Dict[str, int]] = None,
        compress_after_days: int = 7,
    ):
        self._log_dir = Path(log_dir)
        self._retention = dict(DEFAULT_RETENTION)
        self._retention.update(retention_days or {})
        self._compress_after = compress_after_days

    def cleanup(self, today: Optional[date] = None) -> Dict[str, int]:
        """
        Run retention cleanup across all categories.

        Returns:
            Dict with counts: {"deleted": N, "compressed": M}
        """
        deleted = 0
        compressed = 0
        today = today or date.today()

        for cat in EVENT_CATEGORIES:
            cat_dir = self._log_dir / cat
            if not cat_dir.exists():
                continue
            retention = self._retention.get(cat, 90)

            for file_path in sorted(cat_dir.iterdir()):
                if not file_path.is_file():
                    continue
                file_date = self._parse_file_date(file_path)
                if file_date is None:
                    continue

                age_days = (today - file_date).days
                if age_days > retention:
                    file_path.unlink()
                    deleted += 1
                elif age_days > self._compress_after and file_path.suffix == ".jsonl":
                    self._compress_file(file_path)
                    compressed += 1

        result = {"deleted": deleted, "compressed": compressed}
        logger.info(f"Event log cleanup: {result}")
        return result

    @staticmethod
    def _parse_file_date(file_path: Path) -> Optional[date]:
        """2026-02-12.jsonl / 2026-02-12.jsonl.gz -> date"""
        try:
            return date.fromisoformat(file_path.name.split(".")[0])
        except ValueError:
            return None

    @staticmethod
    def _compress_file(file_path: Path) -> None:
        gz_path = file_path.with_suffix(file_path.suffix + ".gz")
        try:
            with open(file_path, "rb") as f_in:
                with gzip.open(gz_path, "wb") as f_out:
                    shutil.copyfileobj(f_in, f_out)
            file_path.unlink()
        except OSError as e:
            logger.error(f"Failed to compress {file_path}: {e}")
            if gz_path.exists():
                gz_path.unlink()
