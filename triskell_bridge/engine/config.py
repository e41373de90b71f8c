"""
Triskell Bridge Configuration — Load and validate config.yaml + environment overrides.

The base file is read once at startup, environment overrides are merged on
top and the result is validated into an immutable BridgeConfig snapshot that
the Orchestrator hands to every component.

Environment overrides (pipe/comma separated, same formats as the deployment
scripts use):

    BRIDGE_ENV          development | production | backup
    LOG_LEVEL           debug | info | warn | error ...
    MAIL_CONFIG         level|host|username|password
    MAIL_ADDRESSES      from|sender|to
    PORT                listening port
    TRISKELL_URL        Triskell REST base url
    TENANT_ID           Triskell tenant id
    TRISKELL_ACCOUNTS   name|user|userId|md5,name|user|userId|md5
    ONLY_PROJECT        only process the project with this name
    TEST_JOBS           job names started in development mode
    WEBHOOK_TOKEN       shared token required on /webhook requests

Usage:
    from triskell_bridge.engine.config import load_config
"""

from __future__ import annotations

import copy
import logging
import os
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from triskell_bridge.engine.errors import ConfigError

DEFAULT_CONFIG_FILE = "config.yaml"

# Level aliases accepted in LOG_LEVEL / MAIL_CONFIG besides stdlib names
_LEVEL_ALIASES = {
    "WARN": "WARNING",
    "VERBOSE": "DEBUG",
    "SILLY": "DEBUG",
    "FATAL": "CRITICAL",
}


def normalize_level(value: str) -> str:
    """Map a level name (any case, winston-style aliases allowed) to a stdlib name."""
    name = str(value).strip().upper()
    name = _LEVEL_ALIASES.get(name, name)
    if not isinstance(logging.getLevelName(name), int):
        raise ValueError(f"unknown log level '{value}'")
    return name


class Mode(str, Enum):
    """Execution mode of the service."""
    DEVELOPMENT = "development"
    PRODUCTION = "production"
    BACKUP = "backup"


# ---------------------------------------------------------------------------
# Pydantic models for config.yaml
# ---------------------------------------------------------------------------

class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class TriskellAccount(_Frozen):
    user: str
    user_id: str
    md5: str


class TriskellConfig(_Frozen):
    url: str = "http://localhost:8080/triskell/service/rest"
    tenant: int = 1
    accounts: Dict[str, TriskellAccount] = Field(default_factory=dict)
    api_account: str = "api"
    timeout_seconds: float = 30.0


class MailConfig(_Frozen):
    level: str = "WARNING"
    host: Optional[str] = None
    port: int = 25
    username: Optional[str] = None
    password: Optional[str] = None
    from_address: Optional[str] = None
    sender: Optional[str] = None
    to: List[str] = Field(default_factory=list)
    subject: str = "Triskell Bridge alert"

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        return normalize_level(v)

    @property
    def enabled(self) -> bool:
        return bool(self.host and self.to)


class LoggingConfig(_Frozen):
    level: str = "INFO"
    directory: str = "logs"
    max_file_bytes: int = 1 * 1048576
    backup_count: int = 10
    exceptions_max_bytes: int = 4 * 1048576
    event_directory: str = "logs/events"
    retention_days: Dict[str, int] = Field(
        default_factory=lambda: {
            "webhooks": 90,
            "actions": 90,
            "jobs": 30,
            "api_calls": 30,
            "system": 365,
        }
    )
    compress_after_days: int = 7
    flush_interval_ms: int = 100
    flush_batch_size: int = 50
    max_queue_size: int = 10000

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        return normalize_level(v)


class SchedulerConfig(_Frozen):
    timezone: str = "UTC"
    test_jobs: List[str] = Field(default_factory=list)
    jobs: Dict[str, str] = Field(default_factory=dict)
    dev_delay_seconds: float = 1.0


class WebhookConfig(_Frozen):
    timeout_seconds: float = 30.0
    token: Optional[str] = None
    dedupe_ttl_seconds: float = 600.0


class BridgeConfig(_Frozen):
    """Root model for config.yaml."""
    name: str = "Triskell Bridge"
    mode: Mode = Mode.DEVELOPMENT
    host: str = "0.0.0.0"
    port: int = 3000
    only_project: Optional[str] = None
    shutdown_grace_seconds: float = 10.0

    triskell: TriskellConfig = TriskellConfig()
    mail: MailConfig = MailConfig()
    logging: LoggingConfig = LoggingConfig()
    scheduler: SchedulerConfig = SchedulerConfig()
    webhooks: WebhookConfig = WebhookConfig()

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        if not 0 < v < 65536:
            raise ValueError(f"port must be 1-65535, got {v}")
        return v

    @property
    def is_dev(self) -> bool:
        return self.mode == Mode.DEVELOPMENT

    @property
    def api_account(self) -> TriskellAccount:
        """The account the shared session logs in with."""
        name = self.triskell.api_account
        try:
            return self.triskell.accounts[name]
        except KeyError:
            raise ConfigError(
                f"Triskell account '{name}' is not configured",
                account=name,
                configured=sorted(self.triskell.accounts),
            ) from None

    def masked(self) -> Dict[str, Any]:
        """Dump with secrets replaced, for check-config output."""
        data = self.model_dump(mode="json")
        if data["mail"].get("password"):
            data["mail"]["password"] = "***"
        for account in data["triskell"]["accounts"].values():
            account["md5"] = "***"
        if data["webhooks"].get("token"):
            data["webhooks"]["token"] = "***"
        return data


# ---------------------------------------------------------------------------
# Environment override parsing
# ---------------------------------------------------------------------------

def _split(value: str, sep: str, expected: int, var: str) -> List[str]:
    parts = value.split(sep)
    if len(parts) != expected:
        raise ConfigError(
            f"{var} must have {expected} '{sep}'-separated fields, got {len(parts)}",
            variable=var,
        )
    return [p.strip() for p in parts]


def parse_mail_config(value: str) -> Dict[str, Any]:
    """MAIL_CONFIG=level|host|username|password"""
    level, host, username, password = _split(value, "|", 4, "MAIL_CONFIG")
    return {"level": level, "host": host, "username": username, "password": password}


def parse_mail_addresses(value: str) -> Dict[str, Any]:
    """MAIL_ADDRESSES=from|sender|to  (several recipients separated by ',' or ';')"""
    from_address, sender, to = _split(value, "|", 3, "MAIL_ADDRESSES")
    recipients = [r.strip() for r in to.replace(";", ",").split(",") if r.strip()]
    return {"from_address": from_address, "sender": sender, "to": recipients}


def parse_accounts(value: str) -> Dict[str, Dict[str, str]]:
    """TRISKELL_ACCOUNTS=name|user|userId|md5,name|user|userId|md5"""
    accounts: Dict[str, Dict[str, str]] = {}
    for chunk in value.split(","):
        if not chunk.strip():
            continue
        name, user, user_id, md5 = _split(chunk, "|", 4, "TRISKELL_ACCOUNTS")
        accounts[name] = {"user": user, "user_id": user_id, "md5": md5}
    return accounts


def parse_job_list(value: str) -> List[str]:
    """TEST_JOBS=sync,cleanup"""
    return [name.strip() for name in value.split(",") if name.strip()]


def _parse_int(value: str, var: str) -> int:
    try:
        return int(value)
    except ValueError:
        raise ConfigError(f"{var} must be an integer, got '{value}'", variable=var) from None


def env_overrides(environ: Mapping[str, str]) -> Dict[str, Any]:
    """Translate environment variables into a nested override dict."""
    overrides: Dict[str, Any] = {}

    def put(path: str, value: Any) -> None:
        node = overrides
        keys = path.split(".")
        for key in keys[:-1]:
            node = node.setdefault(key, {})
        if isinstance(value, dict) and isinstance(node.get(keys[-1]), dict):
            node[keys[-1]].update(value)
        else:
            node[keys[-1]] = value

    if environ.get("BRIDGE_ENV"):
        put("mode", environ["BRIDGE_ENV"].strip().lower())
    if environ.get("LOG_LEVEL"):
        put("logging.level", environ["LOG_LEVEL"])
    if environ.get("MAIL_CONFIG"):
        put("mail", parse_mail_config(environ["MAIL_CONFIG"]))
    if environ.get("MAIL_ADDRESSES"):
        put("mail", parse_mail_addresses(environ["MAIL_ADDRESSES"]))
    if environ.get("PORT"):
        put("port", _parse_int(environ["PORT"], "PORT"))
    if environ.get("TRISKELL_URL"):
        put("triskell.url", environ["TRISKELL_URL"])
    if environ.get("TENANT_ID"):
        put("triskell.tenant", _parse_int(environ["TENANT_ID"], "TENANT_ID"))
    if environ.get("TRISKELL_ACCOUNTS"):
        # Replaces the whole account table
        put("triskell.accounts", parse_accounts(environ["TRISKELL_ACCOUNTS"]))
    if environ.get("ONLY_PROJECT"):
        put("only_project", environ["ONLY_PROJECT"])
    if environ.get("TEST_JOBS"):
        put("scheduler.test_jobs", parse_job_list(environ["TEST_JOBS"]))
    if environ.get("WEBHOOK_TOKEN"):
        put("webhooks.token", environ["WEBHOOK_TOKEN"])
    return overrides


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """
    Deep-merge override dict into base dict. Override values win.

    Only merges nested dicts. The account table is replaced as a whole so an
    env-provided account list never inherits stale entries from the file.
    """
    result = copy.deepcopy(base)
    for key, value in override.items():
        if (
            key in result
            and key != "accounts"
            and isinstance(result[key], dict)
            and isinstance(value, dict)
        ):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


# ---------------------------------------------------------------------------
# Config Loading
# ---------------------------------------------------------------------------

def read_config_file(config_path: Optional[str] = None) -> Dict[str, Any]:
    """Read the base file (YAML or JSON). A missing file means an empty base."""
    path = Path(config_path or DEFAULT_CONFIG_FILE)
    if not path.exists():
        if config_path is not None:
            raise ConfigError(f"Config file not found: {path}", path=str(path))
        return {}

    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot read config file {path}: {e}", path=str(path)) from e

    if not isinstance(raw, dict):
        raise ConfigError(f"Config file {path} must contain a mapping", path=str(path))
    return raw


def load_config(
    config_path: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> BridgeConfig:
    """
    Load config.yaml, merge environment overrides and validate.

    Args:
        config_path: Explicit path to the base file. If None, ./config.yaml is
            used when present, defaults otherwise.
        environ: Environment mapping (defaults to os.environ).

    Returns:
        Frozen BridgeConfig instance.

    Raises:
        ConfigError: On unreadable files, malformed overrides or invalid values.
    """
    if environ is None:
        environ = os.environ

    raw = read_config_file(config_path)
    merged = _deep_merge(raw, env_overrides(environ))

    try:
        return BridgeConfig.model_validate(merged)
    except ValidationError as e:
        errors = [
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
            for err in e.errors()
        ]
        raise ConfigError(
            f"Invalid configuration: {'; '.join(errors)}",
            validation_errors=errors,
        ) from e
