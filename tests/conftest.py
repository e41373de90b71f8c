"""
Triskell Bridge Test Suite — Shared fixtures and configuration.

Run:  pytest tests/ -v

The remote Triskell API is replaced by FakeTriskell, served through
httpx.MockTransport, so no test touches the network.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
import threading
from typing import Any, Dict, List, Optional

import httpx
import pytest

from triskell_bridge.engine.client import TriskellClient
from triskell_bridge.engine.config import BridgeConfig
from triskell_bridge.engine.session import SessionManager


BASE_URL = "http://triskell.test/rest"
TENANT = 3


class FakeTriskell:
    """
    In-memory Triskell facade.

    Knobs:
        fail_login       — login answers with a BAD_CREDENTIALS fault
        login_delay      — seconds login takes (single-flight tests)
        expire_next      — number of upcoming calls answered SESSION_EXPIRED
        delays           — per-operation delay in seconds
        responses        — per-operation canned result
    """

    def __init__(self) -> None:
        self.login_calls = 0
        self.fail_login = False
        self.login_delay = 0.0
        self.expire_next = 0
        self.valid_tokens: set = set()
        self.calls: List[Dict[str, Any]] = []
        self.delays: Dict[str, float] = {}
        self.responses: Dict[str, Any] = {}
        self.projects: List[Dict[str, Any]] = [
            {"id": 1, "name": "Apollo", "status": "open"},
            {"id": 2, "name": "Gemini", "status": "closed"},
        ]

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def calls_to(self, operation: str) -> List[Dict[str, Any]]:
        return [c for c in self.calls if c["operation"] == operation]

    @staticmethod
    def ok(result: Any) -> httpx.Response:
        return httpx.Response(200, json={"status": "ok", "result": result})

    @staticmethod
    def fault(code: str, message: str = "", status: int = 200) -> httpx.Response:
        return httpx.Response(
            status, json={"status": "error", "fault": {"code": code, "message": message or code}}
        )

    async def handler(self, request: httpx.Request) -> httpx.Response:
        operation = request.url.path.rsplit("/", 1)[-1]
        body = json.loads(request.content or b"{}")
        self.calls.append({"operation": operation, **body})

        if operation == "login":
            self.login_calls += 1
            if self.login_delay:
                await asyncio.sleep(self.login_delay)
            if self.fail_login:
                return self.fault("BAD_CREDENTIALS", "Wrong user or password")
            token = f"tok-{self.login_calls}"
            self.valid_tokens.add(token)
            return self.ok({"sessionId": token})

        if self.delays.get(operation):
            await asyncio.sleep(self.delays[operation])

        token = body.get("session")
        if token not in self.valid_tokens:
            return self.fault("INVALID_SESSION", status=401)
        if self.expire_next > 0:
            self.expire_next -= 1
            self.valid_tokens.discard(token)
            return self.fault("SESSION_EXPIRED")

        params = body.get("parameters") or {}
        if operation in self.responses:
            return self.ok(self.responses[operation])
        if operation == "getObjects":
            return self.ok(self.projects)
        if operation == "getObject":
            found = next((p for p in self.projects if p["id"] == params.get("id")), None)
            if found is None:
                return self.fault("NOT_FOUND", f"{params.get('object')} {params.get('id')}")
            return self.ok(found)
        if operation == "keepAlive":
            return self.ok({"alive": True})
        if operation == "logout":
            self.valid_tokens.discard(token)
            return self.ok(None)
        return self.ok({"operation": operation, "parameters": params})


@pytest.fixture
def fake_triskell() -> FakeTriskell:
    return FakeTriskell()


def make_config(tmp_path, **overrides: Any) -> BridgeConfig:
    """A valid configuration pointing at the fake Triskell, logging under tmp_path."""
    data: Dict[str, Any] = {
        "mode": "development",
        "port": 3999,
        "shutdown_grace_seconds": 0.2,
        "triskell": {
            "url": BASE_URL,
            "tenant": TENANT,
            "accounts": {
                "api": {"user": "bridge", "user_id": "7", "md5": "5f4dcc3b5aa765d61d8327deb882cf99"},
                "reports": {"user": "viewer", "user_id": "8", "md5": "0" * 32},
            },
            "timeout_seconds": 2.0,
        },
        "logging": {
            "directory": str(tmp_path / "logs"),
            "event_directory": str(tmp_path / "logs" / "events"),
            "flush_interval_ms": 10,
        },
        "webhooks": {"timeout_seconds": 1.0},
    }
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(data.get(key), dict):
            data[key] = {**data[key], **value}
        else:
            data[key] = value
    return BridgeConfig.model_validate(data)


@pytest.fixture
def bridge_config(tmp_path) -> BridgeConfig:
    return make_config(tmp_path)


def make_session(fake: FakeTriskell, config: Optional[BridgeConfig] = None) -> SessionManager:
    client = TriskellClient(BASE_URL, TENANT, timeout=2.0, transport=fake.transport)
    if config is None:
        from triskell_bridge.engine.config import TriskellAccount
        account = TriskellAccount(user="bridge", user_id="7", md5="5f4dcc3b5aa765d61d8327deb882cf99")
    else:
        account = config.api_account
    return SessionManager(client, TENANT, "api", account)


@pytest.fixture(autouse=True)
def _reset_bridge_logger():
    """Drop handlers and hooks installed by configure_logging() so tests stay isolated."""
    excepthook, thread_hook = sys.excepthook, threading.excepthook
    yield
    sys.excepthook, threading.excepthook = excepthook, thread_hook
    logging.getLogger("triskell_bridge").setLevel(logging.NOTSET)
    for name in ("triskell_bridge", "triskell_bridge.exceptions"):
        target = logging.getLogger(name)
        for handler in list(target.handlers):
            if getattr(handler, "_triskell_bridge", False):
                target.removeHandler(handler)
                handler.close()


@pytest.fixture
def config_factory(tmp_path):
    """make_config bound to this test's tmp_path."""
    def _factory(**overrides: Any) -> BridgeConfig:
        return make_config(tmp_path, **overrides)
    return _factory


@pytest.fixture
def session(fake_triskell) -> SessionManager:
    return make_session(fake_triskell)
