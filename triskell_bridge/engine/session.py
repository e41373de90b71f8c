"""
Triskell Session Manager — the one shared session of the process.

State machine:

    UNAUTHENTICATED ──login()──► AUTHENTICATING ──ok──► ACTIVE
          ▲                           │                    │
          └──────── failure ──────────┘          AUTH_EXPIRED on a call
                                                           ▼
                         AUTHENTICATING ◄──ensure_active── EXPIRED

Rules:
- Single flight: concurrent login()/ensure_active() callers share one login
  attempt. The attempt runs as its own task and waiters await it through
  asyncio.shield, so a waiter that times out or is cancelled never leaves the
  session half-authenticated.
- execute() retries exactly once after an AUTH_EXPIRED. The session is only
  marked EXPIRED if the rejected token is still the current one, so two
  callers failing on the same stale token trigger a single re-login.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from triskell_bridge.engine.client import TriskellClient
from triskell_bridge.engine.config import TriskellAccount
from triskell_bridge.engine.errors import ApiError, ApiErrorKind, AuthError
from triskell_bridge.engine.logging import EventLog, log_system_event

logger = logging.getLogger("triskell_bridge.engine.session")


class SessionState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATING = "authenticating"
    ACTIVE = "active"
    EXPIRED = "expired"


@dataclass(frozen=True)
class SessionSnapshot:
    """Read-only view of the session handed to handlers and pages."""

    tenant_id: int
    account_id: str
    credential_hash: str
    session_token: Optional[str]
    state: SessionState
    login_count: int = 0
    last_login_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "account_id": self.account_id,
            "state": self.state.value,
            "login_count": self.login_count,
            "last_login_at": self.last_login_at.isoformat() if self.last_login_at else None,
        }


def credential_hash(tenant_id: int, user: str, password_md5: str) -> str:
    """Login hash sent to Triskell: md5("tenant|user|md5(password)")."""
    raw = f"{tenant_id}|{user}|{password_md5}"
    return hashlib.md5(raw.encode("utf-8")).hexdigest()


class SessionManager:
    """
    Owns the Session and mediates every authenticated Triskell call.

    Usage:
        session = SessionManager(client, tenant_id=3, account_name="api", account=acc)
        await session.login()
        projects = await session.execute("getObjects", {"object": "project"})
    """

    def __init__(
        self,
        client: TriskellClient,
        tenant_id: int,
        account_name: str,
        account: TriskellAccount,
        *,
        event_log: Optional[EventLog] = None,
    ):
        self._client = client
        self._tenant_id = tenant_id
        self._account_name = account_name
        self._account = account
        self._event_log = event_log
        self._credential_hash = credential_hash(tenant_id, account.user, account.md5)

        self._state = SessionState.UNAUTHENTICATED
        self._token: Optional[str] = None
        self._login_task: Optional[asyncio.Task] = None
        self._login_count = 0
        self._last_login_at: Optional[datetime] = None

    # -----------------------------------------------------------------------
    # Views
    # -----------------------------------------------------------------------

    @property
    def session(self) -> SessionSnapshot:
        return SessionSnapshot(
            tenant_id=self._tenant_id,
            account_id=self._account_name,
            credential_hash=self._credential_hash,
            session_token=self._token,
            state=self._state,
            login_count=self._login_count,
            last_login_at=self._last_login_at,
        )

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._state == SessionState.ACTIVE and self._token is not None

    @property
    def account_name(self) -> str:
        return self._account_name

    @property
    def client(self) -> TriskellClient:
        return self._client

    # -----------------------------------------------------------------------
    # Authentication
    # -----------------------------------------------------------------------

    async def login(self) -> SessionSnapshot:
        """
        Authenticate, or join the login already in flight.

        Raises:
            AuthError: Bad credentials or Triskell unreachable.
        """
        task = self._login_task
        if task is None:
            task = asyncio.get_running_loop().create_task(self._do_login())
            # Consume the outcome even if every waiter was cancelled
            task.add_done_callback(lambda t: t.cancelled() or t.exception())
            self._login_task = task
        await asyncio.shield(task)
        return self.session

    async def ensure_active(self) -> str:
        """Return a valid session token, logging in once if needed."""
        if self.is_active:
            return self._token  # type: ignore[return-value]
        await self.login()
        if self._token is None:
            raise AuthError(
                "Session expired again while logging in",
                tenant_id=self._tenant_id,
                account_id=self._account_name,
            )
        return self._token

    async def _do_login(self) -> None:
        previous = self._state
        self._state = SessionState.AUTHENTICATING
        self._token = None
        logger.info(f"Logging in to Triskell tenant {self._tenant_id} as '{self._account_name}'")
        try:
            result = await self._client.call(
                "login",
                {
                    "user": self._account.user,
                    "userId": self._account.user_id,
                    "hash": self._credential_hash,
                },
            )
            token = self._extract_token(result)
        except ApiError as e:
            self._state = (
                SessionState.UNAUTHENTICATED
                if previous == SessionState.UNAUTHENTICATED
                else SessionState.EXPIRED
            )
            self._push("session_login_failed", "ERROR", error=e.message, kind=e.kind.value)
            raise AuthError(
                f"Triskell login failed for '{self._account_name}': {e.message}",
                tenant_id=self._tenant_id,
                account_id=self._account_name,
                cause=e.kind.value,
            ) from e
        except BaseException:
            self._state = previous if previous != SessionState.ACTIVE else SessionState.EXPIRED
            raise
        finally:
            self._login_task = None

        self._token = token
        self._state = SessionState.ACTIVE
        self._login_count += 1
        self._last_login_at = datetime.now(timezone.utc)
        logger.info(f"Triskell session active (login #{self._login_count})")
        self._push("session_login", "INFO", login_count=self._login_count)

    def _extract_token(self, result: Any) -> str:
        token = result.get("sessionId") if isinstance(result, dict) else result
        if not isinstance(token, str) or not token:
            raise ApiError(
                "Login response carries no session id",
                ApiErrorKind.REMOTE_FAULT,
                operation="login",
            )
        return token

    def _expire(self, token: Optional[str]) -> None:
        """Mark the session EXPIRED if ``token`` is still the current one."""
        if token is not None and token == self._token and self._state == SessionState.ACTIVE:
            self._state = SessionState.EXPIRED
            self._token = None
            logger.warning("Triskell session expired, re-authenticating")
            self._push("session_expired", "WARNING")

    # -----------------------------------------------------------------------
    # Calls
    # -----------------------------------------------------------------------

    async def execute(self, operation: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """
        Run an authenticated call, re-authenticating and retrying once on AUTH_EXPIRED.

        Raises:
            AuthError: Login failed, or the retry was rejected as well.
            ApiError: NETWORK / TIMEOUT / REMOTE_FAULT from the call itself.
        """
        token = await self.ensure_active()
        try:
            return await self._client.call(operation, params, token)
        except ApiError as e:
            if e.kind != ApiErrorKind.AUTH_EXPIRED:
                raise
            self._expire(token)

        token = await self.ensure_active()
        try:
            return await self._client.call(operation, params, token)
        except ApiError as e:
            if e.kind != ApiErrorKind.AUTH_EXPIRED:
                raise
            self._expire(token)
            raise AuthError(
                f"Triskell rejected the session again on '{operation}' after re-login",
                tenant_id=self._tenant_id,
                account_id=self._account_name,
                operation=operation,
            ) from e

    async def keep_alive(self) -> Any:
        """Ping Triskell so the session does not idle out."""
        return await self.execute("keepAlive")

    async def logout(self) -> None:
        """Best-effort logout. The session ends UNAUTHENTICATED either way."""
        token = self._token
        self._state = SessionState.UNAUTHENTICATED
        self._token = None
        if token is None:
            return
        try:
            await self._client.call("logout", {}, token)
            logger.info("Logged out of Triskell")
        except ApiError as e:
            logger.warning(f"Triskell logout failed: {e.message}")

    def _push(self, event: str, level: str, **details: Any) -> None:
        if self._event_log is not None:
            details.setdefault("account", self._account_name)
            self._event_log.push(log_system_event(event, level, details))
