"""
Triskell API Client — one stateless request/response call per operation.

Wire format (JSON over HTTP):

    POST {base_url}/{operation}
    {"tenant": <tenant_id>, "session": <token|null>, "parameters": {...}}

    200 {"status": "ok", "result": <any>}
    4xx/5xx or 200 {"status": "error", "fault": {"code": "...", "message": "..."}}

Every failure is classified into an ApiErrorKind. The client never retries
and never re-authenticates; that is the SessionManager's job.

Uses httpx.AsyncClient — one pooled client per TriskellClient, closed by aclose().
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional

import httpx

from triskell_bridge.engine.errors import ApiError, ApiErrorKind
from triskell_bridge.engine.logging import EventLog, log_api_call

logger = logging.getLogger("triskell_bridge.engine.client")

# Fault codes meaning "this session token is no longer valid"
AUTH_FAULT_CODES = frozenset({"SESSION_EXPIRED", "INVALID_SESSION", "NOT_AUTHENTICATED"})
AUTH_STATUS_CODES = frozenset({401, 419})


class TriskellClient:
    """
    Async client for the Triskell REST facade.

    Usage:
        client = TriskellClient("https://triskell.example.com/rest", tenant_id=3)
        result = await client.call("getObject", {"object": "project", "id": 42}, token)
        await client.aclose()
    """

    def __init__(
        self,
        base_url: str,
        tenant_id: int,
        timeout: float = 30.0,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        event_log: Optional[EventLog] = None,
        max_connections: int = 10,
    ):
        self.base_url = base_url.rstrip("/")
        self.tenant_id = tenant_id
        self.timeout = timeout
        self._event_log = event_log
        self._http = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout, connect=min(timeout, 10.0)),
            limits=httpx.Limits(
                max_connections=max_connections,
                max_keepalive_connections=max(1, max_connections // 2),
            ),
            transport=transport,
            headers={"Accept": "application/json"},
        )
        self._calls = 0

    async def call(
        self,
        operation: str,
        parameters: Optional[Dict[str, Any]] = None,
        session_token: Optional[str] = None,
    ) -> Any:
        """
        Execute one remote operation.

        Returns:
            The ``result`` member of a successful response.

        Raises:
            ApiError: kind NETWORK, TIMEOUT, AUTH_EXPIRED or REMOTE_FAULT.
        """
        body = {
            "tenant": self.tenant_id,
            "session": session_token,
            "parameters": parameters or {},
        }
        self._calls += 1
        start = time.monotonic()
        status_code: Optional[int] = None

        try:
            try:
                response = await self._http.post(f"/{operation}", json=body)
            except httpx.TimeoutException as e:
                raise ApiError(
                    f"Triskell call '{operation}' timed out after {self.timeout}s",
                    ApiErrorKind.TIMEOUT,
                    operation=operation,
                ) from e
            except httpx.TransportError as e:
                raise ApiError(
                    f"Triskell call '{operation}' failed: {e}",
                    ApiErrorKind.NETWORK,
                    operation=operation,
                ) from e

            status_code = response.status_code
            result = self._map_response(operation, response)
        except ApiError as e:
            duration_ms = (time.monotonic() - start) * 1000
            logger.debug(
                f"Triskell {operation} failed in {duration_ms:.1f}ms: "
                f"{e.kind.value} {e.message}"
            )
            self._log(operation, False, duration_ms, status_code, e.kind.value)
            raise

        duration_ms = (time.monotonic() - start) * 1000
        logger.debug(f"Triskell {operation} -> {status_code} in {duration_ms:.1f}ms")
        self._log(operation, True, duration_ms, status_code)
        return result

    def _map_response(self, operation: str, response: httpx.Response) -> Any:
        """Classify an HTTP response into a result or an ApiError."""
        status = response.status_code
        try:
            payload = response.json()
        except ValueError:
            payload = None

        fault: Dict[str, Any] = {}
        if isinstance(payload, dict) and isinstance(payload.get("fault"), dict):
            fault = payload["fault"]
        fault_code = fault.get("code")
        fault_message = fault.get("message") or response.reason_phrase

        if status in AUTH_STATUS_CODES or fault_code in AUTH_FAULT_CODES:
            raise ApiError(
                f"Triskell session rejected on '{operation}': {fault_message}",
                ApiErrorKind.AUTH_EXPIRED,
                operation=operation,
                status_code=status,
                fault_code=fault_code,
            )

        if status >= 400:
            raise ApiError(
                f"Triskell '{operation}' returned HTTP {status}: {fault_message}",
                ApiErrorKind.REMOTE_FAULT,
                operation=operation,
                status_code=status,
                fault_code=fault_code,
            )

        if not isinstance(payload, dict) or "status" not in payload:
            raise ApiError(
                f"Triskell '{operation}' returned a malformed response",
                ApiErrorKind.REMOTE_FAULT,
                operation=operation,
                status_code=status,
            )

        if payload["status"] != "ok":
            raise ApiError(
                f"Triskell '{operation}' fault {fault_code}: {fault_message}",
                ApiErrorKind.REMOTE_FAULT,
                operation=operation,
                status_code=status,
                fault_code=fault_code,
            )

        return payload.get("result")

    def _log(
        self,
        operation: str,
        ok: bool,
        duration_ms: float,
        status_code: Optional[int],
        error_kind: Optional[str] = None,
    ) -> None:
        if self._event_log is not None:
            self._event_log.push(
                log_api_call(operation, ok, duration_ms, status_code, error_kind)
            )

    @property
    def call_count(self) -> int:
        return self._calls

    async def aclose(self) -> None:
        """Close the pooled httpx client. Called during shutdown."""
        if not self._http.is_closed:
            await self._http.aclose()
            logger.info("Closed Triskell httpx client")
