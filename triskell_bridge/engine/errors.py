"""
Triskell Bridge Error Hierarchy — Structured exceptions for every failure path.

All errors carry the execution_id of the request or job tick that raised them
(picked up from the active RequestContext), so a failure written to the system
log can be matched with its webhook/job entry in the event log.

Hierarchy:
    BridgeError
    ├── AuthError          — Login failed / re-authentication exhausted
    ├── ApiError           — Remote call failed (kind: ApiErrorKind)
    ├── DispatchError      — Webhook/action could not be served (kind: DispatchErrorKind)
    ├── ConfigError        — Invalid base file, env override or cron expression
    └── DuplicateJobError  — A name was registered twice
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from triskell_bridge.engine.context import get_request_context


class ApiErrorKind(str, Enum):
    """Failure classes of a single remote call."""
    NETWORK = "network"
    REMOTE_FAULT = "remote_fault"
    TIMEOUT = "timeout"
    AUTH_EXPIRED = "auth_expired"


class DispatchErrorKind(str, Enum):
    """Failure classes of a webhook/action dispatch."""
    NOT_FOUND = "not_found"
    INVALID_PAYLOAD = "invalid_payload"
    TIMEOUT = "timeout"
    HANDLER_FAILED = "handler_failed"


class BridgeError(Exception):
    """
    Base error for all bridge failures.
    All context is serializable to JSON for the event log and HTTP error bodies.
    """

    def __init__(self, message: str, **context: Any):
        self.message = message
        ctx = get_request_context()
        self.execution_id: Optional[str] = context.get(
            "execution_id", ctx.execution_id if ctx else None
        )
        self.error_type: str = self.__class__.__name__
        self.context: Dict[str, Any] = context
        self.timestamp: str = datetime.now(timezone.utc).isoformat()
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize error to a JSON-compatible dict."""
        return {
            "error_type": self.error_type,
            "message": self.message,
            "execution_id": self.execution_id,
            "timestamp": self.timestamp,
            "context": {
                k: str(v) for k, v in self.context.items()
                if k != "execution_id"
            },
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)

    def __repr__(self) -> str:
        parts = [f"{self.error_type}: {self.message}"]
        if self.execution_id:
            parts.append(f"execution_id={self.execution_id}")
        return " | ".join(parts)


class AuthError(BridgeError):
    """
    Authentication against Triskell failed.

    Raised by login() on bad credentials or an unreachable host, and by
    execute() when the call still reports an expired session after one
    re-authentication.
    """

    def __init__(self, message: str, **context: Any):
        self.tenant_id: Optional[int] = context.get("tenant_id")
        self.account_id: Optional[str] = context.get("account_id")
        super().__init__(message, **context)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["kind"] = "auth"
        d["tenant_id"] = self.tenant_id
        d["account_id"] = self.account_id
        return d


class ApiError(BridgeError):
    """A single Triskell call failed. No retry has been attempted."""

    def __init__(self, message: str, kind: ApiErrorKind, **context: Any):
        self.kind = ApiErrorKind(kind)
        self.operation: Optional[str] = context.get("operation")
        self.status_code: Optional[int] = context.get("status_code")
        self.fault_code: Optional[str] = context.get("fault_code")
        super().__init__(message, **context)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["kind"] = self.kind.value
        d["operation"] = self.operation
        d["status_code"] = self.status_code
        d["fault_code"] = self.fault_code
        return d


class DispatchError(BridgeError):
    """
    A webhook event or page action could not be served.
    Includes field-level errors when the payload failed validation.
    """

    def __init__(self, message: str, kind: DispatchErrorKind, **context: Any):
        self.kind = DispatchErrorKind(kind)
        self.object: Optional[str] = context.get("object")
        self.event: Optional[str] = context.get("event")
        self.validation_errors: Optional[List[Any]] = context.get("validation_errors")
        self.timeout_seconds: Optional[float] = context.get("timeout_seconds")
        self.cause: Optional[str] = context.get("cause")
        super().__init__(message, **context)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["kind"] = self.kind.value
        d["object"] = self.object
        d["event"] = self.event
        if self.validation_errors is not None:
            d["validation_errors"] = self.validation_errors
        if self.timeout_seconds is not None:
            d["timeout_seconds"] = self.timeout_seconds
        if self.cause:
            d["cause"] = self.cause
        return d


class ConfigError(BridgeError):
    """Configuration error — invalid config.yaml, env override or schedule."""
    pass


class DuplicateJobError(BridgeError):
    """A job, handler or action name was registered twice."""

    def __init__(self, message: str, **context: Any):
        self.name: Optional[str] = context.get("name")
        super().__init__(message, **context)
