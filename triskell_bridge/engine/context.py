"""
Triskell Bridge Request Context — per-request / per-tick state via contextvars.

Every inbound HTTP request and every job tick runs with its own
RequestContext. Errors and event-log entries read the execution_id from it.

Usage:
    from triskell_bridge.engine.context import request_scope, get_request_context

    with request_scope(route="webhook", object="project", event="created"):
        ...
"""

from __future__ import annotations

import uuid
from contextlib import contextmanager
from contextvars import ContextVar, Token
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional

current_request_context: ContextVar[Optional["RequestContext"]] = ContextVar(
    "request_context", default=None
)


@dataclass
class RequestContext:
    """State carried through one webhook request, page action or job tick."""

    route: str
    execution_id: str = field(default_factory=lambda: f"exec_{uuid.uuid4().hex[:12]}")
    object: Optional[str] = None
    event: Optional[str] = None
    source_system_id: Optional[str] = None
    job_name: Optional[str] = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for logging."""
        return {
            "route": self.route,
            "execution_id": self.execution_id,
            "object": self.object,
            "event": self.event,
            "source_system_id": self.source_system_id,
            "job_name": self.job_name,
            "started_at": self.started_at.isoformat(),
        }


def get_request_context() -> Optional[RequestContext]:
    return current_request_context.get()


def set_request_context(ctx: Optional[RequestContext]) -> Token:
    return current_request_context.set(ctx)


def clear_request_context(token: Token) -> None:
    current_request_context.reset(token)


@contextmanager
def request_scope(route: str, **fields: Any) -> Iterator[RequestContext]:
    """Install a fresh RequestContext for the duration of the block."""
    ctx = RequestContext(route=route, **fields)
    token = set_request_context(ctx)
    try:
        yield ctx
    finally:
        clear_request_context(token)
