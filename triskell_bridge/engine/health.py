"""
Triskell Bridge Health — uptime and connection probes for the monitoring routes.

Provides:
    - humanize_duration(): "a few seconds", "5 minutes", "2 days" ...
    - ProcessUptime: process start time, used by GET /...
    - probe(): times an async check under a timeout, returns a HealthCheckResult
      (GET /connections/{id}/keep)
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from triskell_bridge.engine.errors import BridgeError

logger = logging.getLogger("triskell_bridge.engine.health")


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


@dataclass
class HealthCheckResult:
    """Result of a single probe."""
    name: str
    status: HealthStatus
    latency_ms: float = 0.0
    message: str = ""
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def healthy(self) -> bool:
        return self.status == HealthStatus.HEALTHY

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "latency_ms": round(self.latency_ms, 2),
            "message": self.message,
            "checked_at": self.checked_at.isoformat(),
            "details": self.details,
        }


async def probe(
    name: str,
    check_fn: Callable[[], Awaitable[Any]],
    timeout: float = 10.0,
) -> HealthCheckResult:
    """
    Run ``check_fn`` under ``timeout`` and report its health.

    Bridge errors and timeouts make the probe UNHEALTHY; anything else propagates.
    """
    start = time.monotonic()
    try:
        result = await asyncio.wait_for(check_fn(), timeout=timeout)
    except asyncio.TimeoutError:
        latency_ms = (time.monotonic() - start) * 1000
        logger.warning(f"Probe '{name}' timed out after {timeout}s")
        return HealthCheckResult(
            name=name,
            status=HealthStatus.UNHEALTHY,
            latency_ms=latency_ms,
            message=f"Timed out after {timeout}s",
        )
    except BridgeError as e:
        latency_ms = (time.monotonic() - start) * 1000
        logger.warning(f"Probe '{name}' failed: {e.message}")
        return HealthCheckResult(
            name=name,
            status=HealthStatus.UNHEALTHY,
            latency_ms=latency_ms,
            message=e.message,
            details={"error_type": e.error_type},
        )

    latency_ms = (time.monotonic() - start) * 1000
    details = result if isinstance(result, dict) else {}
    return HealthCheckResult(
        name=name,
        status=HealthStatus.HEALTHY,
        latency_ms=latency_ms,
        message="OK",
        details=details,
    )


# ---------------------------------------------------------------------------
# Uptime
# ---------------------------------------------------------------------------

def humanize_duration(seconds: float) -> str:
    """Relative duration in words, using the usual moment-style thresholds."""
    seconds = abs(seconds)
    minutes = seconds / 60
    hours = minutes / 60
    days = hours / 24
    months = days / 30.4375
    years = days / 365.25

    if seconds < 45:
        return "a few seconds"
    if seconds < 90:
        return "a minute"
    if minutes < 45:
        return f"{round(minutes)} minutes"
    if minutes < 90:
        return "an hour"
    if hours < 22:
        return f"{round(hours)} hours"
    if hours < 36:
        return "a day"
    if days < 26:
        return f"{round(days)} days"
    if days < 45:
        return "a month"
    if days < 320:
        return f"{round(months)} months"
    if days < 548:
        return "a year"
    return f"{round(years)} years"


class ProcessUptime:
    """Remembers when the service started."""

    def __init__(self, started: Optional[float] = None):
        self._started = time.monotonic() if started is None else started
        self.started_at = datetime.now(timezone.utc)

    @property
    def seconds(self) -> float:
        return time.monotonic() - self._started

    def humanize(self) -> str:
        return humanize_duration(self.seconds)

    def banner(self) -> str:
        return f"Server is up since {self.humanize()}"
