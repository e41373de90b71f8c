"""
Triskell Bridge — webhook relay and scheduled sync service for the Triskell API.

One long-lived Triskell session is shared by inbound webhook handling,
report/action pages and background jobs. The service is assembled by
``triskell_bridge.bootstrap.Orchestrator``.
"""

__version__ = "1.0.0"
__all__ = ["engine", "process", "webhooks", "api", "bootstrap", "cli"]
