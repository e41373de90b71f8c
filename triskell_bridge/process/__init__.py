"""Triskell Bridge Process — job scheduler, built-in jobs, projects processor."""

from triskell_bridge.process.scheduler import (  # noqa: F401
    CronTrigger,
    DisabledTrigger,
    JobDescriptor,
    JobScheduler,
    ManualTrigger,
)

__all__ = [
    "CronTrigger",
    "DisabledTrigger",
    "JobDescriptor",
    "JobScheduler",
    "ManualTrigger",
]
