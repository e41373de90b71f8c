"""Triskell Bridge Engine — API client, session, config, logging, errors."""

from triskell_bridge.engine.client import TriskellClient  # noqa: F401
from triskell_bridge.engine.session import SessionManager, SessionState  # noqa: F401

__all__ = [
    "TriskellClient",
    "SessionManager",
    "SessionState",
]
