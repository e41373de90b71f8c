"""Triskell Bridge HTTP surface (FastAPI)."""

from triskell_bridge.api.app import create_app  # noqa: F401

__all__ = ["create_app"]
