"""Triskell Bridge Webhooks — (object, event) dispatch, actions and reports."""

from triskell_bridge.webhooks.dispatcher import (  # noqa: F401
    DispatchResult,
    HandlerOutput,
    WebhookDispatcher,
    WebhookEvent,
)

__all__ = [
    "DispatchResult",
    "HandlerOutput",
    "WebhookDispatcher",
    "WebhookEvent",
]
