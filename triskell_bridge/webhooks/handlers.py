"""Built-in webhook handlers for Triskell project events."""

from __future__ import annotations

from typing import Any, Dict

from pydantic import BaseModel, ConfigDict

from triskell_bridge.engine.session import SessionManager
from triskell_bridge.webhooks.dispatcher import WebhookDispatcher, WebhookEvent


class ObjectRef(BaseModel):
    """Payload of a Triskell object webhook: the object id, extra fields kept."""
    model_config = ConfigDict(extra="allow")

    id: int


async def fetch_object(event: WebhookEvent, session: SessionManager) -> Any:
    return await session.execute(
        "getObject", {"object": event.object, "id": event.payload["id"]}
    )


async def acknowledge_deletion(event: WebhookEvent, session: SessionManager) -> Dict[str, Any]:
    # Deleted objects cannot be fetched anymore
    return {"id": event.payload["id"], "deleted": True}


def register_builtin_handlers(dispatcher: WebhookDispatcher) -> int:
    dispatcher.register("project", "created", fetch_object, payload_model=ObjectRef)
    dispatcher.register("project", "updated", fetch_object, payload_model=ObjectRef)
    dispatcher.register("project", "deleted", acknowledge_deletion, payload_model=ObjectRef)
    return 3
