"""
Triskell Bridge Webhook Dispatcher — route inbound (object, event) webhooks to handlers.

Pipeline (per request):
    1. Resolve the handler by the exact (object, event) pair   → NOT_FOUND
    2. validate_payload(): mapping check + optional pydantic model → INVALID_PAYLOAD
    3. Idempotency: a delivery id already served inside the TTL returns the
       cached output, marked duplicate
    4. handler(event, session) under a bounded timeout          → TIMEOUT
    5. Any failure raised by the handler                        → HANDLER_FAILED

dispatch() never raises: every outcome is a DispatchResult.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Tuple

from pydantic import ValidationError

from triskell_bridge.engine.errors import (
    ApiError,
    BridgeError,
    DispatchError,
    DispatchErrorKind,
)
from triskell_bridge.engine.logging import EventLog, log_webhook_dispatch
from triskell_bridge.engine.registry import HandlerRegistry, RegisteredHandler
from triskell_bridge.engine.session import SessionManager

logger = logging.getLogger("triskell_bridge.webhooks.dispatcher")


@dataclass(frozen=True)
class WebhookEvent:
    """One inbound webhook, as handed to the handler."""
    object: str
    event: str
    payload: Dict[str, Any]
    source_system_id: Optional[str] = None
    event_id: Optional[str] = None


@dataclass(frozen=True)
class HandlerOutput:
    object: str
    event: str
    data: Any
    duplicate: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "object": self.object,
            "event": self.event,
            "duplicate": self.duplicate,
            "result": self.data,
        }


@dataclass(frozen=True)
class DispatchResult:
    ok: bool
    output: Optional[HandlerOutput] = None
    error: Optional[DispatchError] = None

    @classmethod
    def success(cls, output: HandlerOutput) -> "DispatchResult":
        return cls(ok=True, output=output)

    @classmethod
    def failure(cls, error: DispatchError) -> "DispatchResult":
        return cls(ok=False, error=error)


WebhookHandler = Callable[[WebhookEvent, SessionManager], Awaitable[Any]]


def validation_details(exc: ValidationError) -> list:
    """Field errors of a pydantic ValidationError, reduced to JSON-safe dicts."""
    return [
        {
            "loc": ".".join(str(p) for p in err.get("loc", ())),
            "msg": err.get("msg", ""),
            "type": err.get("type", ""),
        }
        for err in exc.errors()
    ]


def validate_payload(entry: RegisteredHandler, payload: Any) -> Dict[str, Any]:
    """
    Check ``payload`` against the handler's declaration. Pure: no I/O, no state.

    Returns:
        The normalized payload.

    Raises:
        DispatchError: kind INVALID_PAYLOAD, with field errors when available.
    """
    if not isinstance(payload, Mapping):
        raise DispatchError(
            f"Payload for {entry.object}/{entry.name} must be an object",
            DispatchErrorKind.INVALID_PAYLOAD,
            object=entry.object,
            event=entry.name,
        )

    data = dict(payload)
    if entry.payload_model is not None:
        try:
            data = entry.payload_model.model_validate(data).model_dump()
        except ValidationError as e:
            raise DispatchError(
                f"Invalid payload for {entry.object}/{entry.name}",
                DispatchErrorKind.INVALID_PAYLOAD,
                object=entry.object,
                event=entry.name,
                validation_errors=validation_details(e),
            ) from e

    if entry.validate is not None:
        try:
            checked = entry.validate(data)
        except Exception as e:
            raise DispatchError(
                f"Invalid payload for {entry.object}/{entry.name}: {e}",
                DispatchErrorKind.INVALID_PAYLOAD,
                object=entry.object,
                event=entry.name,
            ) from e
        if checked is not None:
            data = dict(checked)
    return data


class IdempotencyCache:
    """Successful outputs keyed by (object, event, event_id), kept for ``ttl`` seconds."""

    def __init__(self, ttl: float = 600.0, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[Tuple[str, str, str], Tuple[float, HandlerOutput]] = {}

    def get(self, key: Tuple[str, str, str]) -> Optional[HandlerOutput]:
        hit = self._entries.get(key)
        if hit is None:
            return None
        expires, output = hit
        if expires <= self._clock():
            del self._entries[key]
            return None
        return output

    def put(self, key: Tuple[str, str, str], output: HandlerOutput) -> None:
        if self.ttl <= 0:
            return
        now = self._clock()
        self._entries = {k: v for k, v in self._entries.items() if v[0] > now}
        self._entries[key] = (now + self.ttl, output)

    def __len__(self) -> int:
        return len(self._entries)


class WebhookDispatcher:
    """
    Dispatches webhook events through the (object, event) handler registry.

    Usage:
        dispatcher = WebhookDispatcher(session, timeout_seconds=30)
        dispatcher.register("project", "created", on_project_created, payload_model=ProjectRef)
        dispatcher.freeze()
        result = await dispatcher.dispatch("project", "created", {"id": 42})
    """

    def __init__(
        self,
        session: SessionManager,
        *,
        registry: Optional[HandlerRegistry] = None,
        timeout_seconds: float = 30.0,
        dedupe_ttl_seconds: float = 600.0,
        event_log: Optional[EventLog] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._session = session
        self.registry = registry if registry is not None else HandlerRegistry("webhook")
        self.timeout_seconds = timeout_seconds
        self._cache = IdempotencyCache(dedupe_ttl_seconds, clock)
        self._event_log = event_log

    def register(self, object: str, event: str, handler: WebhookHandler, **options: Any) -> RegisteredHandler:
        return self.registry.register(object, event, handler, **options)

    def freeze(self) -> None:
        self.registry.freeze()
        logger.info(f"Webhook dispatcher ready with {len(self.registry)} handler(s)")

    async def dispatch(
        self,
        object: str,
        event: str,
        payload: Any,
        *,
        source_system_id: Optional[str] = None,
        event_id: Optional[str] = None,
    ) -> DispatchResult:
        """Serve one webhook. Never raises."""
        start = time.monotonic()
        result = await self._dispatch(object, event, payload, source_system_id, event_id)
        duration_ms = (time.monotonic() - start) * 1000

        if result.ok:
            logger.info(f"Webhook {object}/{event} handled in {duration_ms:.1f}ms")
        else:
            logger.warning(
                f"Webhook {object}/{event} failed ({result.error.kind.value}): "
                f"{result.error.message}"
            )
        if self._event_log is not None:
            self._event_log.push(log_webhook_dispatch(
                object,
                event,
                ok=result.ok,
                duration_ms=duration_ms,
                error_kind=result.error.kind.value if result.error else None,
                duplicate=bool(result.output and result.output.duplicate),
                source_system_id=source_system_id,
                event_id=event_id,
            ))
        return result

    async def _dispatch(
        self,
        object: str,
        event: str,
        payload: Any,
        source_system_id: Optional[str],
        event_id: Optional[str],
    ) -> DispatchResult:
        entry = self.registry.resolve(object, event)
        if entry is None:
            return DispatchResult.failure(DispatchError(
                f"No handler registered for {object}/{event}",
                DispatchErrorKind.NOT_FOUND,
                object=object,
                event=event,
            ))

        try:
            data = validate_payload(entry, payload)
        except DispatchError as e:
            return DispatchResult.failure(e)

        cache_key = (object, event, event_id) if event_id else None
        if cache_key is not None:
            cached = self._cache.get(cache_key)
            if cached is not None:
                logger.info(f"Webhook {object}/{event} delivery {event_id} already served")
                return DispatchResult.success(replace(cached, duplicate=True))

        webhook_event = WebhookEvent(
            object=object,
            event=event,
            payload=data,
            source_system_id=source_system_id,
            event_id=event_id,
        )
        timeout = entry.timeout_seconds or self.timeout_seconds

        try:
            output_data = await asyncio.wait_for(
                entry.handler(webhook_event, self._session), timeout=timeout
            )
        except asyncio.TimeoutError:
            return DispatchResult.failure(DispatchError(
                f"Handler for {object}/{event} timed out after {timeout}s",
                DispatchErrorKind.TIMEOUT,
                object=object,
                event=event,
                timeout_seconds=timeout,
            ))
        except DispatchError as e:
            return DispatchResult.failure(e)
        except BridgeError as e:
            cause = e.error_type
            if isinstance(e, ApiError):
                cause = f"{cause}:{e.kind.value}"
            return DispatchResult.failure(DispatchError(
                f"Handler for {object}/{event} failed: {e.message}",
                DispatchErrorKind.HANDLER_FAILED,
                object=object,
                event=event,
                cause=cause,
            ))
        except Exception as e:
            logger.exception(f"Unexpected error in handler for {object}/{event}")
            return DispatchResult.failure(DispatchError(
                f"Handler for {object}/{event} failed: {e}",
                DispatchErrorKind.HANDLER_FAILED,
                object=object,
                event=event,
                cause=type(e).__name__,
            ))

        output = HandlerOutput(object=object, event=event, data=output_data)
        if cache_key is not None:
            self._cache.put(cache_key, output)
        return DispatchResult.success(output)
