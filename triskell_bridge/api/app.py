"""
Triskell Bridge HTTP surface — FastAPI application factory.

Routes:
    GET       /...                              uptime banner (monitoring)
    GET|POST  /webhook/{object}/{event}         connect → run (dispatch)
    GET       /connections/{id}/keep            keep-alive probe
    GET       /actions/{object}/{id}/{action}   validate → run
    GET       /{object}                         JSON report
    GET       /                                 404

Failures are returned as {"ok": false, "error": {"kind": ..., "message": ...}};
callers should branch on ``kind``, the status code is only a hint.
"""

from __future__ import annotations

import hmac
import json
import logging
from typing import TYPE_CHECKING, Any, Dict, Optional, Tuple
from urllib.parse import parse_qsl

from fastapi import Depends, FastAPI, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from triskell_bridge import __version__
from triskell_bridge.engine.context import request_scope
from triskell_bridge.engine.errors import (
    ApiError,
    ApiErrorKind,
    AuthError,
    BridgeError,
    DispatchError,
    DispatchErrorKind,
)
from triskell_bridge.engine.health import probe

if TYPE_CHECKING:
    from triskell_bridge.bootstrap import BridgeContext

logger = logging.getLogger("triskell_bridge.api.app")

DISPATCH_STATUS = {
    DispatchErrorKind.NOT_FOUND: 404,
    DispatchErrorKind.INVALID_PAYLOAD: 422,
    DispatchErrorKind.TIMEOUT: 504,
    DispatchErrorKind.HANDLER_FAILED: 502,
}

# Query parameters consumed by the connect step, never part of the payload
_RESERVED_PARAMS = ("token", "event_id")


class _Unauthorized(Exception):
    """Raised by the connect step when the webhook token does not match."""


def error_status(error: BridgeError) -> int:
    if isinstance(error, DispatchError):
        return DISPATCH_STATUS[error.kind]
    if isinstance(error, AuthError):
        return 503
    if isinstance(error, ApiError):
        return 504 if error.kind == ApiErrorKind.TIMEOUT else 502
    return 500


def error_response(error: BridgeError, status_code: Optional[int] = None) -> JSONResponse:
    body = error.to_dict()
    body.setdefault("kind", error.error_type)
    return JSONResponse(
        status_code=status_code or error_status(error),
        content={"ok": False, "error": body},
    )


async def read_payload(request: Request) -> Any:
    """
    Webhook payload: JSON body, form fields or query parameters (GET).
    Query parameters are merged under a POSTed mapping.
    """
    params = {k: v for k, v in request.query_params.items() if k not in _RESERVED_PARAMS}
    if request.method != "POST":
        return params

    raw = await request.body()
    if not raw.strip():
        return params

    content_type = request.headers.get("content-type", "")
    form = content_type.startswith("application/x-www-form-urlencoded")
    try:
        if form:
            body: Any = dict(parse_qsl(raw.decode("utf-8"), keep_blank_values=True))
        else:
            body = json.loads(raw)
    except ValueError as e:
        # UnicodeDecodeError included
        raise DispatchError(
            f"Request body is not valid {'form data' if form else 'JSON'}",
            DispatchErrorKind.INVALID_PAYLOAD,
            object=request.path_params.get("object"),
            event=request.path_params.get("event"),
        ) from e

    if isinstance(body, dict):
        return {**params, **body}
    return body


def create_app(context: "BridgeContext") -> FastAPI:
    """Build the FastAPI app bound to an initialized BridgeContext."""
    config = context.config

    app = FastAPI(
        title=config.name,
        description="Webhook relay and scheduled sync bridge for the Triskell API",
        version=__version__,
        docs_url="/docs" if config.is_dev else None,
        redoc_url=None,
        openapi_url="/openapi.json" if config.is_dev else None,
    )
    app.state.bridge = context
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(BridgeError)
    async def bridge_error_handler(request: Request, exc: BridgeError) -> JSONResponse:
        status = error_status(exc)
        if status >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc!r}")
        return error_response(exc, status)

    # -----------------------------------------------------------------------
    # Connect step
    # -----------------------------------------------------------------------

    async def connect(
        request: Request,
        x_webhook_token: Optional[str] = Header(None),
        x_event_id: Optional[str] = Header(None),
        x_source_system: Optional[str] = Header(None),
    ) -> Tuple[Optional[str], Optional[str]]:
        """Check the shared token (if configured); return (event_id, source_system_id)."""
        expected = config.webhooks.token
        if expected:
            supplied = x_webhook_token or request.query_params.get("token") or ""
            if not hmac.compare_digest(supplied.encode("utf-8"), expected.encode("utf-8")):
                logger.warning(f"Rejected webhook {request.url.path}: bad token")
                raise _Unauthorized()
        event_id = x_event_id or request.query_params.get("event_id")
        return event_id, x_source_system

    @app.exception_handler(_Unauthorized)
    async def unauthorized_handler(request: Request, exc: _Unauthorized) -> JSONResponse:
        return JSONResponse(
            status_code=401,
            content={"ok": False, "error": {"kind": "unauthorized", "message": "Invalid webhook token"}},
        )

    # -----------------------------------------------------------------------
    # Routes
    # -----------------------------------------------------------------------

    @app.get("/...", response_class=PlainTextResponse)
    async def uptime() -> str:
        return context.uptime.banner()

    @app.api_route("/webhook/{object}/{event}", methods=["GET", "POST"])
    async def run_webhook(
        object: str,
        event: str,
        request: Request,
        connection: Tuple[Optional[str], Optional[str]] = Depends(connect),
    ) -> JSONResponse:
        event_id, source_system_id = connection
        with request_scope("webhook", object=object, event=event, source_system_id=source_system_id):
            # Unknown pairs are answered NOT_FOUND before the body is read
            registered = (object, event) in context.dispatcher.registry
            payload = await read_payload(request) if registered else None
            result = await context.dispatcher.dispatch(
                object,
                event,
                payload,
                source_system_id=source_system_id,
                event_id=event_id,
            )
            if not result.ok:
                return error_response(result.error)
            return JSONResponse(content={"ok": True, **result.output.to_dict()})

    @app.get("/connections/{connection_id}/keep")
    async def keep_connection(connection_id: str) -> JSONResponse:
        if connection_id not in config.triskell.accounts:
            raise DispatchError(
                f"Unknown connection '{connection_id}'",
                DispatchErrorKind.NOT_FOUND,
                object="connection",
                event="keep",
            )
        if connection_id != context.session.account_name:
            return JSONResponse(
                status_code=409,
                content={
                    "ok": False,
                    "error": {
                        "kind": "conflict",
                        "message": f"Connection '{connection_id}' is not the shared session account",
                    },
                },
            )
        with request_scope("connection", object="connection", event="keep"):
            result = await probe(
                connection_id,
                context.session.keep_alive,
                timeout=config.triskell.timeout_seconds,
            )
        return JSONResponse(status_code=200 if result.healthy else 503, content=result.to_dict())

    @app.get("/actions/{object}/{object_id}/{action}")
    async def run_action(object: str, object_id: str, action: str, request: Request) -> JSONResponse:
        with request_scope("action", object=object, event=action):
            context.actions.validate(object, object_id, action)
            result = await context.actions.run(object, object_id, action, dict(request.query_params))
        return JSONResponse(content={"ok": True, "object": object, "id": object_id,
                                     "action": action, "result": result})

    @app.get("/{object}")
    async def build_report(object: str, request: Request) -> JSONResponse:
        with request_scope("report", object=object):
            report = await context.reports.build(object, dict(request.query_params))
        return JSONResponse(content=report)

    @app.get("/", response_class=PlainTextResponse, status_code=404)
    async def root() -> str:
        return "Not Found"

    return app
