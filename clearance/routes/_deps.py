from __future__ import annotations

import hmac
import uuid
from typing import TYPE_CHECKING

from fastapi import Request
from fastapi.responses import JSONResponse

from clearance.errors import ApiError, api_error
from clearance.schemas import error_envelope
from clearance.security import CallerContext

if TYPE_CHECKING:
    from clearance.context import ServerContext


def trace_id_from_request(request: Request) -> str:
    trace_id = getattr(request.state, "trace_id", None)
    if trace_id:
        return trace_id
    return uuid.uuid4().hex


def ctx_from_request(request: Request) -> "ServerContext":
    return request.app.state.ctx


def caller_from_request(request: Request) -> CallerContext:
    caller = getattr(request.state, "caller", None)
    if caller is None:
        raise api_error("unauthenticated", "authentication required")
    return caller


def require_internal_token(request: Request, token: str | None) -> None:
    expected = ctx_from_request(request).settings.internal_token
    if not expected or not token or not hmac.compare_digest(expected, token):
        raise api_error("permission-denied", "internal endpoint forbidden", code="AUTH_FORBIDDEN")


def error_response(request: Request, exc: ApiError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.http_status,
        content=error_envelope(
            code=exc.code,
            kind=exc.kind,
            message=exc.message,
            error_class=exc.error_class,
            retryable=exc.retryable,
            trace_id=trace_id_from_request(request),
        ),
    )
