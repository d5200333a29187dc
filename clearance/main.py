from __future__ import annotations

import logging
import os
import uuid

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware

from clearance.context import ServerContext, create_context_from_env
from clearance.errors import ApiError
from clearance.routes import applications, internal, profiles, review, verification
from clearance.routes._deps import error_response, trace_id_from_request
from clearance.schemas import error_envelope, success_envelope
from clearance.security import parse_and_validate_bearer_token, redact_sensitive

logger = logging.getLogger(__name__)

_PUBLIC_PATHS = frozenset({"/healthz", "/api/v1/health"})


def _requires_bearer(path: str) -> bool:
    if path in _PUBLIC_PATHS:
        return False
    return path.startswith("/api/v1/") and not path.startswith("/api/v1/internal/")


def _plain_error(request: Request, *, code: str, message: str, kind: str, error_class: str, status_code: int):
    return JSONResponse(
        status_code=status_code,
        content=error_envelope(
            code=code,
            kind=kind,
            message=message,
            error_class=error_class,
            retryable=False,
            trace_id=trace_id_from_request(request),
        ),
    )


def create_app(ctx: ServerContext | None = None) -> FastAPI:
    ctx = ctx or create_context_from_env()
    app = FastAPI(title="Clearance Workflow API", version="0.1.0")
    app.state.ctx = ctx

    cors_origins = os.environ.get("CORS_ALLOW_ORIGINS", "http://127.0.0.1:5173,http://localhost:5173")
    allow_origins = [x.strip() for x in cors_origins.split(",") if x.strip()]
    if allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=allow_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.middleware("http")
    async def add_trace_id(request: Request, call_next):
        incoming_trace_id = request.headers.get("x-trace-id", "").strip()
        request.state.trace_id = incoming_trace_id or uuid.uuid4().hex
        request.state.caller = None
        try:
            if _requires_bearer(request.url.path):
                request.state.caller = parse_and_validate_bearer_token(
                    authorization=request.headers.get("Authorization"),
                    cfg=ctx.security_cfg,
                )
            response = await call_next(request)
        except ApiError as exc:
            headers = dict(request.headers.items())
            if ctx.security_cfg.log_redaction_enabled:
                headers = redact_sensitive(headers)
            logger.warning(
                "request_blocked path=%s code=%s message=%s headers=%s",
                request.url.path,
                exc.code,
                exc.message,
                headers,
            )
            response = error_response(request, exc)
        response.headers["x-trace-id"] = trace_id_from_request(request)
        return response

    @app.exception_handler(ApiError)
    async def handle_api_error(request: Request, exc: ApiError):
        if exc.http_status >= 500:
            logger.error("request_failed path=%s code=%s message=%s", request.url.path, exc.code, exc.message)
        return error_response(request, exc)

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        return _plain_error(
            request,
            code="REQ_VALIDATION_FAILED",
            message="invalid payload",
            kind="invalid-argument",
            error_class="validation",
            status_code=400,
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return _plain_error(
                request,
                code="REQ_NOT_FOUND",
                message="resource not found",
                kind="not-found",
                error_class="validation",
                status_code=404,
            )
        return _plain_error(
            request,
            code="REQ_HTTP_ERROR",
            message=str(exc.detail),
            kind="invalid-argument",
            error_class="validation",
            status_code=exc.status_code,
        )

    @app.get("/healthz")
    def healthz(request: Request) -> dict[str, object]:
        return success_envelope({"status": "ok"}, trace_id_from_request(request))

    @app.get("/api/v1/health")
    def health_api(request: Request) -> dict[str, object]:
        return success_envelope(
            {"status": "ok", "queuePending": ctx.queue.pending_count(queue_name=ctx.worker.queue_name)},
            trace_id_from_request(request),
        )

    app.include_router(profiles.router)
    app.include_router(verification.router)
    app.include_router(applications.router)
    app.include_router(review.router)
    app.include_router(internal.router)
    return app


app = create_app()
