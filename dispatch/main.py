from __future__ import annotations

import logging
import os
import uuid

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware

from dispatch.errors import ApiError
from dispatch.lifecycle import CallerIdentity
from dispatch.routes import drafts, tasks, workers
from dispatch.routes._deps import error_response, request_id_from_request, trace_id_from_request
from dispatch.schemas import success_envelope
from dispatch.security import (
    JwtSecurityConfig,
    identity_from_gateway_headers,
    parse_and_validate_bearer_token,
    redact_sensitive,
)

logger = logging.getLogger(__name__)

_PUBLIC_PATHS = {"/api/v1/health"}


def _resolve_caller(request: Request, cfg: JwtSecurityConfig) -> CallerIdentity:
    if cfg.enabled:
        return parse_and_validate_bearer_token(authorization=request.headers.get("Authorization"), cfg=cfg)
    return identity_from_gateway_headers(
        caller_id=request.headers.get("x-caller-id"),
        caller_role=request.headers.get("x-caller-role"),
    )


def create_app() -> FastAPI:
    app = FastAPI(title="Contact Task Dispatch API", version="0.1.0")
    security_cfg = JwtSecurityConfig.from_env()
    app.state.security_cfg = security_cfg
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

    def _log_security_block(request: Request, exc: ApiError) -> None:
        headers_obj = dict(request.headers.items())
        headers_payload = redact_sensitive(headers_obj) if security_cfg.log_redaction_enabled else headers_obj
        logger.warning(
            "security_blocked code=%s path=%s trace_id=%s detail=%s headers=%s",
            exc.code,
            request.url.path,
            trace_id_from_request(request),
            exc.message,
            headers_payload,
        )

    def _api_error_response(request: Request, exc: ApiError):
        return error_response(
            request,
            code=exc.code,
            message=exc.message,
            error_class=exc.error_class,
            retryable=exc.retryable,
            status_code=exc.http_status,
            details=exc.details,
        )

    @app.middleware("http")
    async def attach_trace_and_caller(request: Request, call_next):
        incoming_trace_id = request.headers.get("x-trace-id", "").strip()
        request.state.trace_id = incoming_trace_id or uuid.uuid4().hex
        request.state.request_id = request.headers.get("x-request-id", f"req_{uuid.uuid4().hex[:12]}")
        request.state.caller = None
        path = request.url.path
        try:
            if path.startswith("/api/v1/") and path not in _PUBLIC_PATHS:
                if security_cfg.trace_id_strict_required and not incoming_trace_id:
                    raise ApiError(
                        code="TRACE_ID_REQUIRED",
                        message="x-trace-id header is required",
                        error_class="validation",
                        retryable=False,
                        http_status=400,
                    )
                request.state.caller = _resolve_caller(request, security_cfg)
            response = await call_next(request)
        except ApiError as exc:
            _log_security_block(request, exc)
            response = _api_error_response(request, exc)
        response.headers["x-trace-id"] = trace_id_from_request(request)
        response.headers["x-request-id"] = request_id_from_request(request)
        return response

    @app.exception_handler(ApiError)
    async def handle_api_error(request: Request, exc: ApiError):
        if exc.code in {"AUTH_UNAUTHORIZED", "AUTH_FORBIDDEN", "TASK_NOT_ASSIGNED"}:
            _log_security_block(request, exc)
        return _api_error_response(request, exc)

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        return error_response(
            request,
            code="REQ_VALIDATION_FAILED",
            message="invalid payload",
            error_class="validation",
            retryable=False,
            status_code=400,
            details={"errors": [{"loc": list(err.get("loc", ())), "msg": err.get("msg", "")} for err in exc.errors()]},
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return error_response(
                request,
                code="REQ_NOT_FOUND",
                message="resource not found",
                error_class="validation",
                retryable=False,
                status_code=404,
            )
        return error_response(
            request,
            code="REQ_HTTP_ERROR",
            message=str(exc.detail),
            error_class="validation",
            retryable=False,
            status_code=exc.status_code,
        )

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        logger.exception("unhandled_error path=%s trace_id=%s", request.url.path, trace_id_from_request(request))
        response = error_response(
            request,
            code="INTERNAL_ERROR",
            message="internal server error",
            error_class="internal",
            retryable=True,
            status_code=500,
        )
        response.headers["x-trace-id"] = trace_id_from_request(request)
        response.headers["x-request-id"] = request_id_from_request(request)
        return response

    @app.get("/healthz")
    def healthz(request: Request) -> dict[str, object]:
        return success_envelope({"status": "ok"}, trace_id_from_request(request))

    @app.get("/api/v1/health")
    def health_api(request: Request) -> dict[str, object]:
        return success_envelope({"status": "ok"}, trace_id_from_request(request))

    app.include_router(drafts.router)
    app.include_router(tasks.router)
    app.include_router(workers.router)
    return app


app = create_app()
