from __future__ import annotations

import uuid

from fastapi import Request
from fastapi.responses import JSONResponse

from dispatch.errors import ApiError
from dispatch.lifecycle import CallerIdentity
from dispatch.schemas import error_envelope


def trace_id_from_request(request: Request) -> str:
    trace_id = getattr(request.state, "trace_id", None)
    if trace_id:
        return trace_id
    return uuid.uuid4().hex


def request_id_from_request(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return request_id
    return f"req_{uuid.uuid4().hex[:12]}"


def caller_from_request(request: Request) -> CallerIdentity:
    caller = getattr(request.state, "caller", None)
    if isinstance(caller, CallerIdentity):
        return caller
    raise ApiError(
        code="AUTH_UNAUTHORIZED",
        message="caller identity required",
        error_class="security_sensitive",
        retryable=False,
        http_status=401,
    )


def error_response(
    request: Request,
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    status_code: int,
    details: dict | None = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=error_envelope(
            code=code,
            message=message,
            error_class=error_class,
            retryable=retryable,
            trace_id=trace_id_from_request(request),
            details=details,
        ),
    )
