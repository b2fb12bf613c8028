from __future__ import annotations

import logging
import uuid

from fastapi import Request
from fastapi.responses import JSONResponse

from snapwatch.errors import ApiError, TenantContextError
from snapwatch.schemas import error_envelope
from snapwatch.security import redact_sensitive
from snapwatch.services import Services

logger = logging.getLogger("snapwatch.security")


def trace_id_from_request(request: Request) -> str:
    trace_id = getattr(request.state, "trace_id", None)
    if trace_id:
        return trace_id
    return uuid.uuid4().hex


def tenant_id_from_request(request: Request) -> str:
    tenant_id = getattr(request.state, "tenant_id", None)
    if tenant_id:
        return tenant_id
    raise TenantContextError("tenant is required; send a bearer token or X-Tenant-Id")


def request_id_from_request(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return request_id
    return f"req_{uuid.uuid4().hex[:12]}"


def actor_from_request(request: Request) -> str:
    return str(getattr(request.state, "auth_subject", "") or "anonymous")


def services_from_request(request: Request) -> Services:
    return request.app.state.services


def require_admin(request: Request) -> None:
    security_cfg = request.app.state.security_cfg
    if not security_cfg.enabled:
        return
    if not getattr(request.state, "is_admin", False):
        raise ApiError(
            code="AUTH_FORBIDDEN",
            message="admin role required",
            error_class="security_sensitive",
            retryable=False,
            http_status=403,
        )


def error_response(
    request: Request,
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    status_code: int,
    details: object = None,
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


def log_security_block(*, request: Request, code: str, detail: str) -> None:
    security_cfg = request.app.state.security_cfg
    headers_obj = dict(request.headers.items())
    headers_payload = redact_sensitive(headers_obj) if security_cfg.log_redaction_enabled else headers_obj
    logger.warning(
        "security_blocked code=%s path=%s tenant_id=%s trace_id=%s detail=%s headers=%s",
        code,
        request.url.path,
        getattr(request.state, "tenant_id", None),
        trace_id_from_request(request),
        detail,
        headers_payload,
    )
