from __future__ import annotations

import logging
import os
import uuid
from collections.abc import Mapping

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware

from snapwatch.errors import ApiError
from snapwatch.routes import internal, projects, queues, screenshots, usage
from snapwatch.routes._deps import (
    error_response,
    log_security_block,
    request_id_from_request,
    trace_id_from_request,
)
from snapwatch.schemas import success_envelope
from snapwatch.security import JwtSecurityConfig, parse_and_validate_bearer_token
from snapwatch.services import Services, build_services

logger = logging.getLogger(__name__)

SECURITY_CODES = frozenset({"AUTH_UNAUTHORIZED", "AUTH_FORBIDDEN", "TENANT_SCOPE_VIOLATION"})


def create_app(services: Services | None = None, environ: Mapping[str, str] | None = None) -> FastAPI:
    env = os.environ if environ is None else environ
    app = FastAPI(title="Snapwatch API", version="0.1.0")
    security_cfg = JwtSecurityConfig.from_env(env)
    app.state.security_cfg = security_cfg
    app.state.services = services if services is not None else build_services(env)

    cors_origins = env.get("CORS_ALLOW_ORIGINS", "http://127.0.0.1:3000,http://localhost:3000")
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
    async def bind_request_context(request: Request, call_next):
        incoming_trace_id = request.headers.get("x-trace-id", "").strip()
        request.state.trace_id = incoming_trace_id or uuid.uuid4().hex
        request.state.request_id = request.headers.get("x-request-id", f"req_{uuid.uuid4().hex[:12]}")
        request.state.auth_subject = "anonymous"
        request.state.is_admin = False
        path = request.url.path
        if (
            security_cfg.trace_id_strict_required
            and path.startswith("/api/v1/")
            and path != "/api/v1/health"
            and not incoming_trace_id
        ):
            response = error_response(
                request,
                code="TRACE_ID_REQUIRED",
                message="x-trace-id header is required",
                error_class="validation",
                retryable=False,
                status_code=400,
            )
            response.headers["x-trace-id"] = trace_id_from_request(request)
            response.headers["x-request-id"] = request_id_from_request(request)
            return response
        try:
            header_tenant_explicit = (request.headers.get("x-tenant-id") or "").strip()
            if security_cfg.enabled and path.startswith("/api/v1/") and not path.startswith("/api/v1/internal/"):
                if path != "/api/v1/health":
                    auth_ctx = parse_and_validate_bearer_token(
                        authorization=request.headers.get("Authorization"),
                        cfg=security_cfg,
                    )
                    request.state.auth_subject = auth_ctx.subject
                    request.state.is_admin = auth_ctx.is_admin(security_cfg)
                    request.state.tenant_id = auth_ctx.tenant_id
                    if header_tenant_explicit and header_tenant_explicit != auth_ctx.tenant_id:
                        raise ApiError(
                            code="TENANT_SCOPE_VIOLATION",
                            message="tenant mismatch",
                            error_class="security_sensitive",
                            retryable=False,
                            http_status=403,
                        )
            else:
                request.state.tenant_id = header_tenant_explicit or None
                request.state.auth_subject = (request.headers.get("x-actor-id") or "").strip() or "anonymous"
            response = await call_next(request)
            response.headers["x-trace-id"] = trace_id_from_request(request)
            response.headers["x-request-id"] = request_id_from_request(request)
            return response
        except ApiError as exc:
            log_security_block(request=request, code=exc.code, detail=exc.message)
            response = error_response(
                request,
                code=exc.code,
                message=exc.message,
                error_class=exc.error_class,
                retryable=exc.retryable,
                status_code=exc.http_status,
            )
            response.headers["x-trace-id"] = trace_id_from_request(request)
            response.headers["x-request-id"] = request_id_from_request(request)
            return response

    @app.exception_handler(ApiError)
    async def handle_api_error(request: Request, exc: ApiError):
        if exc.code in SECURITY_CODES:
            log_security_block(request=request, code=exc.code, detail=exc.message)
        return error_response(
            request,
            code=exc.code,
            message=exc.message,
            error_class=exc.error_class,
            retryable=exc.retryable,
            status_code=exc.http_status,
            details=getattr(exc, "details", None) or None,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        return error_response(
            request,
            code="REQ_VALIDATION_FAILED",
            message="invalid payload",
            error_class="validation",
            retryable=False,
            status_code=400,
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

    @app.get("/healthz")
    def healthz(request: Request) -> dict[str, object]:
        return success_envelope({"status": "ok"}, trace_id_from_request(request))

    @app.get("/api/v1/health")
    def health_api(request: Request) -> dict[str, object]:
        return success_envelope({"status": "ok"}, trace_id_from_request(request))

    app.include_router(projects.router)
    app.include_router(screenshots.router)
    app.include_router(queues.router)
    app.include_router(usage.router)
    app.include_router(internal.router)
    return app
