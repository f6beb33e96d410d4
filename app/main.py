from __future__ import annotations

import os
import uuid
from collections.abc import Mapping
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware

from app.batch_worker import create_batch_worker_from_env
from app.embedding_provider import EmbeddingProvider, create_embedding_provider, get_provider_info
from app.errors import ApiError
from app.on_demand import OnDemandEnricher
from app.routes import embeddings, internal
from app.routes._deps import (
    error_response,
    log_security_event,
    request_id_from_request,
    trace_id_from_request,
)
from app.schemas import success_envelope
from app.security import JwtSecurityConfig, parse_and_validate_bearer_token
from app.store import store as default_store

SECURITY_ERROR_CODES = {"AUTH_UNAUTHORIZED", "AUTH_FORBIDDEN", "TENANT_SCOPE_VIOLATION"}


def create_app(
    *,
    store: Any | None = None,
    provider: EmbeddingProvider | None = None,
    environ: Mapping[str, str] | None = None,
) -> FastAPI:
    env = os.environ if environ is None else environ
    app = FastAPI(title="FinApp Embedding Enrichment API", version="0.1.0")
    security_cfg = JwtSecurityConfig.from_env(env)
    pipeline_store = default_store if store is None else store
    embedding_provider = provider or create_embedding_provider(env)

    app.state.security_cfg = security_cfg
    app.state.store = pipeline_store
    app.state.provider = embedding_provider
    app.state.batch_worker = create_batch_worker_from_env(
        store=pipeline_store,
        provider=embedding_provider,
        environ=env,
    )
    app.state.enricher = OnDemandEnricher(store=pipeline_store, provider=embedding_provider)
    app.state.environ = env

    cors_origins = env.get("CORS_ALLOW_ORIGINS", "")
    allow_origins = [x.strip() for x in cors_origins.split(",") if x.strip()]
    if allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=allow_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    def _with_request_headers(request: Request, response):
        response.headers["x-trace-id"] = trace_id_from_request(request)
        response.headers["x-request-id"] = request_id_from_request(request)
        return response

    @app.middleware("http")
    async def add_trace_id(request: Request, call_next):
        incoming_trace_id = request.headers.get("x-trace-id", "").strip()
        request.state.trace_id = incoming_trace_id or uuid.uuid4().hex
        request.state.request_id = request.headers.get("x-request-id", f"req_{uuid.uuid4().hex[:12]}")
        request.state.auth_subject = "anonymous"
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
            return _with_request_headers(request, response)
        try:
            header_tenant_explicit = request.headers.get("x-tenant-id")
            if security_cfg.enabled and path.startswith("/api/v1/") and not path.startswith("/api/v1/internal/"):
                if path != "/api/v1/health":
                    auth_ctx = parse_and_validate_bearer_token(
                        authorization=request.headers.get("Authorization"),
                        cfg=security_cfg,
                    )
                    request.state.auth_subject = auth_ctx.subject
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
                request.state.tenant_id = header_tenant_explicit or "tenant_default"
            response = await call_next(request)
            return _with_request_headers(request, response)
        except ApiError as exc:
            log_security_event(request=request, code=exc.code, detail=exc.message)
            response = error_response(
                request,
                code=exc.code,
                message=exc.message,
                error_class=exc.error_class,
                retryable=exc.retryable,
                status_code=exc.http_status,
            )
            return _with_request_headers(request, response)

    @app.exception_handler(ApiError)
    async def handle_api_error(request: Request, exc: ApiError):
        if exc.code in SECURITY_ERROR_CODES:
            log_security_event(request=request, code=exc.code, detail=exc.message)
        return error_response(
            request,
            code=exc.code,
            message=exc.message,
            error_class=exc.error_class,
            retryable=exc.retryable,
            status_code=exc.http_status,
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
        data = {
            "status": "ok",
            "store_backend": getattr(request.app.state.store, "backend_name", "memory"),
            "embedding": get_provider_info(request.app.state.environ),
        }
        return success_envelope(data, trace_id_from_request(request))

    app.include_router(internal.router)
    app.include_router(embeddings.router)
    return app


app = create_app()
