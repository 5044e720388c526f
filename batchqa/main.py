from __future__ import annotations

import logging
import uuid

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware

from batchqa.errors import ApiError
from batchqa.routes import activity, batches, verification
from batchqa.routes._deps import error_response, trace_id_from_request
from batchqa.schemas import success_envelope
from batchqa.security import JwtSecurityConfig, resolve_actor
from batchqa.settings import WorkflowSettings, configure_logging
from batchqa.store import InMemoryStore, create_store_from_env

logger = logging.getLogger(__name__)

_PUBLIC_PATHS = {"/api/v1/health"}


def create_app(
    *,
    store: InMemoryStore | None = None,
    settings: WorkflowSettings | None = None,
    security_cfg: JwtSecurityConfig | None = None,
) -> FastAPI:
    settings = settings or WorkflowSettings.from_env()
    configure_logging(settings.log_level)
    app = FastAPI(title="Batch Quality Workflow API", version="0.1.0")
    app.state.settings = settings
    app.state.security_cfg = security_cfg or JwtSecurityConfig.from_env()
    app.state.store = store if store is not None else create_store_from_env()
    if settings.cors_allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_allow_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.middleware("http")
    async def add_trace_id_and_actor(request: Request, call_next):
        incoming_trace_id = request.headers.get("x-trace-id", "").strip()
        request.state.trace_id = incoming_trace_id or uuid.uuid4().hex
        request.state.actor = None
        path = request.url.path
        try:
            if path.startswith("/api/v1/") and path not in _PUBLIC_PATHS:
                request.state.actor = resolve_actor(
                    headers=request.headers,
                    cfg=request.app.state.security_cfg,
                )
        except ApiError as exc:
            logger.warning("auth_rejected path=%s code=%s reason=%s", path, exc.code, exc.message)
            response = error_response(
                request,
                code=exc.code,
                message=exc.message,
                error_class=exc.error_class,
                retryable=exc.retryable,
                status_code=exc.http_status,
            )
            response.headers["x-trace-id"] = trace_id_from_request(request)
            return response
        response = await call_next(request)
        response.headers["x-trace-id"] = trace_id_from_request(request)
        return response

    @app.exception_handler(ApiError)
    async def handle_api_error(request: Request, exc: ApiError):
        if exc.code == "FORBIDDEN":
            actor = getattr(request.state, "actor", None)
            logger.warning(
                "request_forbidden path=%s actor_id=%s reason=%s",
                request.url.path,
                getattr(actor, "user_id", None),
                exc.message,
            )
        return error_response(
            request,
            code=exc.code,
            message=exc.message,
            error_class=exc.error_class,
            retryable=exc.retryable,
            status_code=exc.http_status,
            details=exc.details,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        fields = sorted({".".join(str(x) for x in err.get("loc", ()) if x != "body") for err in exc.errors()})
        return error_response(
            request,
            code="VALIDATION_ERROR",
            message="invalid payload",
            error_class="validation",
            retryable=False,
            status_code=400,
            details={"fields": fields},
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return error_response(
                request,
                code="NOT_FOUND",
                message="resource not found",
                error_class="validation",
                retryable=False,
                status_code=404,
            )
        return error_response(
            request,
            code="VALIDATION_ERROR" if exc.status_code < 500 else "INTERNAL",
            message=str(exc.detail),
            error_class="validation" if exc.status_code < 500 else "internal",
            retryable=exc.status_code >= 500,
            status_code=exc.status_code,
        )

    @app.get("/api/v1/health")
    def health_api(request: Request) -> dict[str, object]:
        return success_envelope({"status": "ok"}, trace_id_from_request(request))

    app.include_router(batches.router)
    app.include_router(verification.router)
    app.include_router(activity.router)
    return app


app = create_app()
