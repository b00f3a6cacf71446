from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, List, Optional
from uuid import uuid4

from fastapi import APIRouter, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from vanguard_db.core.exceptions import (
    ConfigurationError,
    OperationCancelled,
    StoreFailure,
    VanguardDbError,
    WriteFailed,
)
from vanguard_db.core.logging import configure_logging, correlation_id_var, db_code_var
from vanguard_db.core.settings import AppSettings, get_app_settings
from vanguard_db.db.session import create_tables
from vanguard_db.repositories import RepositoryFactory, make_repository_provider
from vanguard_db.schemas.common import ErrorInfo, ErrorResponse, MessageResponse
from vanguard_db.schemas.mappings import build_mapper

# Routers
from vanguard_db.api.routes.users import router as users_router

logger = logging.getLogger(__name__)

openapi_tags = [
    {"name": "Health", "description": "Liveness and readiness probes."},
    {"name": "Users", "description": "Sample user module served from any configured database."},
]


def _build_error_response(
    request: Request,
    status_code: int,
    error_type: str,
    message: str,
    details: Any | None = None,
) -> JSONResponse:
    """Build a standardized ErrorResponse JSONResponse."""
    ts = datetime.now(tz=timezone.utc)
    err = ErrorResponse(
        status=status_code,
        error=ErrorInfo(type=error_type, message=message, details=details),
        correlation_id=getattr(request.state, "correlation_id", None),
        db_code=getattr(request.state, "db_code", None),
        path=request.url.path,
        method=request.method,
        timestamp=ts,
    )
    return JSONResponse(status_code=status_code, content=err.model_dump(mode="json"))


def _domain_details(exc: VanguardDbError) -> Optional[dict]:
    details = {
        "code": exc.code,
        "entity_type": exc.entity_type,
        "operation": exc.operation,
    }
    details = {k: v for k, v in details.items() if v is not None}
    return details or None


# Domain error -> (HTTP status, error type), most specific first.
_DOMAIN_ERRORS: List[tuple] = [
    (ConfigurationError, 400, "configuration_error"),
    (WriteFailed, 409, "write_failed"),
    (OperationCancelled, 504, "operation_cancelled"),
    (StoreFailure, 502, "store_failure"),
]


def _register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        """
        Global handler for HTTPException to produce a standardized error envelope.
        """
        detail = exc.detail if isinstance(exc.detail, str) else "HTTP Error"
        return _build_error_response(
            request=request,
            status_code=exc.status_code,
            error_type="http_error",
            message=str(detail),
            details=None if isinstance(exc.detail, str) else exc.detail,
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """
        Global handler for request validation errors with a standard structure.
        """
        return _build_error_response(
            request=request,
            status_code=422,
            error_type="validation_error",
            message="Request validation failed",
            details=exc.errors(),
        )

    @app.exception_handler(VanguardDbError)
    async def domain_exception_handler(request: Request, exc: VanguardDbError):
        """Translate data-access errors into the error envelope."""
        for error_cls, status_code, error_type in _DOMAIN_ERRORS:
            if isinstance(exc, error_cls):
                if status_code >= 500:
                    logger.warning("Data-access error (%s): %s", error_type, exc)
                return _build_error_response(
                    request=request,
                    status_code=status_code,
                    error_type=error_type,
                    message=str(exc),
                    details=_domain_details(exc),
                )
        logger.exception("Unhandled data-access error")
        return _build_error_response(
            request=request,
            status_code=500,
            error_type="internal_error",
            message="An unexpected error occurred",
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        """
        Catch-all handler to avoid leaking stack traces and to return a structured error.
        """
        logger.exception("Unhandled error processing request")
        return _build_error_response(
            request=request,
            status_code=500,
            error_type="internal_error",
            message="An unexpected error occurred",
            details=None,
        )


def _build_api_router() -> APIRouter:
    api_v1 = APIRouter(prefix="/api/v1")

    # PUBLIC_INTERFACE
    @api_v1.get(
        "/health",
        response_model=MessageResponse,
        summary="Health Check",
        tags=["Health"],
    )
    def health_check(request: Request) -> MessageResponse:
        """
        Basic liveness health check endpoint.

        Returns:
            MessageResponse: confirmation that the service is running, plus the
            database codes that currently have a live client.
        """
        factory: RepositoryFactory = request.app.state.repository_factory
        return MessageResponse(message="Healthy", details={"databases": factory.cached_codes})

    api_v1.include_router(users_router)
    return api_v1


# PUBLIC_INTERFACE
def create_app(
    settings: Optional[AppSettings] = None,
    factory: Optional[RepositoryFactory] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Parameters:
        settings: application settings (read from the environment when None)
        factory: repository factory to serve requests from (built from settings when None)
    """
    settings = settings or get_app_settings()
    configure_logging(settings.LOG_LEVEL)

    if factory is None:
        factory = RepositoryFactory.from_settings(settings, build_mapper())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if settings.CREATE_TABLES_ON_STARTUP:
            logger.info("Creating mapped tables on database %s", factory.default_code)
            await create_tables(factory.get_repository().client)
        yield
        await factory.dispose()

    app = FastAPI(
        title=settings.APP_NAME,
        description=settings.APP_DESCRIPTION,
        version=settings.APP_VERSION,
        openapi_tags=openapi_tags,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.repository_factory = factory
    app.state.repository_provider = make_repository_provider(factory)

    # CORS - avoid wildcard with credentials
    cors_allow_credentials = settings.CORS_ALLOW_CREDENTIALS
    if settings.CORS_ORIGINS == ["*"] and cors_allow_credentials:
        logger.warning("CORS_ALLOW_CREDENTIALS=True with '*' origins is not permitted; disabling credentials.")
        cors_allow_credentials = False

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=cors_allow_credentials,
        allow_methods=settings.CORS_ALLOW_METHODS,
        allow_headers=settings.CORS_ALLOW_HEADERS,
    )

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):
        """
        Enrich request context with correlation_id and db_code for logging and error responses.
        Adds 'X-Correlation-ID' to every response.
        """
        corr = request.headers.get("X-Correlation-ID") or request.headers.get("X-Request-ID") or str(uuid4())
        db_code = request.headers.get("X-Db-Code")
        token_corr = correlation_id_var.set(corr)
        token_db = db_code_var.set(db_code)
        request.state.correlation_id = corr
        request.state.db_code = db_code

        logger.info("Incoming request %s %s", request.method, request.url.path)
        try:
            response = await call_next(request)
        finally:
            correlation_id_var.reset(token_corr)
            db_code_var.reset(token_db)

        response.headers["X-Correlation-ID"] = corr
        return response

    _register_exception_handlers(app)
    app.include_router(_build_api_router())
    return app


app = create_app()
