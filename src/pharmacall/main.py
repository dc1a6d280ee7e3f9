"""
FastAPI application entry point.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from pharmacall import __version__
from pharmacall.admin.router import router as admin_router
from pharmacall.config import get_settings
from pharmacall.container import ServiceContainer
from pharmacall.shared.exceptions import (
    AppError,
    BusinessRuleError,
    ConfigurationError,
    DispatchError,
    NotFoundError,
    SignatureVerificationError,
)
from pharmacall.shared.logging import correlation_id_var, get_logger, setup_logging
from pharmacall.tasks.router import router as tasks_router
from pharmacall.voice.webhooks.router import router as vapi_webhooks_router

logger = get_logger(__name__)

CORRELATION_HEADERS = ("x-correlation-id", "x-request-id")


def _error_response(status_code: int, code: str, exc: AppError) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"detail": {"code": code, "message": exc.message}},
    )


def create_app(container: ServiceContainer | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        container: Pre-built services (tests). When omitted the lifespan builds
            them from the environment and owns their shutdown.
    """
    settings = container.settings if container is not None else get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        setup_logging(settings.log_level, service=settings.app_name)
        logger.info("Application starting", extra={"env": settings.app_env})

        owned = container is None
        services = container or ServiceContainer.build(settings)
        app.state.container = services
        if settings.app_env == "dev" and services.db.engine.url.get_backend_name() == "sqlite":
            await services.db.create_all()

        yield

        logger.info("Shutting down application")
        if owned:
            await services.aclose()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="Pharmacall API",
        description="Schedules outbound pharmacy availability calls",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
    )
    if container is not None:
        app.state.container = container

    @app.middleware("http")
    async def correlation_id_middleware(
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        correlation_id = next(
            (request.headers[h] for h in CORRELATION_HEADERS if request.headers.get(h)),
            None,
        ) or str(uuid.uuid4())
        token = correlation_id_var.set(correlation_id)
        try:
            response = await call_next(request)
        finally:
            correlation_id_var.reset(token)
        response.headers["x-correlation-id"] = correlation_id
        return response

    # Map domain exceptions to HTTP responses
    @app.exception_handler(NotFoundError)
    async def _not_found(_: Request, exc: NotFoundError) -> JSONResponse:
        return _error_response(status.HTTP_404_NOT_FOUND, "NOT_FOUND", exc)

    @app.exception_handler(BusinessRuleError)
    async def _business_rule(_: Request, exc: BusinessRuleError) -> JSONResponse:
        return _error_response(status.HTTP_422_UNPROCESSABLE_ENTITY, "BUSINESS_RULE", exc)

    @app.exception_handler(SignatureVerificationError)
    async def _bad_signature(_: Request, exc: SignatureVerificationError) -> JSONResponse:
        return _error_response(status.HTTP_401_UNAUTHORIZED, "INVALID_SIGNATURE", exc)

    @app.exception_handler(DispatchError)
    async def _dispatch(_: Request, exc: DispatchError) -> JSONResponse:
        logger.error(
            "Dispatcher unavailable",
            extra={"error": exc.message, **(exc.details or {})},
        )
        return _error_response(status.HTTP_503_SERVICE_UNAVAILABLE, "DISPATCH_FAILED", exc)

    @app.exception_handler(ConfigurationError)
    async def _configuration(_: Request, exc: ConfigurationError) -> JSONResponse:
        logger.error(
            "Configuration error",
            extra={"error": exc.message, **(exc.details or {})},
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": {"code": "CONFIGURATION_ERROR", "message": "Service misconfigured"}},
        )

    # Request validation (FastAPI/Pydantic) -> consistent 422 payload
    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request,
        exc: RequestValidationError,
    ) -> JSONResponse:
        errors = [
            {
                "field": ".".join(str(loc) for loc in error["loc"]),
                "message": error["msg"],
                "type": error["type"],
            }
            for error in exc.errors()
        ]
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                "detail": {
                    "code": "VALIDATION_ERROR",
                    "message": "Request validation failed",
                    "errors": errors,
                }
            },
        )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(admin_router)
    app.include_router(tasks_router)
    app.include_router(vapi_webhooks_router)

    @app.get("/health")
    async def health_check() -> dict[str, str]:
        return {"status": "healthy"}

    return app


app = create_app()
