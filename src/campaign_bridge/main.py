"""FastAPI application entry point."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from bridge_shared import get_logger, setup_logging

from campaign_bridge import __version__
from campaign_bridge.api import calls, campaigns, conference, events, health, webhooks
from campaign_bridge.config import get_settings, require_valid_settings
from campaign_bridge.core.exceptions import CampaignBridgeError
from campaign_bridge.dependencies import ServiceContainer, build_container


def campaign_bridge_exception_handler(request: Request, exc: CampaignBridgeError) -> JSONResponse:
    """Map domain errors to their HTTP status with a structured body."""
    log = get_logger(__name__)
    log_method = log.warning if exc.status_code < 500 else log.error
    log_method(
        "Request failed",
        error_code=exc.error_code,
        error=exc.message,
        path=request.url.path,
        method=request.method,
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Render HTTP errors, including webhook signature rejections, like domain errors."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "error": _status_code_to_error_type(exc.status_code),
            "message": str(exc.detail),
            "status_code": exc.status_code,
        },
    )


def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handle request validation errors with detailed field information."""
    errors = []
    for error in exc.errors():
        field = ".".join(str(loc) for loc in error["loc"] if loc != "body")
        errors.append({
            "field": field or "request",
            "message": error["msg"],
            "type": error["type"],
        })

    return JSONResponse(
        status_code=422,
        content={
            "success": False,
            "error": "validation_error",
            "message": "Request validation failed",
            "details": errors,
        },
    )


def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Log unexpected errors; the message is only echoed back in debug mode."""
    log = get_logger(__name__)
    log.error(
        "Unhandled exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
        method=request.method,
    )

    settings = get_settings()
    detail = str(exc) if settings.debug else "An internal error occurred"

    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": "internal_error",
            "message": detail,
        },
    )


def _status_code_to_error_type(status_code: int) -> str:
    """Map HTTP status codes to error type strings."""
    error_types = {
        400: "bad_request",
        401: "unauthorized",
        404: "not_found",
        409: "conflict",
        422: "validation_error",
        500: "internal_error",
        502: "bad_gateway",
        503: "service_unavailable",
    }
    return error_types.get(status_code, "error")


def _make_lifespan(container: ServiceContainer | None):
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan manager."""
        settings = require_valid_settings(
            container.settings if container is not None else get_settings()
        )
        log = get_logger(__name__)

        setup_logging(
            level=settings.log_level,
            json_output=settings.log_json,
            instance_id=settings.instance_id,
        )

        log.info(
            "Starting Campaign Bridge",
            version=__version__,
            environment=settings.environment,
            instance_id=settings.instance_id,
            store_backend=settings.redis.backend,
        )

        services = container or build_container(settings)
        app.state.container = services
        await services.start()
        log.info("Services started", audio_enabled=settings.audio.enabled)

        yield

        log.info("Shutting down Campaign Bridge")
        await services.close()
        log.info("Services stopped")

    return lifespan


def create_app(container: ServiceContainer | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        container: Pre-built services (built from settings at startup when omitted)
    """
    settings = container.settings if container is not None else get_settings()

    app = FastAPI(
        title="Campaign Bridge",
        description="Outbound voice-AI campaigns with conference bridging to human agents",
        version=__version__,
        lifespan=_make_lifespan(container),
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
    )

    app.add_exception_handler(CampaignBridgeError, campaign_bridge_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health.router, tags=["Health"])
    app.include_router(calls.router, prefix="/api/v1", tags=["Calls"])
    app.include_router(campaigns.router, prefix="/api/v1", tags=["Campaigns"])
    app.include_router(conference.router, prefix="/api/v1", tags=["Conference"])
    app.include_router(webhooks.router, prefix="/api/v1", tags=["Webhooks"])
    app.include_router(events.router, prefix="/api/v1/ws", tags=["Events"])

    return app


app = create_app()


def run() -> None:
    """Run the application with uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "campaign_bridge.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
