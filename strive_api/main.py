"""
Strive API - streaming chat backend for the Strive web client.

Relays conversations to an OpenAI-compatible completion provider and
streams the replies back as server-sent events, re-chunked into
presentation-friendly units.

Endpoints:
    Chat:
        - POST /api/assistant - Productivity coach reply (sentence chunks)
        - POST /api/chatbot - General assistant reply (word chunks, optional title)

    Health:
        - GET /health - Health check
        - GET /health/live - Liveness check
        - GET /health/ready - Readiness check (provider client available)
        - GET /internal/metrics - Stream SLO counters

Environment (logging and CORS, read at import time):
    LOG_LEVEL: stdlib level name (default INFO)
    LOG_FORMAT: "json" or "console" (default json)
    CORS_ORIGINS: comma-separated origins, "*" for any (default *)

Last Grunted: 10/19/2026 09:10:00 AM UTC
"""
import logging
import os
import sys
import time
from contextlib import asynccontextmanager
from typing import Callable, Optional

import httpx
import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from strive_api import __version__
from strive_api.config import ServiceSettings, get_settings
from strive_api.routers import chat
from strive_api.services.completion_source import CompletionSource
from strive_api.services.errors import (
    ConfigurationError,
    create_error_response,
    internal_error,
    invalid_request_error,
)
from strive_api.services.http_client import close_client, create_client
from strive_api.services.observability import get_metric_snapshot


# ============================================================================
# Logging Configuration
# ============================================================================

def configure_logging() -> None:
    """
    Configure structured logging with structlog.

    JSON output by default; pretty console output when LOG_FORMAT=console.

    Last Grunted: 10/19/2026 09:10:00 AM UTC
    """
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    log_format = os.getenv("LOG_FORMAT", "json").lower()

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level, logging.INFO),
    )

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == "console":
        renderers: list[structlog.types.Processor] = [
            structlog.dev.ConsoleRenderer(colors=True),
        ]
    else:
        renderers = [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=shared_processors + renderers,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()
logger = structlog.get_logger("strive-api")


def load_settings() -> ServiceSettings:
    """
    Load settings, turning validation failures into a startup-fatal error.

    Raises:
        ConfigurationError: If OPENAI_API_KEY is missing or a value is invalid

    Last Grunted: 10/19/2026 09:10:00 AM UTC
    """
    try:
        return get_settings()
    except ValidationError as e:
        fields = [".".join(str(p) for p in err["loc"]) for err in e.errors()]
        logger.error("strive_api.config.error", fields=fields)
        raise ConfigurationError(f"Invalid configuration: {', '.join(fields)}") from e


def _cors_origins() -> list[str]:
    return [
        o.strip()
        for o in os.getenv("CORS_ORIGINS", "*").split(",")
        if o.strip()
    ]


# ============================================================================
# Application Factory
# ============================================================================

def create_app(
    settings: Optional[ServiceSettings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Settings to use; loaded from the environment at startup
            when omitted
        transport: Optional provider transport (tests use httpx.MockTransport)

    Returns:
        FastAPI: Configured application

    Last Grunted: 10/19/2026 09:10:00 AM UTC
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Startup: load settings, open the provider client, build the
        CompletionSource. Shutdown: close the provider client.
        """
        logger.info("strive_api.startup")

        resolved = settings if settings is not None else load_settings()
        client = create_client(resolved, transport=transport)
        app.state.settings = resolved
        app.state.http_client = client
        app.state.completion_source = CompletionSource(client, resolved)

        logger.info(
            "strive_api.ready",
            assistant_model=resolved.assistant_model,
            chatbot_model=resolved.chatbot_model,
            title_delivery=resolved.title_delivery,
        )

        try:
            yield
        finally:
            logger.info("strive_api.shutdown")
            await close_client(client)
            app.state.completion_source = None
            logger.info("strive_api.shutdown.complete")

    app = FastAPI(
        title="Strive API",
        description="Streaming chat backend for the Strive web client",
        version=__version__,
        lifespan=lifespan,
    )

    # Credentials cannot be combined with a wildcard origin
    origins = _cors_origins()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials="*" not in origins,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Response-Time"],
    )

    _register_exception_handlers(app)
    _register_middleware(app)

    app.include_router(chat.router, tags=["chat"])
    _register_health_routes(app)

    return app


# ============================================================================
# Exception Handlers
# ============================================================================

def _register_exception_handlers(app: FastAPI) -> None:

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request,
        exc: RequestValidationError,
    ) -> JSONResponse:
        """
        Malformed request bodies get a 400 with the first validation problem.

        Last Grunted: 10/19/2026 09:10:00 AM UTC
        """
        errors = exc.errors()
        if errors:
            first_error = errors[0]
            loc = first_error.get("loc", [])
            param = ".".join(str(part) for part in loc if part != "body")
            message = first_error.get("msg", "Validation error")
            if param:
                message = f"{param}: {message}"
        else:
            param = None
            message = "Request validation failed"

        logger.warning(
            "strive_api.validation_error",
            path=request.url.path,
            param=param,
            message=message,
        )
        return invalid_request_error(message)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        logger.warning(
            "strive_api.http_error",
            path=request.url.path,
            status_code=exc.status_code,
            detail=str(exc.detail),
        )
        return create_error_response(str(exc.detail), status_code=exc.status_code)

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """
        Last-resort handler; details are logged, never returned.

        Last Grunted: 10/19/2026 09:10:00 AM UTC
        """
        logger.exception(
            "strive_api.unhandled_error",
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return internal_error()


# ============================================================================
# Request Logging Middleware
# ============================================================================

def _register_middleware(app: FastAPI) -> None:

    @app.middleware("http")
    async def log_requests(request: Request, call_next: Callable):
        """
        Log each request with timing and bind its context for all logs.

        For streaming responses the duration covers time to headers only;
        the forwarder logs the full stream duration.

        Last Grunted: 10/19/2026 09:10:00 AM UTC
        """
        request_id = request.headers.get("X-Request-ID", "-")
        start_time = time.perf_counter()

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            path=request.url.path,
            method=request.method,
        )

        logger.info("strive_api.request.start")

        response = await call_next(request)

        duration_ms = (time.perf_counter() - start_time) * 1000
        logger.info(
            "strive_api.request.complete",
            status_code=response.status_code,
            duration_ms=round(duration_ms, 2),
        )

        response.headers["X-Response-Time"] = f"{duration_ms:.2f}ms"
        return response


# ============================================================================
# Health Check
# ============================================================================

def _register_health_routes(app: FastAPI) -> None:

    @app.get("/health")
    async def health_check():
        """
        Health check endpoint for service monitoring.

        Returns:
            dict: Status information including service name and version

        Last Grunted: 10/19/2026 09:10:00 AM UTC
        """
        return {
            "status": "ok",
            "service": "strive-api",
            "version": __version__,
        }

    @app.get("/health/ready")
    async def readiness_check(request: Request):
        """
        Readiness check: the provider client is open and accepting requests.

        Returns:
            dict: Readiness status, or JSONResponse 503 when not ready

        Last Grunted: 10/19/2026 09:10:00 AM UTC
        """
        client = getattr(request.app.state, "http_client", None)
        if client is None or client.is_closed:
            logger.warning("readiness_check.provider_client_unavailable")
            return JSONResponse(
                status_code=503,
                content={"status": "not_ready", "checks": {"provider_client": "closed"}},
            )
        return {"status": "ready", "checks": {"provider_client": "ok"}}

    @app.get("/health/live")
    async def liveness_check():
        return {"status": "alive"}

    @app.get("/internal/metrics")
    async def internal_metrics() -> dict:
        """Internal SLO metrics snapshot."""
        return {"metrics": get_metric_snapshot()}


app = create_app()
