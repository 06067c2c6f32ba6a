"""
FastAPI application factory for the flowdeck server.

Uses lifespan handler for startup/shutdown with async resource management.
Shutdown order matters: the poller stops first so no sweep starts while
tunnels are being torn down, then the local database closes.
"""

import uuid
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from flowdeck.config import settings
from flowdeck.db.session import close_db, init_db
from flowdeck.logging_config import configure_logging, get_logger
from flowdeck.services.encryption_service import init_encryption
from flowdeck.services.execution_poller import start_polling, stop_polling
from flowdeck.tunnels import close_tunnels, init_tunnels

from .health import router as health_router

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    """Application lifespan handler for startup and shutdown."""
    # Startup
    configure_logging(json_logs=settings.json_logs, log_level=settings.log_level)
    logger.info("Starting flowdeck server", version="0.1.0")

    await init_db()
    logger.info("Database initialized")

    init_encryption()

    init_tunnels()

    if settings.sync.enabled:
        start_polling()

    yield

    # Shutdown
    logger.info("Shutting down flowdeck server")
    await stop_polling()
    await close_tunnels()
    await close_db()


def create_application() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="flowdeck API",
        description="Execution dashboard for n8n instances reached over SSH",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json",
    )

    # CORS middleware
    if settings.cors.allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors.allow_origins,
            allow_credentials=settings.cors.allow_credentials,
            allow_methods=settings.cors.allow_methods,
            allow_headers=settings.cors.allow_headers,
        )

    # Request ID middleware
    @app.middleware("http")
    async def add_request_id(request: Request, call_next):  # type: ignore[no-untyped-def]
        """Ensure every request has a request ID for logging correlation."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        structlog.contextvars.bind_contextvars(request_id=request_id)

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        structlog.contextvars.unbind_contextvars("request_id")

        return response

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled errors."""
        logger.error("Unhandled exception", exc_info=exc, path=str(request.url.path))
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )

    # Health endpoints (no prefix)
    app.include_router(health_router)

    # Instance CRUD, connection test and sync
    from flowdeck.api.routers.instances import router as instances_router

    app.include_router(instances_router, prefix=settings.api_prefix)

    # Cached execution queries
    from flowdeck.api.routers.executions import router as executions_router

    app.include_router(executions_router, prefix=settings.api_prefix)

    return app


# Application instance
app = create_application()
