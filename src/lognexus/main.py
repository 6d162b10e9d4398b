"""
Main FastAPI application entry point.

This module sets up the FastAPI app with all middleware, routes, and lifecycle events.
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, Optional

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api import alerts_router, audit_router, healthz_router, logs_router, metrics_router
from .config import Settings, get_settings
from .core.correlation import CorrelationPropagator, is_valid_id
from .core.exceptions import LogNexusException
from .core.health import HealthChecker
from .core.metrics import MetricsCollector
from .core.pipeline import ProcessingPipeline

CORRELATION_HEADERS = ("X-Correlation-ID", "X-Request-ID", "Correlation-ID")


def configure_logging(
    log_level: str = "INFO",
    log_format: str = "console",
    propagator: Optional[CorrelationPropagator] = None,
) -> None:
    """Configure structured logging for the application."""
    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper()),
    )

    # Silence the verbose watchfiles logger
    logging.getLogger("watchfiles").setLevel(logging.WARNING)

    processors: list = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if propagator is not None:
        processors.append(propagator.structlog_processor)

    if log_format == "json":
        processors.extend([
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ])
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def create_lifespan_handler(settings: Settings, propagator: CorrelationPropagator) -> Any:
    """Create a lifespan handler with access to settings."""
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """
        FastAPI lifespan context manager.

        Builds the processing pipeline and runs its background loops for the
        lifetime of the application.
        """
        logger = structlog.get_logger(__name__)
        logger.info("Starting LogNexus service", version=app.version)

        pipeline = ProcessingPipeline(settings, propagator=propagator)
        app.state.pipeline = pipeline

        metrics_collector = MetricsCollector()
        metrics_collector.subscribe(pipeline.bus)
        app.state.metrics = metrics_collector

        await pipeline.start()

        health_checker = HealthChecker(pipeline)
        app.state.health_checker = health_checker
        await health_checker.start()

        try:
            logger.info("LogNexus service started successfully")
            yield
        finally:
            logger.info("Shutting down LogNexus service")

            await health_checker.stop()
            await pipeline.stop()
            metrics_collector.unsubscribe()

            logger.info("LogNexus service shutdown complete")

    return lifespan


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    This factory function ensures all configuration is applied
    whether running via FastAPI CLI or direct execution.
    """
    settings = settings or get_settings()
    propagator = CorrelationPropagator()

    configure_logging(settings.log_level, settings.log_format, propagator)

    app = FastAPI(
        title="LogNexus",
        description="Structured log event processing: correlation, alerting, audit and batch delivery",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=create_lifespan_handler(settings, propagator),
    )
    app.state.settings = settings
    app.state.propagator = propagator

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "DELETE"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def correlation_middleware(request: Request, call_next: Any) -> Response:
        """Run each request inside a correlation scope and echo its id."""
        correlation_id = next(
            (request.headers[name] for name in CORRELATION_HEADERS if request.headers.get(name)),
            None,
        )
        # malformed client ids are replaced, never echoed
        if not is_valid_id(correlation_id):
            correlation_id = propagator.generate("req")

        start = time.perf_counter()
        with propagator.scope(correlation_id):
            response = await call_next(request)
        response.headers["X-Correlation-ID"] = correlation_id

        metrics = getattr(request.app.state, "metrics", None)
        if metrics is not None:
            metrics.record_request(
                method=request.method,
                endpoint=request.url.path,
                status_code=response.status_code,
                duration_seconds=time.perf_counter() - start,
            )
        return response

    @app.exception_handler(LogNexusException)
    async def lognexus_exception_handler(request: Request, exc: LogNexusException) -> JSONResponse:
        """Handle custom LogNexus exceptions."""
        logger = structlog.get_logger(__name__)
        logger.error(
            "LogNexus exception occurred",
            error=str(exc),
            status_code=exc.status_code,
            path=request.url.path,
            method=request.method,
        )

        headers = {}
        if exc.status_code == 401:
            headers["WWW-Authenticate"] = "Bearer"

        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": exc.error_code,
                "message": str(exc),
                "details": exc.details,
            },
            headers=headers,
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle unexpected exceptions."""
        logger = structlog.get_logger(__name__)
        logger.error(
            "Unexpected exception occurred",
            error=str(exc),
            error_type=type(exc).__name__,
            path=request.url.path,
            method=request.method,
            exc_info=True,
        )

        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred",
            },
        )

    app.include_router(logs_router, prefix="/v1", tags=["logs"])
    app.include_router(alerts_router, prefix="/v1", tags=["alerts"])
    app.include_router(audit_router, prefix="/v1", tags=["audit"])
    app.include_router(metrics_router, tags=["metrics"])
    app.include_router(healthz_router, tags=["health"])

    @app.get("/", include_in_schema=False)
    async def root() -> Dict[str, str]:
        """Root endpoint with service information."""
        return {
            "service": "LogNexus",
            "version": app.version,
            "description": "Structured log event processing",
            "docs": "/docs",
        }

    return app


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )
